"""
Signal pipeline: one inbound alert, end to end.

normalize -> load bot -> persist signal -> resolve action -> guard -> price
-> validate -> execute -> mark signal processed
"""
import logging
import sqlite3
from typing import Optional

from signalbot import database
from signalbot.core.actions import resolve_action
from signalbot.core.errors import (
    BotNotFoundError, ExchangeRejectionError, ParseError, PersistenceError, SignalBotError,
    ValidationError,
)
from signalbot.core.executor import execute
from signalbot.core.guard import check_symbol_allowed, load_bot_context, resolve_price
from signalbot.core.normalizer import normalize_payload
from signalbot.core.validator import validate
from signalbot.models.trade import PipelineResult, SignalDraft
from signalbot.services.binance_connector import BinanceConnector

logger = logging.getLogger("signalbot.pipeline")


class SignalPipeline:
    def __init__(self, exchange_factory=None):
        self.exchange_factory = exchange_factory or BinanceConnector.from_exchange

    def process_alert(self, raw: bytes | str, content_type: Optional[str] = None,
                      route_bot_id: Optional[str] = None) -> PipelineResult:
        try:
            draft = normalize_payload(raw, content_type, route_bot_id)
            bot_id = route_bot_id or draft.bot_id
            if not bot_id:
                raise ParseError("No bot id in webhook URL or payload")
            if database.get_bot(bot_id) is None:
                raise BotNotFoundError(f"Bot {bot_id} not found", details={"bot_id": bot_id})
            signal = database.create_signal(bot_id, draft.model_dump())
        except sqlite3.Error as e:
            logger.error("Could not record incoming alert: %s", e)
            return self._error_result(PersistenceError(f"Failed to record signal: {e}"))
        except SignalBotError as e:
            logger.warning("Alert rejected before persistence: %s", e)
            return self._error_result(e)

        signal_id = signal["id"]
        logger.info("Signal %s received for bot %s: %s %s", signal_id, bot_id, draft.action, draft.symbol)

        try:
            result = self._run(bot_id, draft)
        except SignalBotError as e:
            logger.error("Signal %s failed [%s]: %s", signal_id, e.category, e)
            database.mark_signal_processed(signal_id, error=str(e))
            return self._error_result(e, signal_id=signal_id, draft=draft)
        except Exception as e:
            logger.exception("Signal %s failed unexpectedly", signal_id)
            database.mark_signal_processed(signal_id, error=f"Internal error: {e}")
            return PipelineResult(
                success=False, status_code=500, signal_id=signal_id,
                action=draft.action, symbol=draft.symbol,
                error="Internal error while processing signal", category="INTERNAL_ERROR",
            )

        database.mark_signal_processed(signal_id, position_id=result.position_id)
        result.signal_id = signal_id
        return result

    def _run(self, bot_id: str, draft: SignalDraft) -> PipelineResult:
        directive = resolve_action(draft.action)
        ctx = load_bot_context(bot_id)
        check_symbol_allowed(ctx.bot, draft.symbol)

        exchange = self.exchange_factory(ctx.exchange)
        price = resolve_price(exchange, draft.symbol, draft.price)

        validation = validate(ctx, directive, draft.symbol, price, exchange)
        if not validation.success:
            message = validation.error or "Validation failed"
            if validation.error_category == ExchangeRejectionError.category:
                raise ExchangeRejectionError(message)
            err = ValidationError(message)
            if validation.error_category:
                err.category = validation.error_category
            raise err

        execution = execute(ctx, validation, draft.symbol, price, exchange)
        if not execution.success:
            raise ExchangeRejectionError(
                execution.message,
                details={"position_id": execution.position_id,
                         "position_status": execution.position_status.value if execution.position_status else None},
            )

        return PipelineResult(
            success=True,
            action=draft.action,
            directive=directive,
            symbol=draft.symbol,
            price=execution.price or price,
            position_id=execution.position_id,
            order_id=execution.order_id,
            skipped=execution.skipped,
            message=execution.message,
            details={
                "quantity": execution.quantity,
                "pnl": execution.pnl,
                "position_status": execution.position_status.value if execution.position_status else None,
            },
        )

    @staticmethod
    def _error_result(error: SignalBotError, signal_id: str = None, draft: SignalDraft = None) -> PipelineResult:
        return PipelineResult(
            success=False,
            status_code=error.status_code,
            signal_id=signal_id,
            action=draft.action if draft else None,
            symbol=draft.symbol if draft else None,
            error=str(error),
            category=error.category,
            details=error.details,
        )
