"""
Order execution for validated signals.

Entries submit a MARKET order and record an OPEN position with its ENTRY
order. Every close, whether it comes from an exit signal, the position monitor
or a manual market close, goes through `close_position`.
"""
import logging
import sqlite3

from signalbot import database
from signalbot.core.actions import close_side, is_entry, position_side
from signalbot.core.errors import ExchangeRejectionError, PersistenceError, ValidationError
from signalbot.core.precision import resolve_quantity
from signalbot.models.bot import AccountType, Bot, BotContext
from signalbot.models.trade import (
    CloseReason, ExecutionResult, OrderFill, OrderStatus, OrderType,
    Position, PositionSide, PositionStatus, SideEffect, ValidationResult,
)

logger = logging.getLogger("signalbot.executor")


def protective_levels(bot: Bot, side: PositionSide, entry_price: float) -> tuple[float | None, float | None]:
    """Absolute (stop_loss, take_profit) prices from the bot's percentages."""
    stop_loss = take_profit = None
    if side == PositionSide.LONG:
        if bot.stop_loss:
            stop_loss = entry_price * (1 - bot.stop_loss / 100)
        if bot.take_profit:
            take_profit = entry_price * (1 + bot.take_profit / 100)
    else:
        if bot.stop_loss:
            stop_loss = entry_price * (1 + bot.stop_loss / 100)
        if bot.take_profit:
            take_profit = entry_price * (1 - bot.take_profit / 100)
    return stop_loss, take_profit


def compute_pnl(side: PositionSide, entry_value: float, exit_value: float) -> tuple[float, float]:
    """(pnl, pnl_percent) for a full close."""
    if side == PositionSide.LONG:
        pnl = exit_value - entry_value
    else:
        pnl = entry_value - exit_value
    pnl_percent = pnl / entry_value * 100 if entry_value else 0.0
    return pnl, pnl_percent


def _submit(exchange, account_type: AccountType, symbol: str, side, quantity: float,
            side_effect: SideEffect | None, reference_price: float | None) -> OrderFill:
    if account_type == AccountType.MARGIN:
        return exchange.place_margin_order(
            symbol, side, quantity,
            side_effect=side_effect or SideEffect.NO_SIDE_EFFECT,
            reference_price=reference_price,
        )
    return exchange.place_order(symbol, side, quantity, reference_price=reference_price)


def _order_record(order_type: OrderType, symbol: str, side, fill: OrderFill, requested_qty: float,
                  price: float, side_effect: SideEffect | None, pnl: float | None = None) -> dict:
    quantity = fill.executed_qty or requested_qty
    return {
        "exchange_order_id": fill.exchange_order_id,
        "symbol": symbol,
        "type": order_type.value,
        "side": side.value,
        "order_type": "MARKET",
        "price": price,
        "quantity": quantity,
        "value": fill.quote_qty or price * quantity,
        "status": fill.status.value,
        "fill_percent": fill.fill_percent(requested_qty),
        "side_effect": side_effect.value if side_effect else None,
        "pnl": pnl,
    }


def execute(ctx: BotContext, validation: ValidationResult, symbol: str, price: float, exchange) -> ExecutionResult:
    """Carry out a successful validation. Raises SignalBotError subclasses on failure."""
    if not validation.success or validation.directive is None:
        raise ValidationError(validation.error or "Signal did not pass validation")

    if not is_entry(validation.directive):
        return close_position(
            ctx, validation.position_id, exchange,
            reason=CloseReason.SIGNAL, reference_price=price,
        )
    return _open_position(ctx, validation, symbol, price, exchange)


def _open_position(ctx: BotContext, validation: ValidationResult, symbol: str, price: float,
                   exchange) -> ExecutionResult:
    bot = ctx.bot
    side = position_side(validation.directive)
    quantity = resolve_quantity(validation.computed_quantity, symbol, exchange)
    side_effect = validation.side_effect if bot.account_type == AccountType.MARGIN else None

    fill = _submit(exchange, bot.account_type, symbol, validation.computed_side, quantity, side_effect, price)
    if fill.status not in (OrderStatus.FILLED, OrderStatus.PARTIALLY_FILLED):
        logger.warning("Entry order %s for %s ended %s", fill.exchange_order_id, symbol, fill.status.value)
        raise ExchangeRejectionError(
            f"Entry order was {fill.status.value}",
            details={"exchange_order_id": fill.exchange_order_id},
        )

    entry_price = fill.fill_price or price
    filled_qty = fill.executed_qty or quantity
    stop_loss, take_profit = protective_levels(bot, side, entry_price)
    entry_order = _order_record(
        OrderType.ENTRY, symbol, validation.computed_side, fill, quantity, entry_price, side_effect,
    )
    try:
        position, order = database.open_position(
            {
                "bot_id": bot.id,
                "symbol": symbol,
                "side": side.value,
                "account_type": bot.account_type.value,
                "entry_price": entry_price,
                "quantity": filled_qty,
                "entry_value": entry_price * filled_qty,
                "stop_loss": stop_loss,
                "take_profit": take_profit,
            },
            entry_order,
        )
    except PersistenceError:
        logger.critical(
            "Entry order %s for bot %s %s %s FILLED on exchange but was not recorded",
            fill.exchange_order_id, bot.id, side.value, symbol,
        )
        raise

    logger.info("Opened %s %s qty=%s @ %s (position %s)", side.value, symbol, filled_qty, entry_price, position["id"])
    return ExecutionResult(
        success=True,
        position_id=position["id"],
        order_id=order["id"],
        position_status=PositionStatus.OPEN,
        quantity=filled_qty,
        price=entry_price,
        message=f"Opened {side.value} position on {symbol}",
    )


def close_position(ctx: BotContext, position_id: str, exchange, reason: CloseReason,
                   reference_price: float | None = None) -> ExecutionResult:
    """
    Close a position in full, at most once.

    The write lock is held from the OPEN re-check until the status flip, so a
    concurrent closer either waits and then sees a non-OPEN row (skipped), or
    never gets to submit an order. An exchange error rolls the transaction
    back and leaves the position OPEN.
    """
    terminal = PositionStatus.MARKET_CLOSED if reason == CloseReason.MANUAL else PositionStatus.CLOSED

    with database.locked_open_position(position_id) as (conn, row):
        if row is None:
            logger.info("Position %s is no longer OPEN, close (%s) skipped", position_id, reason.value)
            return ExecutionResult(
                success=True, skipped=True, position_id=position_id,
                message="Position already closed",
            )

        position = Position(**row)
        side = close_side(position.side)
        margin = position.account_type == AccountType.MARGIN
        side_effect = None
        if margin:
            side_effect = SideEffect.AUTO_REPAY if ctx.bot.auto_repay else SideEffect.NO_SIDE_EFFECT

        fill = _submit(exchange, position.account_type, position.symbol, side, position.quantity,
                       side_effect, reference_price)

        exit_price = fill.fill_price or reference_price or position.current_price or position.entry_price
        try:
            result = _record_exit(conn, ctx, position, fill, side, side_effect, exit_price, terminal, reason)
        except (sqlite3.Error, PersistenceError) as e:
            logger.critical(
                "Exit order %s for position %s was sent to the exchange (%s) but could not be recorded: %s",
                fill.exchange_order_id, position_id, fill.status.value, e,
            )
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Failed to record close of position {position_id}: {e}") from e

    logger.info(
        "Close of position %s (%s): %s, pnl=%s",
        position_id, reason.value, result.position_status.value, result.pnl,
    )
    return result


def _record_exit(conn, ctx: BotContext, position: Position, fill: OrderFill, side, side_effect,
                 exit_price: float, terminal: PositionStatus, reason: CloseReason) -> ExecutionResult:
    if fill.status == OrderStatus.FILLED:
        exit_value = fill.quote_qty or exit_price * position.quantity
        pnl, pnl_percent = compute_pnl(position.side, position.entry_value, exit_value)
        order = database.record_close(
            conn, position.id, ctx.bot.id,
            {
                "status": terminal.value,
                "exit_price": exit_price,
                "exit_value": exit_value,
                "pnl": pnl,
                "pnl_percent": pnl_percent,
                "close_reason": reason.value,
            },
            _order_record(OrderType.EXIT, position.symbol, side, fill, position.quantity,
                          exit_price, side_effect, pnl),
        )
        return ExecutionResult(
            success=True,
            position_id=position.id,
            order_id=order["id"],
            position_status=terminal,
            quantity=position.quantity,
            price=exit_price,
            pnl=pnl,
            message=f"Closed {position.side.value} position on {position.symbol}",
        )

    # Unfilled or partial exits leave the position OPEN for the next close attempt
    order = database.record_exit_order(
        conn, position.id,
        _order_record(OrderType.EXIT, position.symbol, side, fill, position.quantity, exit_price, side_effect),
    )
    if fill.status in (OrderStatus.PARTIALLY_FILLED, OrderStatus.NEW):
        logger.warning(
            "Exit order %s for position %s is %s, position left OPEN",
            fill.exchange_order_id, position.id, fill.status.value,
        )
        return ExecutionResult(
            success=True,
            position_id=position.id,
            order_id=order["id"],
            position_status=PositionStatus.OPEN,
            quantity=fill.executed_qty,
            price=exit_price,
            message=f"Exit order {fill.status.value}, position remains open",
        )

    logger.warning(
        "Exit order %s for position %s ended %s with no fill, position left OPEN",
        fill.exchange_order_id, position.id, fill.status.value,
    )
    return ExecutionResult(
        success=False,
        position_id=position.id,
        order_id=order["id"],
        position_status=PositionStatus.OPEN,
        message=f"Exit order was {fill.status.value}",
    )
