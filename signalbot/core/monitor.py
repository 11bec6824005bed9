"""
Position monitor: periodic take-profit / stop-loss sweep.

A sweep can be triggered externally (cron route) or by the optional
in-process loop. Either way, closes go through the executor's guarded
`close_position`, so a sweep racing an exit signal never double-closes.
"""
import logging
import threading
from datetime import datetime, timezone

from signalbot import database
from signalbot.core.errors import SignalBotError
from signalbot.core.executor import close_position
from signalbot.core.guard import load_bot_context
from signalbot.models.trade import CloseReason, Position, PositionSide, PositionStatus, SweepReport
from signalbot.services.binance_connector import BinanceConnector

logger = logging.getLogger("signalbot.monitor")


def evaluate_triggers(position: Position, price: float) -> CloseReason | None:
    """Which protective level, if any, the price has crossed. Take profit wins."""
    tp, sl = position.take_profit, position.stop_loss
    if position.side == PositionSide.LONG:
        if tp is not None and price >= tp:
            return CloseReason.TAKE_PROFIT
        if sl is not None and price <= sl:
            return CloseReason.STOP_LOSS
    else:
        if tp is not None and price <= tp:
            return CloseReason.TAKE_PROFIT
        if sl is not None and price >= sl:
            return CloseReason.STOP_LOSS
    return None


class PositionMonitor:
    def __init__(self, exchange_factory=None):
        self.exchange_factory = exchange_factory or BinanceConnector.from_exchange
        self.thread: threading.Thread | None = None
        self.stop_event = threading.Event()
        self.last_sweep: datetime | None = None
        self.last_report: SweepReport | None = None

    def run_sweep(self) -> SweepReport:
        report = SweepReport()
        clients = {}  # exchange id -> client, reused within one sweep

        for row in database.list_monitored_positions():
            report.checked += 1
            position = Position(**row)
            try:
                ctx = load_bot_context(position.bot_id, require_active=False)
                exchange = clients.get(ctx.exchange.id)
                if exchange is None:
                    exchange = clients[ctx.exchange.id] = self.exchange_factory(ctx.exchange)

                price = exchange.get_price(position.symbol)
                database.update_position_price(position.id, price)

                reason = evaluate_triggers(position, price)
                if reason is None:
                    continue
                report.triggered += 1
                logger.info(
                    "%s hit for position %s %s %s at %s",
                    reason.value, position.id, position.side.value, position.symbol, price,
                )

                result = close_position(ctx, position.id, exchange, reason=reason, reference_price=price)
                if result.skipped:
                    report.skipped += 1
                elif result.success and result.position_status != PositionStatus.OPEN:
                    report.closed += 1
                    report.closed_position_ids.append(position.id)
                elif not result.success:
                    report.failed += 1
            except SignalBotError as e:
                report.failed += 1
                logger.error("Monitor failed for position %s: %s", position.id, e)
            except Exception:
                report.failed += 1
                logger.exception("Unexpected monitor error for position %s", position.id)

        self.last_sweep = datetime.now(timezone.utc)
        self.last_report = report
        logger.info(
            "Sweep done: checked=%d triggered=%d closed=%d skipped=%d failed=%d",
            report.checked, report.triggered, report.closed, report.skipped, report.failed,
        )
        return report

    # ── Background loop ──

    def _loop(self, interval: float):
        logger.info("Position monitor loop started (every %ss)", interval)
        while not self.stop_event.is_set():
            try:
                self.run_sweep()
            except Exception:
                logger.exception("Position monitor sweep crashed")
            self.stop_event.wait(interval)
        logger.info("Position monitor loop stopped")

    @property
    def is_running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self, interval: float):
        if self.is_running:
            return
        self.stop_event.clear()
        self.thread = threading.Thread(target=self._loop, args=(interval,), daemon=True)
        self.thread.start()

    def stop(self, timeout: float = 5.0):
        self.stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout)
        self.thread = None
