import os
import sys
import tempfile
import threading
from pathlib import Path

import pytest

# Settings are read at import time; keep the module-level database out of the repo
os.environ.setdefault("DB_PATH", os.path.join(tempfile.mkdtemp(prefix="signalbot-"), "import.db"))
os.environ.setdefault("MONITOR_INTERVAL_SECONDS", "0")

# Ensure the project root is on sys.path for module imports
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from signalbot import database  # noqa: E402
from signalbot.core.errors import ExchangeRejectionError  # noqa: E402
from signalbot.core.guard import load_bot_context  # noqa: E402
from signalbot.models.bot import LotSize  # noqa: E402
from signalbot.models.trade import OrderFill, OrderStatus, SideEffect  # noqa: E402


class FakeExchange:
    """In-memory stand-in for BinanceConnector. Records every call."""

    def __init__(self, price=50000.0, prices=None, balances=None, margin_balances=None,
                 borrowable=None, lot_size=None, min_notional=5.0):
        self.price = price
        self.prices = dict(prices or {})
        self.price_errors: dict[str, Exception] = {}
        self.balances = {"USDT": 10000.0} if balances is None else dict(balances)
        self.margin_balances = dict(margin_balances or {})
        self.borrowable = dict(borrowable or {})
        self.lot_size = lot_size or LotSize(min_qty=0.00001, step_size=0.00001)
        self.lot_size_error: Exception | None = None
        self.min_notional = min_notional
        self.order_status = OrderStatus.FILLED
        self.fill_price: float | None = None
        self.executed_ratio = 1.0
        self.order_error: Exception | None = None
        self.order_delay = 0.0
        self.orders: list[dict] = []
        self.calls: list[str] = []
        self._lock = threading.Lock()
        self._next_id = 1000

    def get_price(self, symbol):
        self.calls.append("get_price")
        if symbol in self.price_errors:
            raise self.price_errors[symbol]
        return self.prices.get(symbol, self.price)

    def get_lot_size(self, symbol):
        self.calls.append("get_lot_size")
        if self.lot_size_error:
            raise self.lot_size_error
        return self.lot_size

    def get_min_notional(self, symbol):
        self.calls.append("get_min_notional")
        return self.min_notional

    def split_symbol(self, symbol):
        self.calls.append("split_symbol")
        return symbol[:-4], symbol[-4:]

    def get_balance(self, asset):
        self.calls.append("get_balance")
        return self.balances.get(asset, 0.0)

    def get_margin_balance(self, asset):
        self.calls.append("get_margin_balance")
        return self.margin_balances.get(asset, 0.0)

    def get_max_borrowable(self, asset):
        self.calls.append("get_max_borrowable")
        return self.borrowable.get(asset, 0.0)

    def _fill(self, symbol, side, quantity, side_effect, reference_price):
        if self.order_delay:
            threading.Event().wait(self.order_delay)
        if self.order_error:
            raise self.order_error
        with self._lock:
            self._next_id += 1
            order_id = str(self._next_id)
            self.orders.append({
                "symbol": symbol, "side": getattr(side, "value", side),
                "quantity": quantity, "side_effect": side_effect, "order_id": order_id,
            })
        price = self.fill_price or reference_price or self.prices.get(symbol, self.price)
        executed = quantity * self.executed_ratio
        if self.order_status in (OrderStatus.CANCELED, OrderStatus.REJECTED, OrderStatus.EXPIRED):
            executed = 0.0
        return OrderFill(
            exchange_order_id=order_id,
            status=self.order_status,
            fill_price=price,
            executed_qty=executed,
            quote_qty=price * executed,
        )

    def place_order(self, symbol, side, quantity, reference_price=None):
        self.calls.append("place_order")
        return self._fill(symbol, side, quantity, None, reference_price)

    def place_margin_order(self, symbol, side, quantity, side_effect=SideEffect.NO_SIDE_EFFECT,
                           reference_price=None):
        self.calls.append("place_margin_order")
        return self._fill(symbol, side, quantity, side_effect, reference_price)


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "signalbot.db"))
    database.init_db()
    return database


@pytest.fixture
def exchange():
    return FakeExchange()


@pytest.fixture
def make_bot():
    def _make(exchange_active=True, **overrides):
        ex = database.save_exchange({"name": "binance", "api_key": "k", "api_secret": "s",
                                     "is_active": exchange_active})
        bot = {
            "name": "MyBot",
            "exchange_id": ex["id"],
            "symbols": ["BTCUSDT"],
            "account_type": "SPOT",
            "trade_amount": 100.0,
            "trade_amount_type": "QUOTE",
            **overrides,
        }
        return database.save_bot(bot)
    return _make


@pytest.fixture
def spot_bot(make_bot):
    return make_bot()


@pytest.fixture
def ctx_for():
    def _ctx(bot):
        return load_bot_context(bot["id"], require_active=False)
    return _ctx


@pytest.fixture
def open_position():
    """Insert an OPEN position (and its ENTRY order) directly."""
    def _open(bot, side="LONG", symbol="BTCUSDT", quantity=0.002, entry_price=50000.0,
              stop_loss=None, take_profit=None, account_type=None):
        position, _ = database.open_position(
            {
                "bot_id": bot["id"],
                "symbol": symbol,
                "side": side,
                "account_type": account_type or bot["account_type"],
                "entry_price": entry_price,
                "quantity": quantity,
                "entry_value": entry_price * quantity,
                "stop_loss": stop_loss,
                "take_profit": take_profit,
            },
            {
                "exchange_order_id": "seed",
                "symbol": symbol,
                "type": "ENTRY",
                "side": "BUY" if side == "LONG" else "SELL",
                "price": entry_price,
                "quantity": quantity,
                "value": entry_price * quantity,
                "status": "FILLED",
            },
        )
        return position
    return _open


def count_rows(table: str) -> int:
    conn = database._get_connection()
    n = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    conn.close()
    return n


def rejection(msg="Account has insufficient balance for requested action.", code=-2010):
    return ExchangeRejectionError(msg, code=code)
