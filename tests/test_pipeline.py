import json
import sqlite3

import pytest

from signalbot import database
import signalbot.core.pipeline as pipeline_module
from signalbot.core.executor import close_position
from signalbot.core.pipeline import SignalPipeline
from signalbot.models.trade import CloseReason

from conftest import FakeExchange, count_rows, rejection


@pytest.fixture
def pipeline(exchange):
    return SignalPipeline(exchange_factory=lambda ex: exchange)


def _alert(**body):
    return json.dumps(body)


def test_enter_long_opens_position(pipeline, spot_bot):
    result = pipeline.process_alert(
        _alert(action="ENTER_LONG", symbol="BTCUSDT", price=50000), "application/json", spot_bot["id"],
    )

    assert result.success and result.status_code == 200
    position = database.get_position(result.position_id)
    assert position["status"] == "OPEN"
    assert position["side"] == "LONG"
    assert position["entry_price"] == 50000
    assert database.list_positions(spot_bot["id"]) == [position]

    signal = database.get_signal(result.signal_id)
    assert signal["processed"] is True
    assert signal["error"] is None
    assert signal["position_id"] == result.position_id


def test_text_alert_enter_then_exit(pipeline, spot_bot, exchange):
    bot_id = spot_bot["id"]
    entered = pipeline.process_alert(f"ENTER-LONG_BINANCE_BTCUSDT_MyBot_4M_{bot_id}", "text/plain", bot_id)
    assert entered.success

    exchange.price = 51000.0
    exited = pipeline.process_alert(f"EXIT-LONG_BINANCE_BTCUSDT_MyBot_4M_{bot_id}", "text/plain", bot_id)
    assert exited.success
    assert exited.position_id == entered.position_id
    assert exited.details["pnl"] == pytest.approx(2.0)
    assert database.get_position(entered.position_id)["status"] == "CLOSED"


def test_price_is_fetched_when_alert_has_none(pipeline, spot_bot, exchange):
    exchange.price = 40000.0
    result = pipeline.process_alert(_alert(action="BUY", symbol="BTCUSDT"), None, spot_bot["id"])
    assert result.success
    assert "get_price" in exchange.calls
    assert database.get_position(result.position_id)["entry_price"] == 40000.0


def test_unknown_bot_is_404_without_signal_row(pipeline):
    result = pipeline.process_alert(_alert(action="BUY", symbol="BTCUSDT"), None, "missing-bot")
    assert not result.success
    assert result.status_code == 404
    assert result.category == "BOT_NOT_FOUND"
    assert count_rows("signals") == 0


def test_parse_failure_is_400_with_examples(pipeline, spot_bot):
    result = pipeline.process_alert("not a signal", "text/plain", spot_bot["id"])
    assert result.status_code == 400
    assert result.category == "PARSE_ERROR"
    assert "examples" in result.details
    assert count_rows("signals") == 0


def test_bot_id_mismatch(pipeline, spot_bot):
    result = pipeline.process_alert("ENTER-LONG_BINANCE_BTCUSDT_MyBot_4M_wrong", "text/plain", spot_bot["id"])
    assert result.status_code == 400
    assert result.category == "BOT_ID_MISMATCH"


def test_unrecognized_action_marks_signal(pipeline, spot_bot, exchange):
    result = pipeline.process_alert(_alert(action="HODL", symbol="BTCUSDT"), None, spot_bot["id"])
    assert result.status_code == 400
    assert result.category == "ACTION_UNRECOGNIZED"
    signal = database.get_signal(result.signal_id)
    assert signal["processed"] is True
    assert '"HODL" is not a valid action' in signal["error"]
    assert exchange.calls == []


def test_inactive_bot_records_signal_and_404(pipeline, make_bot):
    bot = make_bot(is_active=False)
    result = pipeline.process_alert(_alert(action="BUY", symbol="BTCUSDT"), None, bot["id"])
    assert result.status_code == 404
    assert result.category == "BOT_INACTIVE"
    assert database.get_signal(result.signal_id)["error"]


def test_inactive_exchange_is_404(pipeline, make_bot):
    bot = make_bot(exchange_active=False)
    result = pipeline.process_alert(_alert(action="BUY", symbol="BTCUSDT"), None, bot["id"])
    assert result.status_code == 404
    assert result.category == "EXCHANGE_INACTIVE"


def test_symbol_not_allowed_lists_configured(pipeline, spot_bot):
    result = pipeline.process_alert(_alert(action="BUY", symbol="DOGEUSDT"), None, spot_bot["id"])
    assert result.status_code == 400
    assert result.category == "SYMBOL_NOT_ALLOWED"
    assert result.details["allowed_symbols"] == ["BTCUSDT"]


def test_empty_allow_list_accepts_any_symbol(make_bot, exchange):
    bot = make_bot(symbols=[])
    exchange.price = 2000.0
    result = SignalPipeline(lambda ex: exchange).process_alert(
        _alert(action="BUY", symbol="ETHUSDT"), None, bot["id"],
    )
    assert result.success


def test_price_unavailable_is_500(pipeline, spot_bot, exchange):
    exchange.price_errors["BTCUSDT"] = rejection("Service unavailable", code=-1001)
    result = pipeline.process_alert(_alert(action="BUY", symbol="BTCUSDT"), None, spot_bot["id"])
    assert result.status_code == 500
    assert result.category == "PRICE_UNAVAILABLE"
    assert result.error == "Failed to fetch current price"


def test_exit_without_position_fails_validation(pipeline, spot_bot, exchange):
    result = pipeline.process_alert(_alert(action="EXIT_LONG", symbol="BTCUSDT", price=50000), None, spot_bot["id"])
    assert result.status_code == 400
    assert "No open LONG position" in result.error
    assert "place_order" not in exchange.calls


def test_exchange_rejection_is_500_and_recorded(pipeline, spot_bot, exchange):
    exchange.order_error = rejection()
    result = pipeline.process_alert(_alert(action="BUY", symbol="BTCUSDT", price=50000), None, spot_bot["id"])
    assert result.status_code == 500
    assert result.category == "EXCHANGE_REJECTION"
    assert "-2010" in result.error
    assert count_rows("positions") == 0
    signal = database.get_signal(result.signal_id)
    assert signal["processed"] is True and "-2010" in signal["error"]


def test_duplicate_entry_is_rejected(pipeline, spot_bot):
    body = _alert(action="ENTER_LONG", symbol="BTCUSDT", price=50000)
    assert pipeline.process_alert(body, None, spot_bot["id"]).success
    again = pipeline.process_alert(body, None, spot_bot["id"])
    assert again.status_code == 400
    assert "already exists" in again.error
    assert len(database.list_positions(spot_bot["id"], "OPEN")) == 1


def test_unexpected_error_is_internal(spot_bot):
    class Broken(FakeExchange):
        def get_min_notional(self, symbol):
            return 5.0

        def place_order(self, *args, **kwargs):
            raise RuntimeError("boom")

    result = SignalPipeline(lambda ex: Broken()).process_alert(
        _alert(action="BUY", symbol="BTCUSDT", price=50000), None, spot_bot["id"],
    )
    assert result.status_code == 500
    assert result.category == "INTERNAL_ERROR"
    assert database.get_signal(result.signal_id)["error"].startswith("Internal error")


def test_close_lost_to_another_closer_is_skipped(pipeline, spot_bot, exchange, open_position, ctx_for, monkeypatch):
    position = open_position(spot_bot)
    real_validate = pipeline_module.validate

    def validate_then_sweep_closes(*args, **kwargs):
        result = real_validate(*args, **kwargs)
        close_position(ctx_for(spot_bot), position["id"], exchange, CloseReason.TAKE_PROFIT, 51000.0)
        return result

    monkeypatch.setattr(pipeline_module, "validate", validate_then_sweep_closes)
    result = pipeline.process_alert(_alert(action="EXIT_LONG", symbol="BTCUSDT", price=51000), None, spot_bot["id"])

    assert result.success and result.status_code == 200
    assert result.skipped is True
    assert len(exchange.orders) == 1
    assert database.get_position(position["id"])["close_reason"] == "TAKE_PROFIT"
    signal = database.get_signal(result.signal_id)
    assert signal["processed"] is True and signal["error"] is None


def test_signal_insert_failure_is_persistence_error(pipeline, spot_bot, exchange, monkeypatch):
    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(database, "create_signal", locked)
    result = pipeline.process_alert(_alert(action="BUY", symbol="BTCUSDT", price=50000), None, spot_bot["id"])

    assert not result.success
    assert result.status_code == 500
    assert result.category == "PERSISTENCE_ERROR"
    assert "database is locked" in result.error
    assert exchange.calls == []
    assert count_rows("positions") == 0
