import pytest

from signalbot.core.validator import entry_size, validate, validate_margin, validate_spot
from signalbot.models.trade import Directive, OrderSide, SideEffect

from conftest import FakeExchange, rejection


@pytest.fixture
def margin_bot(make_bot):
    return make_bot(account_type="MARGIN", leverage=2.0, auto_repay=True)


def test_spot_entry_sizes_quote_amount(spot_bot, ctx_for, exchange):
    result = validate_spot(ctx_for(spot_bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, exchange)
    assert result.success
    assert result.computed_side == OrderSide.BUY
    assert result.computed_quantity == pytest.approx(0.002)
    assert result.notional == pytest.approx(100.0)
    assert result.side_effect is None


def test_spot_entry_base_amount(make_bot, ctx_for, exchange):
    bot = make_bot(trade_amount=0.01, trade_amount_type="BASE")
    result = validate(ctx_for(bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, exchange)
    assert result.success
    assert result.computed_quantity == pytest.approx(0.01)


def test_spot_entry_below_min_notional(make_bot, ctx_for, exchange):
    bot = make_bot(trade_amount=4.0)
    result = validate_spot(ctx_for(bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, exchange)
    assert not result.success
    assert "minimum" in result.error


def test_spot_entry_insufficient_balance(spot_bot, ctx_for):
    ex = FakeExchange(balances={"USDT": 50.0})
    result = validate_spot(ctx_for(spot_bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, ex)
    assert not result.success
    assert "Insufficient USDT" in result.error


@pytest.mark.parametrize("directive", [Directive.ENTER_SHORT, Directive.EXIT_SHORT])
def test_spot_short_unsupported(spot_bot, ctx_for, exchange, directive):
    result = validate_spot(ctx_for(spot_bot), directive, "BTCUSDT", 50000.0, exchange)
    assert not result.success
    assert result.error == "Short selling is not supported on SPOT"


def test_entry_rejected_while_position_open(spot_bot, ctx_for, exchange, open_position):
    open_position(spot_bot)
    result = validate_spot(ctx_for(spot_bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, exchange)
    assert not result.success
    assert "already exists" in result.error
    assert "place_order" not in exchange.calls


def test_exit_without_open_position_makes_no_exchange_call(spot_bot, ctx_for, exchange):
    result = validate_spot(ctx_for(spot_bot), Directive.EXIT_LONG, "BTCUSDT", 50000.0, exchange)
    assert not result.success
    assert "No open LONG position" in result.error
    assert exchange.calls == []


def test_exit_uses_full_position_quantity(spot_bot, ctx_for, exchange, open_position):
    position = open_position(spot_bot, quantity=0.00237)
    result = validate_spot(ctx_for(spot_bot), Directive.EXIT_LONG, "BTCUSDT", 51000.0, exchange)
    assert result.success
    assert result.computed_side == OrderSide.SELL
    assert result.computed_quantity == 0.00237
    assert result.position_id == position["id"]


def test_margin_exit_side_effect_follows_auto_repay(make_bot, ctx_for, exchange, open_position):
    repay_bot = make_bot(account_type="MARGIN", auto_repay=True)
    plain_bot = make_bot(account_type="MARGIN", auto_repay=False)
    open_position(repay_bot, side="SHORT")
    open_position(plain_bot, side="LONG")

    r1 = validate_margin(ctx_for(repay_bot), Directive.EXIT_SHORT, "BTCUSDT", 49000.0, exchange)
    r2 = validate_margin(ctx_for(plain_bot), Directive.EXIT_LONG, "BTCUSDT", 49000.0, exchange)
    assert r1.success and r1.side_effect == SideEffect.AUTO_REPAY
    assert r1.computed_side == OrderSide.BUY
    assert r2.success and r2.side_effect == SideEffect.NO_SIDE_EFFECT


def test_margin_exit_requires_matching_side(margin_bot, ctx_for, exchange, open_position):
    open_position(margin_bot, side="LONG")
    result = validate_margin(ctx_for(margin_bot), Directive.EXIT_SHORT, "BTCUSDT", 50000.0, exchange)
    assert not result.success


def test_margin_long_with_enough_free_quote(margin_bot, ctx_for):
    ex = FakeExchange(margin_balances={"USDT": 1000.0})
    result = validate_margin(ctx_for(margin_bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, ex)
    assert result.success
    # 100 USDT x2 leverage
    assert result.computed_quantity == pytest.approx(0.004)
    assert result.side_effect == SideEffect.NO_SIDE_EFFECT


def test_margin_long_borrows_shortfall(margin_bot, ctx_for):
    ex = FakeExchange(margin_balances={"USDT": 50.0}, borrowable={"USDT": 500.0})
    result = validate_margin(ctx_for(margin_bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, ex)
    assert result.success
    assert result.side_effect == SideEffect.MARGIN_BUY


def test_margin_long_insufficient_even_with_borrow(margin_bot, ctx_for):
    ex = FakeExchange(margin_balances={"USDT": 50.0}, borrowable={"USDT": 100.0})
    result = validate_margin(ctx_for(margin_bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, ex)
    assert not result.success
    assert "Insufficient margin" in result.error


def test_margin_short_borrow_check(margin_bot, ctx_for):
    ok = FakeExchange(margin_balances={"BTC": 0.001}, borrowable={"BTC": 0.01})
    result = validate_margin(ctx_for(margin_bot), Directive.ENTER_SHORT, "BTCUSDT", 50000.0, ok)
    assert result.success
    assert result.computed_side == OrderSide.SELL
    assert result.side_effect == SideEffect.MARGIN_BUY

    short = FakeExchange(margin_balances={"BTC": 0.001}, borrowable={"BTC": 0.002})
    result = validate_margin(ctx_for(margin_bot), Directive.ENTER_SHORT, "BTCUSDT", 50000.0, short)
    assert not result.success
    assert "borrowable BTC" in result.error


def test_exchange_failure_becomes_failed_result(spot_bot, ctx_for):
    ex = FakeExchange()

    def boom(asset):
        raise rejection("Invalid API-key, IP, or permissions for action.", code=-2015)

    ex.get_balance = boom
    result = validate(ctx_for(spot_bot), Directive.ENTER_LONG, "BTCUSDT", 50000.0, ex)
    assert not result.success
    assert result.error_category == "EXCHANGE_REJECTION"
    assert "-2015" in result.error


def test_entry_size_applies_leverage(margin_bot, ctx_for):
    bot = ctx_for(margin_bot).bot
    assert entry_size(bot, 50000.0, bot.leverage) == pytest.approx(0.004)
