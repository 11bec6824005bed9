import pytest

from signalbot.core.actions import (
    close_side, exit_directive, is_entry, order_side, position_side, resolve_action,
)
from signalbot.core.errors import InvalidActionError
from signalbot.models.trade import Directive, OrderSide, PositionSide


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("ENTER_LONG", Directive.ENTER_LONG),
        ("enter-long", Directive.ENTER_LONG),
        ("Buy", Directive.ENTER_LONG),
        ("long", Directive.ENTER_LONG),
        ("EXIT-LONG", Directive.EXIT_LONG),
        ("close_long", Directive.EXIT_LONG),
        ("SELL_LONG", Directive.EXIT_LONG),
        ("sell", Directive.EXIT_LONG),
        ("ENTER-SHORT", Directive.ENTER_SHORT),
        ("short", Directive.ENTER_SHORT),
        ("exit_short", Directive.EXIT_SHORT),
        ("CLOSE-SHORT", Directive.EXIT_SHORT),
        ("buy_short", Directive.EXIT_SHORT),
        ("cover", Directive.EXIT_SHORT),
        ("  Exit-Long ", Directive.EXIT_LONG),
    ],
)
def test_resolve_action_aliases(raw, expected):
    assert resolve_action(raw) == expected


@pytest.mark.parametrize("raw", ["HOLD", "", None, "ENTER", "BUY-LONG-NOW"])
def test_resolve_action_rejects_unknown(raw):
    with pytest.raises(InvalidActionError) as exc:
        resolve_action(raw)
    assert exc.value.category == "ACTION_UNRECOGNIZED"
    assert exc.value.status_code == 400
    assert any(a.startswith("ENTER_LONG") for a in exc.value.details["supported_actions"])


def test_directive_helpers():
    assert is_entry(Directive.ENTER_LONG) and is_entry(Directive.ENTER_SHORT)
    assert not is_entry(Directive.EXIT_LONG) and not is_entry(Directive.EXIT_SHORT)

    assert position_side(Directive.EXIT_LONG) == PositionSide.LONG
    assert position_side(Directive.ENTER_SHORT) == PositionSide.SHORT

    assert order_side(Directive.ENTER_LONG) == OrderSide.BUY
    assert order_side(Directive.EXIT_LONG) == OrderSide.SELL
    assert order_side(Directive.ENTER_SHORT) == OrderSide.SELL
    assert order_side(Directive.EXIT_SHORT) == OrderSide.BUY

    assert close_side(PositionSide.LONG) == OrderSide.SELL
    assert close_side(PositionSide.SHORT) == OrderSide.BUY
    assert exit_directive(PositionSide.SHORT) == Directive.EXIT_SHORT
