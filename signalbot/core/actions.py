"""
Action resolver: maps free-text alert vocabulary to trade directives.
"""
from signalbot.core.errors import InvalidActionError
from signalbot.models.trade import Directive, OrderSide, PositionSide

ACTION_ALIASES: dict[str, Directive] = {
    "ENTER_LONG": Directive.ENTER_LONG,
    "LONG": Directive.ENTER_LONG,
    "BUY": Directive.ENTER_LONG,

    "EXIT_LONG": Directive.EXIT_LONG,
    "CLOSE_LONG": Directive.EXIT_LONG,
    "SELL_LONG": Directive.EXIT_LONG,
    "SELL": Directive.EXIT_LONG,

    "ENTER_SHORT": Directive.ENTER_SHORT,
    "SHORT": Directive.ENTER_SHORT,

    "EXIT_SHORT": Directive.EXIT_SHORT,
    "CLOSE_SHORT": Directive.EXIT_SHORT,
    "BUY_SHORT": Directive.EXIT_SHORT,
    "COVER": Directive.EXIT_SHORT,
}

SUPPORTED_ACTIONS = [
    "ENTER_LONG (or BUY, LONG)",
    "EXIT_LONG (or SELL, CLOSE_LONG, SELL_LONG)",
    "ENTER_SHORT (or SHORT)",
    "EXIT_SHORT (or COVER, CLOSE_SHORT, BUY_SHORT)",
]


def normalize_action_token(action: str) -> str:
    return action.strip().upper().replace("-", "_")


def resolve_action(action: str | None) -> Directive:
    """Resolve a raw alert action (e.g. "enter-long", "COVER") to a Directive."""
    token = normalize_action_token(action or "")
    directive = ACTION_ALIASES.get(token)
    if directive is None:
        raise InvalidActionError(
            f'"{action}" is not a valid action',
            details={"supported_actions": SUPPORTED_ACTIONS},
        )
    return directive


def is_entry(directive: Directive) -> bool:
    return directive in (Directive.ENTER_LONG, Directive.ENTER_SHORT)


def position_side(directive: Directive) -> PositionSide:
    if directive in (Directive.ENTER_LONG, Directive.EXIT_LONG):
        return PositionSide.LONG
    return PositionSide.SHORT


def order_side(directive: Directive) -> OrderSide:
    # Short entry sells first; covering a short buys back
    if directive in (Directive.ENTER_LONG, Directive.EXIT_SHORT):
        return OrderSide.BUY
    return OrderSide.SELL


def close_side(side: PositionSide) -> OrderSide:
    return OrderSide.SELL if side == PositionSide.LONG else OrderSide.BUY


def exit_directive(side: PositionSide) -> Directive:
    return Directive.EXIT_LONG if side == PositionSide.LONG else Directive.EXIT_SHORT
