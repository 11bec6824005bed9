"""
Pre-trade validation for spot and cross-margin bots.

Turns a directive into a concrete order (side, raw quantity, margin side
effect) or a failed ValidationResult. Validation never raises: exchange
errors and rule violations both come back as `success=False`.
"""
import logging

from signalbot import database
from signalbot.core.actions import is_entry, order_side, position_side
from signalbot.core.errors import SignalBotError
from signalbot.models.bot import AccountType, Bot, BotContext, TradeAmountType
from signalbot.models.trade import Directive, SideEffect, ValidationResult

logger = logging.getLogger("signalbot.validator")

VALIDATION_ERROR = "VALIDATION_ERROR"
EXCHANGE_ERROR = "EXCHANGE_REJECTION"


def _fail(directive: Directive, message: str, category: str = VALIDATION_ERROR) -> ValidationResult:
    return ValidationResult(success=False, directive=directive, error=message, error_category=category)


def entry_size(bot: Bot, price: float, leverage: float = 1.0) -> float:
    """Base-asset quantity for an entry before any precision is applied."""
    if bot.trade_amount_type == TradeAmountType.QUOTE:
        size = bot.trade_amount / price
    else:
        size = bot.trade_amount
    return size * leverage


def _check_entry_common(ctx: BotContext, directive: Directive, symbol: str, size: float,
                        price: float, exchange) -> ValidationResult | None:
    """Rules shared by spot and margin entries. Returns a failure or None."""
    existing = database.get_open_position(ctx.bot.id, symbol)
    if existing:
        return _fail(
            directive,
            f"An open {existing['side']} position already exists for {symbol}",
        )
    if size <= 0:
        return _fail(directive, "Trade amount must be greater than zero")

    notional = size * price
    min_notional = exchange.get_min_notional(symbol)
    if notional < min_notional:
        return _fail(
            directive,
            f"Order value {notional:.2f} is below the exchange minimum of {min_notional:.2f}",
        )
    return None


def _check_exit(ctx: BotContext, directive: Directive, symbol: str,
                side_effect: SideEffect | None = None) -> ValidationResult:
    side = position_side(directive)
    position = database.get_open_position(ctx.bot.id, symbol, side.value)
    if position is None:
        return _fail(directive, f"No open {side.value} position found for {symbol}")
    return ValidationResult(
        success=True,
        directive=directive,
        computed_side=order_side(directive),
        computed_quantity=position["quantity"],
        side_effect=side_effect,
        position_id=position["id"],
    )


def _validate_spot(ctx: BotContext, directive: Directive, symbol: str, price: float, exchange) -> ValidationResult:
    if directive in (Directive.ENTER_SHORT, Directive.EXIT_SHORT):
        return _fail(directive, "Short selling is not supported on SPOT")

    if directive == Directive.EXIT_LONG:
        return _check_exit(ctx, directive, symbol)

    size = entry_size(ctx.bot, price)
    failure = _check_entry_common(ctx, directive, symbol, size, price, exchange)
    if failure:
        return failure

    notional = size * price
    _, quote = exchange.split_symbol(symbol)
    free_quote = exchange.get_balance(quote)
    if free_quote < notional:
        return _fail(
            directive,
            f"Insufficient {quote} balance: need {notional:.2f}, available {free_quote:.2f}",
        )
    return ValidationResult(
        success=True,
        directive=directive,
        computed_side=order_side(directive),
        computed_quantity=size,
        notional=notional,
    )


def _validate_margin(ctx: BotContext, directive: Directive, symbol: str, price: float, exchange) -> ValidationResult:
    bot = ctx.bot
    if not is_entry(directive):
        side_effect = SideEffect.AUTO_REPAY if bot.auto_repay else SideEffect.NO_SIDE_EFFECT
        return _check_exit(ctx, directive, symbol, side_effect)

    size = entry_size(bot, price, bot.leverage or 1.0)
    failure = _check_entry_common(ctx, directive, symbol, size, price, exchange)
    if failure:
        return failure

    notional = size * price
    base, quote = exchange.split_symbol(symbol)

    if directive == Directive.ENTER_LONG:
        free_quote = exchange.get_margin_balance(quote)
        if free_quote >= notional:
            side_effect = SideEffect.NO_SIDE_EFFECT
        else:
            borrowable = exchange.get_max_borrowable(quote)
            if free_quote + borrowable < notional:
                return _fail(
                    directive,
                    f"Insufficient margin: need {notional:.2f} {quote}, "
                    f"available {free_quote:.2f} + borrowable {borrowable:.2f}",
                )
            side_effect = SideEffect.MARGIN_BUY
    else:
        free_base = exchange.get_margin_balance(base)
        borrow_needed = max(0.0, size - free_base)
        if borrow_needed > 0:
            borrowable = exchange.get_max_borrowable(base)
            if borrowable < borrow_needed:
                return _fail(
                    directive,
                    f"Insufficient borrowable {base}: need {borrow_needed:.8f}, available {borrowable:.8f}",
                )
        side_effect = SideEffect.MARGIN_BUY

    return ValidationResult(
        success=True,
        directive=directive,
        computed_side=order_side(directive),
        computed_quantity=size,
        side_effect=side_effect,
        notional=notional,
    )


def _guarded(fn, ctx: BotContext, directive: Directive, symbol: str, price: float, exchange) -> ValidationResult:
    try:
        return fn(ctx, directive, symbol, price, exchange)
    except SignalBotError as e:
        logger.warning("Validation of %s %s for bot %s failed: %s", directive.value, symbol, ctx.bot.id, e)
        category = e.category if e.category != "INTERNAL_ERROR" else EXCHANGE_ERROR
        return _fail(directive, str(e), category)
    except Exception as e:
        logger.exception("Unexpected error validating %s %s for bot %s", directive.value, symbol, ctx.bot.id)
        return _fail(directive, f"Validation failed: {e}", EXCHANGE_ERROR)


def validate_spot(ctx: BotContext, directive: Directive, symbol: str, price: float, exchange) -> ValidationResult:
    return _guarded(_validate_spot, ctx, directive, symbol, price, exchange)


def validate_margin(ctx: BotContext, directive: Directive, symbol: str, price: float, exchange) -> ValidationResult:
    return _guarded(_validate_margin, ctx, directive, symbol, price, exchange)


def validate(ctx: BotContext, directive: Directive, symbol: str, price: float, exchange) -> ValidationResult:
    """Dispatch on the bot's account type."""
    if ctx.bot.account_type == AccountType.MARGIN:
        return validate_margin(ctx, directive, symbol, price, exchange)
    return validate_spot(ctx, directive, symbol, price, exchange)
