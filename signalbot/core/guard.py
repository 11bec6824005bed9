"""
Bot configuration guard and price oracle adapter.
"""
import logging
from typing import Optional

from signalbot import database
from signalbot.core.errors import (
    BotInactiveError, BotNotFoundError, ExchangeInactiveError,
    PriceUnavailableError, SymbolNotAllowedError,
)
from signalbot.models.bot import Bot, BotContext, Exchange

logger = logging.getLogger("signalbot.guard")


def load_bot_context(bot_id: str, require_active: bool = True) -> BotContext:
    """Load bot + exchange fresh from storage. Nothing is cached between calls."""
    bot_row = database.get_bot(bot_id)
    if bot_row is None:
        raise BotNotFoundError(f"Bot {bot_id} not found", details={"bot_id": bot_id})
    bot = Bot(**bot_row)
    if require_active and not bot.is_active:
        raise BotInactiveError(f"Bot {bot.name} is not active", details={"bot_id": bot_id})

    exchange_row = database.get_exchange(bot.exchange_id)
    if exchange_row is None:
        raise ExchangeInactiveError(
            f"Exchange {bot.exchange_id} for bot {bot.name} not found",
            details={"exchange_id": bot.exchange_id},
        )
    exchange = Exchange(**exchange_row)
    if require_active and not exchange.is_active:
        raise ExchangeInactiveError(
            f"Exchange {exchange.name} for bot {bot.name} is not active",
            details={"exchange_id": exchange.id},
        )
    return BotContext(bot=bot, exchange=exchange)


def check_symbol_allowed(bot: Bot, symbol: str) -> None:
    if bot.symbols and symbol.upper() not in bot.symbols:
        raise SymbolNotAllowedError(
            f"Symbol {symbol} is not configured for this bot. Allowed symbols: {', '.join(bot.symbols)}",
            details={"symbol": symbol, "allowed_symbols": bot.symbols},
        )


def resolve_price(exchange, symbol: str, signal_price: Optional[float] = None) -> float:
    """Signal price when present, otherwise the current exchange price. No retry."""
    if signal_price is not None and signal_price > 0:
        return float(signal_price)
    try:
        price = exchange.get_price(symbol)
    except Exception as e:
        logger.error("Price fetch for %s failed: %s", symbol, e)
        raise PriceUnavailableError("Failed to fetch current price", details={"symbol": symbol}) from e
    if not price or price <= 0:
        raise PriceUnavailableError("Failed to fetch current price", details={"symbol": symbol})
    return float(price)
