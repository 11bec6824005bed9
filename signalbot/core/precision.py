"""
Quantity precision resolver.

Two independent tiers:
  1. exchange LOT_SIZE metadata (min_qty / step_size), authoritative
  2. static decimals-per-base-asset table, when metadata is unavailable

Both tiers truncate; a resolved quantity is never larger than its input.
"""
import logging
from decimal import Decimal, ROUND_DOWN, ROUND_FLOOR
from typing import Optional, Union

from signalbot.core.errors import ExchangeRejectionError, QuantityBelowMinimumError
from signalbot.models.bot import LotSize

logger = logging.getLogger("signalbot.precision")

NumberLike = Union[Decimal, float, int, str]

# Base-asset prefix -> decimal places
FALLBACK_PRECISION: dict[str, int] = {
    "BTC": 6,
    "ETH": 5,
    "BNB": 5,
}
DEFAULT_PRECISION = 8


def _to_decimal(value: NumberLike) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def step_places(step: NumberLike) -> int:
    exponent = _to_decimal(step).normalize().as_tuple().exponent
    return -exponent if exponent < 0 else 0


def truncate_to_step(quantity: NumberLike, lot_size: LotSize) -> float:
    """Round down to a multiple of step_size; fail if that lands below min_qty."""
    qty = _to_decimal(quantity)
    step = _to_decimal(lot_size.step_size)
    if step > 0:
        truncated = (qty / step).to_integral_value(rounding=ROUND_DOWN) * step
    else:
        truncated = qty
    if lot_size.max_qty and truncated > _to_decimal(lot_size.max_qty):
        cap = _to_decimal(lot_size.max_qty)
        truncated = (cap / step).to_integral_value(rounding=ROUND_DOWN) * step if step > 0 else cap

    min_qty = _to_decimal(lot_size.min_qty)
    if truncated <= 0 or truncated < min_qty:
        raise QuantityBelowMinimumError(
            f"Quantity {qty} is below the minimum tradable quantity {min_qty}",
            details={"quantity": float(qty), "min_qty": lot_size.min_qty, "step_size": lot_size.step_size},
        )
    return float(truncated)


def precision_for_symbol(symbol: str) -> int:
    symbol = symbol.upper()
    for prefix, places in FALLBACK_PRECISION.items():
        if symbol.startswith(prefix):
            return places
    return DEFAULT_PRECISION


def truncate_to_precision(quantity: NumberLike, symbol: str) -> float:
    """floor(value * 10^p) / 10^p with p from the static table."""
    places = precision_for_symbol(symbol)
    scale = Decimal(10) ** places
    truncated = (_to_decimal(quantity) * scale).to_integral_value(rounding=ROUND_FLOOR) / scale
    if truncated <= 0:
        raise QuantityBelowMinimumError(
            f"Quantity {quantity} rounds to zero at {places} decimals for {symbol}",
            details={"quantity": float(quantity), "precision": places},
        )
    return float(truncated)


def resolve_quantity(quantity: float, symbol: str, exchange) -> float:
    """Truncate a raw order quantity to what the exchange will accept for `symbol`."""
    lot_size: Optional[LotSize] = None
    try:
        lot_size = exchange.get_lot_size(symbol)
    except ExchangeRejectionError as e:
        logger.warning("LOT_SIZE lookup failed for %s, using static precision: %s", symbol, e)

    if lot_size is not None:
        resolved = truncate_to_step(quantity, lot_size)
    else:
        resolved = truncate_to_precision(quantity, symbol)
    logger.debug("Quantity %s -> %s for %s", quantity, resolved, symbol)
    return resolved


def format_quantity(quantity: NumberLike, step_size: Optional[NumberLike] = None) -> str:
    """Plain decimal string for the wire, no exponent notation."""
    qty = _to_decimal(quantity)
    if step_size:
        places = step_places(step_size)
        return format(qty.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN), "f")
    return format(qty.normalize(), "f")
