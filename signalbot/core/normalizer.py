"""
Signal normalizer: turns a raw webhook body into a SignalDraft.

Two formats are accepted:
  1. JSON:  {"action": "ENTER_LONG", "symbol": "BTCUSDT", "price": 50000}
  2. Text:  ENTER-LONG_BINANCE_BTCUSDT_MyBot_4M_<botId>
"""
import json
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

from signalbot.core.errors import BotIdMismatchError, ParseError
from signalbot.models.trade import SignalDraft

TEXT_DELIMITER = "_"
TEXT_MIN_SEGMENTS = 6

EXAMPLE_PAYLOADS = {
    "json": {
        "action": "ENTER_LONG",
        "symbol": "BTCUSDT",
        "price": 50000,
        "message": "optional note",
    },
    "text": "ENTER-LONG_BINANCE_BTCUSDT_MyBot_4M_<botId>",
}


class WebhookPayload(BaseModel):
    action: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    price: Optional[float] = Field(default=None, gt=0)
    message: Optional[str] = None
    botId: Optional[str] = None


def _parse_error(reason: str) -> ParseError:
    return ParseError(
        f"Invalid signal payload: {reason}",
        details={"examples": EXAMPLE_PAYLOADS},
    )


def parse_json_payload(text: str) -> Optional[SignalDraft]:
    """Structured decode. Returns None when the body is not a JSON object."""
    try:
        body = json.loads(text)
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    try:
        payload = WebhookPayload(**body)
    except PydanticValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise _parse_error(f"missing or invalid field(s): {fields}")
    return SignalDraft(
        action=payload.action.strip(),
        symbol=payload.symbol.strip().upper(),
        price=payload.price,
        message=payload.message,
        bot_id=payload.botId or None,
    )


def parse_text_payload(text: str) -> Optional[SignalDraft]:
    """ACTION_EXCHANGE_SYMBOL_BOTNAME_TIMEFRAME_BOTID. The bot id may itself contain '_'."""
    parts = text.strip().strip('"').split(TEXT_DELIMITER)
    if len(parts) < TEXT_MIN_SEGMENTS:
        return None
    action, exchange, symbol, bot_name, timeframe = (p.strip() for p in parts[:5])
    bot_id = TEXT_DELIMITER.join(parts[5:]).strip()
    if not action or not symbol or not bot_id:
        return None
    return SignalDraft(
        action=action,
        symbol=symbol.upper(),
        message=text.strip(),
        bot_id=bot_id,
        exchange=exchange or None,
        bot_name=bot_name or None,
        timeframe=timeframe or None,
    )


def normalize_payload(
    raw: bytes | str,
    content_type: Optional[str] = None,
    route_bot_id: Optional[str] = None,
) -> SignalDraft:
    if isinstance(raw, bytes):
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise _parse_error("body is not valid UTF-8")
    else:
        text = raw
    text = text.strip()
    if not text:
        raise _parse_error("empty body")

    draft = parse_json_payload(text)
    if draft is None:
        draft = parse_text_payload(text)
    if draft is None:
        expected = "a JSON object" if content_type and "json" in content_type else "JSON or delimited text"
        raise _parse_error(f"could not parse body as {expected}")

    if route_bot_id and draft.bot_id and draft.bot_id != route_bot_id:
        raise BotIdMismatchError(
            f"Bot id in payload ({draft.bot_id}) does not match webhook bot id ({route_bot_id})",
            details={"payload_bot_id": draft.bot_id, "route_bot_id": route_bot_id},
        )
    return draft
