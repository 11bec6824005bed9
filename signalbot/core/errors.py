"""
Error taxonomy for the signal pipeline.

Every error carries a machine-readable ``category`` and the HTTP status the
webhook answers with, so the API layer never has to guess.
"""


class SignalBotError(Exception):
    category = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"category": self.category, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ParseError(SignalBotError):
    category = "PARSE_ERROR"
    status_code = 400


class BotIdMismatchError(ParseError):
    category = "BOT_ID_MISMATCH"


class InvalidActionError(SignalBotError):
    category = "ACTION_UNRECOGNIZED"
    status_code = 400


class BotNotFoundOrInactiveError(SignalBotError):
    category = "BOT_NOT_FOUND_OR_INACTIVE"
    status_code = 404


class BotNotFoundError(BotNotFoundOrInactiveError):
    category = "BOT_NOT_FOUND"


class BotInactiveError(BotNotFoundOrInactiveError):
    category = "BOT_INACTIVE"


class ExchangeInactiveError(BotNotFoundOrInactiveError):
    category = "EXCHANGE_INACTIVE"


class SymbolNotAllowedError(SignalBotError):
    category = "SYMBOL_NOT_ALLOWED"
    status_code = 400


class PriceUnavailableError(SignalBotError):
    category = "PRICE_UNAVAILABLE"
    status_code = 500


class ValidationError(SignalBotError):
    category = "VALIDATION_ERROR"
    status_code = 400


class QuantityBelowMinimumError(ValidationError):
    category = "QUANTITY_BELOW_MINIMUM"


class ExchangeRejectionError(SignalBotError):
    """The exchange refused a request, or could not be reached."""
    category = "EXCHANGE_REJECTION"
    status_code = 500

    def __init__(self, message: str, code: int | str | None = None, details: dict | None = None):
        super().__init__(message, details)
        self.code = code

    def __str__(self):
        if self.code is None:
            return self.message
        return f"Exchange error {self.code}: {self.message}"

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["error"] = str(self)
        body["exchange_code"] = self.code
        return body


class PersistenceError(SignalBotError):
    category = "PERSISTENCE_ERROR"
    status_code = 500
