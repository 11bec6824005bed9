from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum

from signalbot.models.bot import AccountType


class Directive(str, Enum):
    ENTER_LONG = "ENTER_LONG"
    EXIT_LONG = "EXIT_LONG"
    ENTER_SHORT = "ENTER_SHORT"
    EXIT_SHORT = "EXIT_SHORT"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    CANCELED = "CANCELED"
    MARKET_CLOSED = "MARKET_CLOSED"
    FAILED = "FAILED"


class OrderType(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    NEW = "NEW"
    FILLED = "FILLED"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class SideEffect(str, Enum):
    NO_SIDE_EFFECT = "NO_SIDE_EFFECT"
    MARGIN_BUY = "MARGIN_BUY"
    AUTO_REPAY = "AUTO_REPAY"


class CloseReason(str, Enum):
    SIGNAL = "SIGNAL"
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    MANUAL = "MANUAL"


class SignalDraft(BaseModel):
    """Normalized alert, before it is persisted."""
    action: str
    symbol: str
    price: Optional[float] = None
    message: Optional[str] = None
    bot_id: Optional[str] = None
    exchange: Optional[str] = None
    bot_name: Optional[str] = None
    timeframe: Optional[str] = None


class Position(BaseModel):
    id: str
    bot_id: str
    symbol: str
    side: PositionSide
    account_type: AccountType = AccountType.SPOT
    entry_price: float
    quantity: float
    entry_value: float
    current_price: Optional[float] = None
    status: PositionStatus = PositionStatus.OPEN
    stop_loss: Optional[float] = None     # absolute price
    take_profit: Optional[float] = None   # absolute price
    exit_price: Optional[float] = None
    exit_value: Optional[float] = None
    pnl: float = 0.0
    pnl_percent: float = 0.0
    close_reason: Optional[str] = None
    created_at: str
    closed_at: Optional[str] = None


class OrderFill(BaseModel):
    """What the exchange reported back for a submitted order."""
    exchange_order_id: str
    status: OrderStatus
    fill_price: float
    executed_qty: float
    quote_qty: float

    def fill_percent(self, requested_qty: float) -> float:
        if requested_qty <= 0:
            return 100.0
        return min(100.0, self.executed_qty / requested_qty * 100)


class ValidationResult(BaseModel):
    success: bool
    directive: Optional[Directive] = None
    computed_side: Optional[OrderSide] = None
    computed_quantity: float = 0.0
    side_effect: Optional[SideEffect] = None
    position_id: Optional[str] = None
    notional: Optional[float] = None
    error: Optional[str] = None
    error_category: Optional[str] = None


class ExecutionResult(BaseModel):
    success: bool
    skipped: bool = False
    position_id: Optional[str] = None
    order_id: Optional[str] = None
    position_status: Optional[PositionStatus] = None
    quantity: Optional[float] = None
    price: Optional[float] = None
    pnl: Optional[float] = None
    message: str = ""


class PipelineResult(BaseModel):
    success: bool
    status_code: int = 200
    signal_id: Optional[str] = None
    action: Optional[str] = None
    directive: Optional[Directive] = None
    symbol: Optional[str] = None
    price: Optional[float] = None
    position_id: Optional[str] = None
    order_id: Optional[str] = None
    skipped: bool = False
    message: str = ""
    error: Optional[str] = None
    category: Optional[str] = None
    details: dict = Field(default_factory=dict)


class SweepReport(BaseModel):
    checked: int = 0
    triggered: int = 0
    closed: int = 0
    skipped: int = 0
    failed: int = 0
    closed_position_ids: list[str] = Field(default_factory=list)
