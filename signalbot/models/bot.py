from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum


class AccountType(str, Enum):
    SPOT = "SPOT"
    MARGIN = "MARGIN"


class TradeAmountType(str, Enum):
    QUOTE = "QUOTE"   # notional in quote currency, e.g. 100 USDT
    BASE = "BASE"     # fixed units of the base asset, e.g. 0.001 BTC


class Exchange(BaseModel):
    id: str
    name: str = "binance"
    api_key: str = ""
    api_secret: str = ""
    is_active: bool = True


class Bot(BaseModel):
    id: str
    name: str
    exchange_id: str
    symbols: list[str] = Field(default_factory=list)
    account_type: AccountType = AccountType.SPOT
    trade_amount: float
    trade_amount_type: TradeAmountType = TradeAmountType.QUOTE
    leverage: float = 1.0
    stop_loss: Optional[float] = None     # percent from entry
    take_profit: Optional[float] = None   # percent from entry
    auto_repay: bool = False
    is_active: bool = True
    # Aggregates, written only by the close path
    total_trades: int = 0
    win_trades: int = 0
    loss_trades: int = 0
    total_pnl: float = 0.0
    total_volume: float = 0.0


class BotContext(BaseModel):
    """Bot and exchange loaded together for a single pipeline run."""
    bot: Bot
    exchange: Exchange


class LotSize(BaseModel):
    min_qty: float
    step_size: float
    max_qty: Optional[float] = None
