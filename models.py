# models.py
from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel

Action = Literal["ENTRY", "EXIT", "UPDATE_STOP"]
Side = Literal["BUY", "SELL"]


class Signal(BaseModel):
    symbol: str
    action: Action
    side: Side
    price: float
    stop_loss: Optional[float] = None
    strategy: str

    @property
    def is_buy(self) -> bool:
        return self.side == "BUY"


class AssetMeta(BaseModel):
    name: str
    sz_decimals: int
    max_leverage: int
    asset_id: int
    is_delisted: bool = False


class Leverage(BaseModel):
    type: Literal["cross", "isolated"]
    value: int


class Position(BaseModel):
    coin: str
    szi: float
    entry_price: Optional[float] = None
    liquidation_price: Optional[float] = None

    @property
    def size(self) -> float:
        return abs(self.szi)

    @property
    def is_long(self) -> bool:
        return self.szi > 0


class OrderRequest(BaseModel):
    symbol: str
    side: Side
    quantity: float
    price: float
    stop_loss: Optional[float] = None
    leverage: int
    sz_decimals: int


class NewOrder(BaseModel):
    user_address: str
    symbol: str
    strategy: str
    quantity: float
    order_type: str
    action: str
    price: float
    oid: Optional[str] = None
    status: str = "open"


class OrderRecord(BaseModel):
    id: str
    user_address: str
    symbol: str
    strategy: str
    quantity: float
    order_type: str
    action: str
    price: float
    pnl: Optional[float] = None
    oid: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ValidationResult(BaseModel):
    is_valid: bool
    skipped: bool = False
    reason: Optional[str] = None


class OrderResult(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    order_id: Optional[str] = None
    db_order_id: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None

    def to_response(self) -> dict:
        """Тело ответа webhook без пустых полей"""
        body = {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "orderId": self.order_id,
            "dbOrderId": self.db_order_id,
            "reason": self.reason,
        }
        body = {k: v for k, v in body.items() if v is not None}
        if self.skipped:
            body["skipped"] = True
        return body
