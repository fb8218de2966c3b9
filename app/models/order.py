from datetime import datetime
from typing import Literal
from uuid import uuid4

from beanie import Document
from pydantic import BaseModel, Field

PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]

PAYMENT_STATUSES: tuple[str, ...] = ("pending", "paid", "failed", "refunded")

SYSTEM_USER = "system"


class StatusHistoryEntry(BaseModel):
    status: str
    note: str = ""
    created_by: str = SYSTEM_USER
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Order(Document):
    """Order as seen by the payment core. Created elsewhere; never deleted."""
    id: str = Field(default_factory=lambda: uuid4().hex)
    total_amount: int  # gateway minor units (whole KES)
    payment_status: PaymentStatus = "pending"
    status: OrderStatus = "pending"
    payment_date: datetime | None = None
    paid_transaction_ref: str | None = None  # the completed Transaction that settled this order
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "orders"
        indexes = [[("payment_status", 1)]]
