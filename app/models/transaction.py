from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed
from pydantic import Field

TransactionStatus = Literal["pending", "completed", "failed"]

TERMINAL_STATUSES: tuple[str, ...] = ("completed", "failed")


class Transaction(Document):
    """One STK push attempt. transaction_ref is the gateway CheckoutRequestID."""
    order_id: str
    transaction_ref: Indexed(str, unique=True)
    merchant_request_id: str | None = None
    amount: int
    phone_number: str
    payment_method: Literal["mpesa"] = "mpesa"
    status: TransactionStatus = "pending"
    result_code: str | None = None
    result_desc: str | None = None
    receipt_number: str | None = None
    payment_details: dict[str, Any] = Field(default_factory=dict)  # request echo, then callback payload
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions"
        indexes = [
            [("order_id", 1), ("created_at", -1)],
            [("status", 1), ("created_at", 1)],
            [("status", 1), ("updated_at", -1)],
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
