"""Operator queue: finalized Transactions whose Order could not be brought in line."""

from datetime import datetime
from typing import Any, Literal

from beanie import Document
from pydantic import Field

IssueKind = Literal["order_update_failed", "duplicate_payment"]


class ReconciliationIssue(Document):
    kind: IssueKind
    order_id: str
    transaction_ref: str
    target_payment_status: str | None = None  # what the Order should become
    status: Literal["open", "resolved"] = "open"
    reason: str = ""
    attempts: int = 0
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "reconciliation_issues"
        indexes = [
            [("status", 1), ("kind", 1)],
            [("transaction_ref", 1), ("kind", 1)],
        ]
