from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    actor: str | None = None  # operator token holder, or None for gateway/system events
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("entity_type", 1), ("entity_id", 1)],
            [("event_type", 1), ("created_at", -1)],
        ]
