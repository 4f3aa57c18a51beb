"""Activity log entries."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LogType(str, Enum):
    UPLOAD = "upload"
    AUDIT = "audit"
    DISPATCH = "dispatch"


class LogEntry(BaseModel):
    """Append-only record of an upload, audit or dispatch action."""

    model_config = {"frozen": True}

    id: str
    user: Optional[str] = None
    action: str
    details: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    type: LogType
    invoice_id: Optional[str] = None


class LogListResponse(BaseModel):
    entries: List[LogEntry]
