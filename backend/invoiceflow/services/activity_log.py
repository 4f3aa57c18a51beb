"""Append-only activity log for upload, audit and dispatch actions."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import List, Optional

from invoiceflow.core.logging import logger
from invoiceflow.models.activity import LogEntry, LogType
from invoiceflow.services.sequences import SequenceCounter


class ActivityLog:
    """Entries are never mutated or removed. Growth is unbounded."""

    def __init__(self, sequences: Optional[SequenceCounter] = None) -> None:
        self._sequences = sequences or SequenceCounter()
        self._lock = Lock()
        self._entries: List[LogEntry] = []

    def append(
        self,
        user: Optional[str],
        action: str,
        details: str = "",
        type: LogType | str = LogType.UPLOAD,
        invoice_id: Optional[str] = None,
    ) -> LogEntry:
        log_type = LogType(type)
        entry = LogEntry(
            id=self._sequences.next_id("log", "LOG"),
            user=user,
            action=action,
            details=details,
            timestamp=datetime.now(timezone.utc),
            type=log_type,
            invoice_id=invoice_id,
        )
        with self._lock:
            self._entries.append(entry)
        logger.info("Activity recorded", log_id=entry.id, log_type=log_type.value, action=action, user=user)
        return entry

    def entries(self, type: LogType | str | None = None, invoice_id: Optional[str] = None) -> List[LogEntry]:
        """Entries in append order, optionally filtered."""
        with self._lock:
            entries = list(self._entries)
        if type is not None:
            log_type = LogType(type)
            entries = [entry for entry in entries if entry.type == log_type]
        if invoice_id is not None:
            entries = [entry for entry in entries if entry.invoice_id == invoice_id]
        return entries

    def uploads(self) -> List[LogEntry]:
        return self.entries(LogType.UPLOAD)

    def audits(self) -> List[LogEntry]:
        return self.entries(LogType.AUDIT)

    def dispatches(self) -> List[LogEntry]:
        return self.entries(LogType.DISPATCH)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
