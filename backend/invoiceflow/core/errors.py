"""Error taxonomy for the invoice lifecycle engine.

Every error is local and recoverable. Conflict/precondition/validation
failures subclass ``ValueError`` and lookups subclass ``KeyError`` so that
callers which only know the builtin types keep working.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional


class InvoiceFlowError(Exception):
    """Base class for engine errors."""

    code = "invoiceflow_error"
    http_status = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.context}


class ValidationError(InvoiceFlowError, ValueError):
    """Malformed or missing scan/invoice fields. No state was mutated."""

    code = "validation_error"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.errors: List[Dict[str, Any]] = list(errors or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ConflictError(InvoiceFlowError, ValueError):
    """Operation collides with existing state (duplicate load, other customer)."""

    code = "conflict"
    http_status = 409


class PreconditionError(InvoiceFlowError, ValueError):
    """Operation is not allowed in the current lifecycle state."""

    code = "precondition_failed"


class NotFoundError(InvoiceFlowError, KeyError):
    """Referenced invoice, alert, session or gatepass does not exist."""

    code = "not_found"
    http_status = 404
