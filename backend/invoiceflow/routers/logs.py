"""Read-only activity log routes."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from invoiceflow.core.auth import OperatorContext, get_operator_context
from invoiceflow.models.activity import LogListResponse, LogType
from invoiceflow.services.engine import invoice_engine

router = APIRouter(prefix="/logs", tags=["logs"])


@router.get("", response_model=LogListResponse)
def list_logs(
    type: Optional[LogType] = Query(default=None),
    invoice_id: Optional[str] = Query(default=None),
    context: OperatorContext = Depends(get_operator_context),
):
    return LogListResponse(entries=invoice_engine.logs(type, invoice_id))


@router.get("/upload", response_model=LogListResponse)
def upload_logs(context: OperatorContext = Depends(get_operator_context)):
    return LogListResponse(entries=invoice_engine.logs(LogType.UPLOAD))


@router.get("/audit", response_model=LogListResponse)
def audit_logs(context: OperatorContext = Depends(get_operator_context)):
    return LogListResponse(entries=invoice_engine.logs(LogType.AUDIT))


@router.get("/dispatch", response_model=LogListResponse)
def dispatch_logs(context: OperatorContext = Depends(get_operator_context)):
    return LogListResponse(entries=invoice_engine.logs(LogType.DISPATCH))
