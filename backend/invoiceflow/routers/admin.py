"""Admin routes: mismatch exception review and analytics."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from invoiceflow.core.auth import OperatorContext, get_operator_context, require_roles
from invoiceflow.core.errors import InvoiceFlowError
from invoiceflow.core.logging import logger
from invoiceflow.models.dispatch import AnalyticsSnapshot
from invoiceflow.models.scan import AlertDecisionRequest, AlertListResponse, AlertStatus, MismatchAlert
from invoiceflow.services.engine import invoice_engine

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/exceptions", response_model=AlertListResponse)
def list_exceptions(
    status: Optional[AlertStatus] = Query(default=None),
    invoice_id: Optional[str] = Query(default=None),
    context: OperatorContext = Depends(get_operator_context),
):
    return AlertListResponse(alerts=invoice_engine.list_alerts(status, invoice_id))


@router.put("/exceptions/{alert_id}", response_model=MismatchAlert)
def resolve_exception(
    alert_id: str,
    request: AlertDecisionRequest,
    context: OperatorContext = Depends(require_roles("admin")),
):
    try:
        alert = invoice_engine.resolve_alert(alert_id, request.status, reviewed_by=context.operator)
    except InvoiceFlowError as exc:
        logger.error("Failed to resolve exception", alert_id=alert_id, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return alert


@router.get("/analytics", response_model=AnalyticsSnapshot)
def analytics(context: OperatorContext = Depends(require_roles("admin"))):
    return invoice_engine.analytics()
