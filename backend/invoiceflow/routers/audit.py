"""API routes for doc-audit scanning."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from invoiceflow.core.auth import OperatorContext, get_operator_context
from invoiceflow.core.errors import InvoiceFlowError
from invoiceflow.core.logging import logger
from invoiceflow.models.invoice import AuditUpdate, InvoiceRecord
from invoiceflow.models.scan import (
    AuditScanRequest,
    ReconciliationResult,
    ReconciliationStatus,
    ScanHistoryResponse,
    ScanStep,
)
from invoiceflow.services.engine import invoice_engine

router = APIRouter(prefix="/audit", tags=["audit"])


@router.post("/{invoice_id}/scan", response_model=ReconciliationResult)
def scan_bin(
    invoice_id: str,
    request: AuditScanRequest,
    context: OperatorContext = Depends(get_operator_context),
):
    try:
        result = invoice_engine.audit_scan(
            invoice_id,
            request.customer_scan,
            request.autoliv_scan,
            scanned_by=context.operator,
        )
    except InvoiceFlowError as exc:
        logger.error("Failed to reconcile scan", invoice_id=invoice_id, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())
    if result.status == ReconciliationStatus.UNKNOWN_INVOICE:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return result


@router.put("/{invoice_id}", response_model=InvoiceRecord)
def update_audit(
    invoice_id: str,
    request: AuditUpdate,
    context: OperatorContext = Depends(get_operator_context),
):
    if request.blocked is False and not context.is_admin:
        raise HTTPException(status_code=403, detail="Only an admin can unblock an invoice")
    try:
        invoice = invoice_engine.update_audit(invoice_id, request, audited_by=context.operator)
    except InvoiceFlowError as exc:
        logger.error("Failed to update audit", invoice_id=invoice_id, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.get("/{invoice_id}/scans", response_model=ScanHistoryResponse)
def get_scans(
    invoice_id: str,
    context_step: Optional[ScanStep] = Query(default=None, alias="context"),
    context: OperatorContext = Depends(get_operator_context),
):
    history = invoice_engine.scans(invoice_id, context_step)
    if history is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return history
