"""API routes for invoice upload, schedule upload and invoice views."""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from invoiceflow.core.auth import OperatorContext, get_operator_context, require_roles
from invoiceflow.core.errors import InvoiceFlowError
from invoiceflow.core.logging import logger
from invoiceflow.models.invoice import (
    InvoiceListResponse,
    InvoiceRecord,
    InvoiceUploadRequest,
    InvoiceUploadResponse,
    ScheduleUploadRequest,
    ScheduleUploadResponse,
)
from invoiceflow.services.engine import invoice_engine

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post("/upload", response_model=InvoiceUploadResponse)
def upload_invoices(
    request: InvoiceUploadRequest,
    context: OperatorContext = Depends(get_operator_context),
):
    try:
        return invoice_engine.upload_invoices(
            request.rows,
            uploaded_by=context.operator,
            expected_customer_code=request.expected_customer_code,
        )
    except InvoiceFlowError as exc:
        logger.error("Failed to upload invoices", operator=context.operator, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.post("/schedule", response_model=ScheduleUploadResponse)
def upload_schedule(
    request: ScheduleUploadRequest,
    context: OperatorContext = Depends(get_operator_context),
):
    try:
        return invoice_engine.upload_schedule(request.rows, uploaded_by=context.operator)
    except InvoiceFlowError as exc:
        logger.error("Failed to upload schedule", operator=context.operator, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.get("", response_model=InvoiceListResponse)
def list_invoices(
    view: str = Query(default="all"),
    today: Optional[date] = Query(default=None),
    context: OperatorContext = Depends(get_operator_context),
):
    try:
        return InvoiceListResponse(view=view, invoices=invoice_engine.list_invoices(view, today))
    except InvoiceFlowError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.get("/{invoice_id}", response_model=InvoiceRecord)
def get_invoice(
    invoice_id: str,
    context: OperatorContext = Depends(get_operator_context),
):
    invoice = invoice_engine.get_invoice(invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.delete("/{invoice_id}")
def delete_invoice(
    invoice_id: str,
    context: OperatorContext = Depends(require_roles("admin")),
):
    try:
        deleted = invoice_engine.delete_invoice(invoice_id, deleted_by=context.operator)
    except InvoiceFlowError as exc:
        logger.error("Failed to delete invoice", invoice_id=invoice_id, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())
    if not deleted:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return {"deleted": True, "invoice_id": invoice_id}
