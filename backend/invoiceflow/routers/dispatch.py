"""API routes for vehicle loading sessions and gatepasses."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from invoiceflow.core.auth import OperatorContext, get_operator_context
from invoiceflow.core.errors import InvoiceFlowError
from invoiceflow.core.logging import logger
from invoiceflow.models.dispatch import (
    DispatchScanRequest,
    Gatepass,
    GatepassListResponse,
    GenerateGatepassRequest,
    LoadingSessionSnapshot,
    SelectInvoiceRequest,
)
from invoiceflow.models.invoice import InvoiceRecord
from invoiceflow.services.engine import invoice_engine

router = APIRouter(prefix="/dispatch", tags=["dispatch"])


@router.get("/ready", response_model=List[InvoiceRecord])
def ready_invoices(context: OperatorContext = Depends(get_operator_context)):
    return invoice_engine.ready_invoices()


@router.post("/sessions", response_model=LoadingSessionSnapshot)
def open_session(context: OperatorContext = Depends(get_operator_context)):
    return invoice_engine.open_session(context.operator)


@router.get("/sessions/{session_id}", response_model=LoadingSessionSnapshot)
def get_session(session_id: str, context: OperatorContext = Depends(get_operator_context)):
    try:
        return invoice_engine.session(session_id).snapshot()
    except KeyError:
        raise HTTPException(status_code=404, detail="Loading session not found")


@router.delete("/sessions/{session_id}", response_model=LoadingSessionSnapshot)
def close_session(session_id: str, context: OperatorContext = Depends(get_operator_context)):
    try:
        return invoice_engine.close_session(session_id)
    except InvoiceFlowError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.post("/sessions/{session_id}/select", response_model=LoadingSessionSnapshot)
def select_invoice(
    session_id: str,
    request: SelectInvoiceRequest,
    context: OperatorContext = Depends(get_operator_context),
):
    try:
        return invoice_engine.select_invoice(session_id, request.invoice_id)
    except InvoiceFlowError as exc:
        logger.warning("Invoice selection rejected", session_id=session_id, invoice_id=request.invoice_id, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.post("/sessions/{session_id}/deselect", response_model=LoadingSessionSnapshot)
def deselect_invoice(
    session_id: str,
    request: SelectInvoiceRequest,
    context: OperatorContext = Depends(get_operator_context),
):
    try:
        return invoice_engine.deselect_invoice(session_id, request.invoice_id)
    except InvoiceFlowError as exc:
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.post("/sessions/{session_id}/scan", response_model=LoadingSessionSnapshot)
def scan_item(
    session_id: str,
    request: DispatchScanRequest,
    context: OperatorContext = Depends(get_operator_context),
):
    try:
        return invoice_engine.dispatch_scan(
            session_id,
            request.customer_scan,
            request.matched_scan,
            scanned_by=context.operator,
        )
    except InvoiceFlowError as exc:
        logger.warning("Loading scan rejected", session_id=session_id, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.post("/sessions/{session_id}/gatepass", response_model=Gatepass)
def generate_gatepass(
    session_id: str,
    request: GenerateGatepassRequest,
    context: OperatorContext = Depends(get_operator_context),
):
    try:
        return invoice_engine.generate_gatepass(session_id, request.vehicle_number, authorized_by=context.operator)
    except InvoiceFlowError as exc:
        logger.error("Failed to generate gatepass", session_id=session_id, error=str(exc))
        raise HTTPException(status_code=exc.http_status, detail=exc.to_dict())


@router.get("/gatepasses", response_model=GatepassListResponse)
def list_gatepasses(
    limit: int = Query(default=100, ge=1, le=500),
    context: OperatorContext = Depends(get_operator_context),
):
    return GatepassListResponse(gatepasses=invoice_engine.list_gatepasses(limit))


@router.get("/gatepass/{gatepass_number}", response_model=Gatepass)
def get_gatepass(gatepass_number: str, context: OperatorContext = Depends(get_operator_context)):
    gatepass = invoice_engine.get_gatepass(gatepass_number)
    if gatepass is None:
        raise HTTPException(status_code=404, detail="Gatepass not found")
    return gatepass
