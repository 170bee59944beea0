"""
============================================================================
Loyalty Settlement Core v1.0.0
Settlement Pipeline API Endpoints
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints:
    - All money values are returned as decimal strings (no floats)
    - Bulk requests report what changed, what was skipped, and why
Side Effects:
    - Order status writes (toggle, journal, payment marks)
    - Brokerage journals (journal run / recovery)

ENDPOINTS:
    GET  /api/settlement/orders/sell-eligible  - settled|sell|sold orders
    POST /api/settlement/orders/toggle-sell    - settled <-> sell
    GET  /api/settlement/journal/status        - firm balance, pending, recent
    POST /api/settlement/journal/run           - fund members
    POST /api/settlement/journal/recover       - resolve stale queued journals
    GET  /api/settlement/journal/{journal_id}  - brokerage journal status
    GET  /api/settlement/payments/batches      - settled payment history
    GET  /api/settlement/payments/{merchant_id} - unpaid orders by broker
    POST /api/settlement/payments/export       - detail + ACH CSV
    POST /api/settlement/payments/confirm      - mark exported orders paid
    POST /api/settlement/payments/cancel       - clear an unsettled payment
    POST /api/settlement/data-profile          - wallet/orders data quality

ERROR MAPPING (body: {"success": false, "error_code", "error"}):
    STL-002 -> 400, STL-007 -> 404, STL-001/008/010 -> 409,
    STL-003/004/006/040 -> 422, STL-005/014 -> 502, STL-009 -> 503

============================================================================
"""

import logging
import uuid
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services.settlement_errors import (
    AmbiguousToggleRequest,
    ConcurrentModification,
    DuplicateLedgerEntry,
    ExecutionMismatch,
    InvalidTransition,
    NoLinkedAccount,
    OrderNotFound,
    ReconciliationError,
    SettlementConfigurationError,
    SettlementError,
    StoreUnavailable,
    TransferFailure,
)
from services.settlement_runtime import SettlementServices, get_settlement_services

logger = logging.getLogger(__name__)


# ============================================================================
# Router Configuration
# ============================================================================

router = APIRouter()

ERROR_STATUS = [
    (AmbiguousToggleRequest, 400),
    (OrderNotFound, 404),
    (InvalidTransition, 409),
    (ConcurrentModification, 409),
    (DuplicateLedgerEntry, 409),
    (ExecutionMismatch, 422),
    (ReconciliationError, 422),
    (NoLinkedAccount, 422),
    (SettlementConfigurationError, 422),
    (TransferFailure, 502),
    (StoreUnavailable, 503),
]


def status_for_error(exc: SettlementError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def settlement_error_response(exc: SettlementError) -> JSONResponse:
    """Uniform failure body for settlement errors."""
    status_code = status_for_error(exc)
    logger.warning(
        f"[SETTLEMENT-API] Request failed | status={status_code} | "
        f"error_code={exc.error_code} | error={exc.message}"
    )
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error_code": exc.error_code, "error": exc.message},
    )


# ============================================================================
# Request Models
# ============================================================================

class ToggleSellRequest(BaseModel):
    to_sell: List[str] = Field(default_factory=list, description="Order ids settled -> sell")
    to_settled: List[str] = Field(default_factory=list, description="Order ids sell -> settled")


class RunJournalRequest(BaseModel):
    member_ids: Optional[List[str]] = Field(default=None, description="Members to fund")
    all: bool = Field(default=False, description="Fund every member with settled orders")


class ExportPaymentRequest(BaseModel):
    merchant_id: str = Field(..., min_length=1)
    broker: str = Field(..., min_length=1)


class ConfirmPaymentRequest(BaseModel):
    merchant_id: str = Field(..., min_length=1)
    broker: str = Field(..., min_length=1)
    batch_id: str = Field(..., min_length=1)
    order_ids: Optional[List[str]] = Field(
        default=None, description="Exported order ids; omit to mark every unpaid order"
    )


class CancelPaymentRequest(BaseModel):
    batch_id: str = Field(..., min_length=1)


class DataProfileRequest(BaseModel):
    table: str = Field(default="wallet", description="wallet or orders")


def _bad_request(message: str) -> HTTPException:
    return HTTPException(
        status_code=400,
        detail={"success": False, "error_code": "REQ-400", "error": message},
    )


# ============================================================================
# Orders
# ============================================================================

@router.get("/orders/sell-eligible", summary="List Sell-Eligible Orders")
def list_sell_eligible_orders(
    merchant_id: Optional[str] = Query(default=None),
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    orders = services.toggle.list_sell_eligible(merchant_id=merchant_id)
    return {"success": True, "count": len(orders), "orders": [o.to_dict() for o in orders]}


@router.post("/orders/toggle-sell", summary="Toggle Sell/Settled Status")
def toggle_sell_status(
    request: ToggleSellRequest,
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    logger.info(
        f"[SETTLEMENT-API] POST /orders/toggle-sell | to_sell={len(request.to_sell)} | "
        f"to_settled={len(request.to_settled)} | correlation_id={correlation_id}"
    )
    result = services.toggle.toggle_sell_status(
        request.to_sell, request.to_settled, correlation_id=correlation_id
    )
    return {"success": True, "correlation_id": correlation_id, **result.to_dict()}


# ============================================================================
# Journal
# ============================================================================

@router.get("/journal/status", summary="Journal Status")
def journal_status(
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    return {"success": True, **services.journal.get_journal_status()}


@router.post("/journal/run", summary="Run Journal")
def run_journal(
    request: RunJournalRequest,
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    if not request.all and not request.member_ids:
        raise _bad_request("Provide member_ids or set all=true")
    correlation_id = str(uuid.uuid4())
    member_ids = None if request.all else request.member_ids
    logger.info(
        f"[SETTLEMENT-API] POST /journal/run | "
        f"scope={'all' if member_ids is None else len(member_ids)} | "
        f"correlation_id={correlation_id}"
    )
    result = services.journal.run_journal(member_ids, correlation_id=correlation_id)
    return {"success": True, "correlation_id": correlation_id, **result.to_dict()}


@router.post("/journal/recover", summary="Recover Stale Queued Journals")
def recover_journals(
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    result = services.journal.recover_queued_journals()
    return {"success": True, **result.to_dict()}


@router.get("/journal/{journal_id}", summary="Brokerage Journal Status")
def check_journal(
    journal_id: str,
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    journal = services.journal.check_journal_status(journal_id)
    if journal is None:
        raise HTTPException(
            status_code=404,
            detail={"success": False, "error_code": "STL-007", "error": f"Journal {journal_id} not found"},
        )
    return {"success": True, "journal": journal}


# ============================================================================
# Broker payments
# ============================================================================

@router.get("/payments/batches", summary="Settled Payment Batches")
def settled_batches(
    merchant_id: Optional[str] = Query(default=None),
    limit: int = Query(default=25),
    offset: int = Query(default=0),
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    return {
        "success": True,
        **services.engine.list_settled_batches(merchant_id=merchant_id, limit=limit, offset=offset),
    }


@router.get("/payments/{merchant_id}", summary="Unpaid Orders by Broker")
def get_payments(
    merchant_id: str,
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    return {"success": True, **services.payments.get_payments(merchant_id)}


@router.post("/payments/export", summary="Export Broker Payment Files")
def export_payment(
    request: ExportPaymentRequest,
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    export = services.payments.export_broker_payment(request.merchant_id, request.broker)
    return {"success": True, **export.to_dict()}


@router.post("/payments/confirm", summary="Confirm Broker Payment")
def confirm_payment(
    request: ConfirmPaymentRequest,
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    try:
        result = services.payments.confirm_broker_payment(
            request.merchant_id, request.broker, request.batch_id, order_ids=request.order_ids
        )
    except ValueError as e:
        raise _bad_request(str(e))
    return {"success": True, **result.to_dict()}


@router.post("/payments/cancel", summary="Cancel Unsettled Payment")
def cancel_payment(
    request: CancelPaymentRequest,
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    result = services.payments.cancel_broker_payment(request.batch_id)
    return {"success": True, **result.to_dict()}


# ============================================================================
# Data quality
# ============================================================================

@router.post("/data-profile", summary="Run Data Profile")
def data_profile(
    request: DataProfileRequest,
    services: SettlementServices = Depends(get_settlement_services),
) -> Dict[str, Any]:
    try:
        profile = services.profiler.run(request.table)
    except ValueError as e:
        raise _bad_request(str(e))
    return {"success": True, **profile}


__all__ = ["router", "settlement_error_response", "status_for_error"]
