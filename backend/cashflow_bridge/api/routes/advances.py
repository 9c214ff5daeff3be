from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from cashflow_bridge.api.deps import get_advance_service
from cashflow_bridge.api.errors import unwrap
from cashflow_bridge.models.domain import AdvanceStatus
from cashflow_bridge.schemas import (
    AdvanceCalculation,
    AdvanceContractDetails,
    AdvanceQuoteRequest,
    AdvanceRequest,
    AdvanceStatusHistoryRead,
    AdvanceTransactionRead,
    DefaultRequest,
    DefaultResult,
    DisbursementRequest,
    DisbursementResult,
    RepaymentInput,
    RepaymentRequest,
    RepaymentResult,
    StatusTransitionRequest,
    StatusTransitionResult,
)
from cashflow_bridge.services.advance_service import AdvanceContractService

router = APIRouter(tags=["advances"])

_SERVICE_DEP = Depends(get_advance_service)


@router.post("/advances/quote", response_model=AdvanceCalculation)
def quote_advance(payload: AdvanceQuoteRequest, service: AdvanceContractService = _SERVICE_DEP):
    """Price an advance without creating it. Ineligibility is reported in the body, not as an error."""
    return unwrap(
        service.calculate_advance_terms(
            payload.farmer_id, payload.order_id, payload.requested_amount
        )
    )


@router.post("/advances", response_model=AdvanceContractDetails, status_code=status.HTTP_201_CREATED)
def request_advance(payload: AdvanceRequest, service: AdvanceContractService = _SERVICE_DEP):
    """Create (or return the existing) advance for an order."""
    return unwrap(service.request_advance(payload))


@router.get("/advances/{advance_id}", response_model=AdvanceContractDetails)
def get_advance(advance_id: str, service: AdvanceContractService = _SERVICE_DEP):
    return unwrap(service.get_advance_details(advance_id))


@router.get("/orders/{order_id}/advance", response_model=AdvanceContractDetails)
def get_order_advance(order_id: str, service: AdvanceContractService = _SERVICE_DEP):
    return unwrap(service.get_order_advance(order_id))


@router.get("/advances/{advance_id}/history", response_model=List[AdvanceStatusHistoryRead])
def get_advance_history(advance_id: str, service: AdvanceContractService = _SERVICE_DEP):
    return unwrap(service.get_status_history(advance_id))


@router.get("/advances/{advance_id}/transactions", response_model=List[AdvanceTransactionRead])
def get_advance_transactions(advance_id: str, service: AdvanceContractService = _SERVICE_DEP):
    return unwrap(service.get_ledger(advance_id))


@router.get("/farmers/{farmer_id}/advances", response_model=List[AdvanceContractDetails])
def list_farmer_advances(
    farmer_id: str,
    status_filter: Optional[List[AdvanceStatus]] = Query(None, alias="status"),
    service: AdvanceContractService = _SERVICE_DEP,
):
    return unwrap(service.get_farmer_advances(farmer_id, status_filter))


@router.post("/advances/{advance_id}/status", response_model=StatusTransitionResult)
def transition_advance_status(
    advance_id: str,
    payload: StatusTransitionRequest,
    service: AdvanceContractService = _SERVICE_DEP,
):
    return unwrap(
        service.transition_status(advance_id, payload.new_status, payload.actor, payload.reason)
    )


@router.post("/advances/{advance_id}/disburse", response_model=DisbursementResult)
def disburse_advance(
    advance_id: str,
    payload: DisbursementRequest,
    service: AdvanceContractService = _SERVICE_DEP,
):
    return unwrap(
        service.disburse_advance(advance_id, payload.reference, payload.fee, payload.method)
    )


@router.post("/advances/{advance_id}/repayments", response_model=RepaymentResult)
def record_repayment(
    advance_id: str,
    payload: RepaymentRequest,
    service: AdvanceContractService = _SERVICE_DEP,
):
    return unwrap(
        service.process_repayment(RepaymentInput(advance_id=advance_id, **payload.model_dump()))
    )


@router.post("/advances/{advance_id}/default", response_model=DefaultResult)
def default_advance(
    advance_id: str,
    payload: DefaultRequest,
    service: AdvanceContractService = _SERVICE_DEP,
):
    return unwrap(service.mark_as_defaulted(advance_id, payload.reason, payload.recovered_amount))
