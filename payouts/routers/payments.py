"""
Payments Router - Creator Payouts and Retainer Billing

Thin HTTP layer over the payout engine.

Endpoints:
- GET  /payments/disputed - List disputed payments (admin)
- GET  /payments/{id} - Payment or retainer payment details
- POST /payments/{id}/process - Dispatch a pending payment
- POST /payments/{id}/retry - Retry a failed payment (fresh attempt key)
- POST /payments/{id}/reconcile - Operator verdict on an unknown outcome
- POST /payments/{id}/dispute - Company disputes a payment
- POST /payments/{id}/resolve-dispute - Admin resolves a dispute
- POST /retainers/batch - Run the monthly retainer batch now
- POST /retainers/{contract_id}/process - Bill one contract now
- POST /reconciliation/run - Reconcile stuck / unknown-outcome payouts
- POST /connect/accounts - Create (or reuse) a Stripe Connect account
- POST /connect/accounts/{account_id}/onboarding-link - Stripe onboarding URL
- GET  /connect/accounts/{account_id}/status - Onboarding state + requirements
- GET  /fees/quote - Fee breakdown for an amount (payer override aware)

Amounts are returned as two-decimal strings.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from database.db import get_db
from database.models import DisputeResolution, PaymentStatus, PayoutMethod
from services.disputes import DisputeNotAllowedError
from services.errors import ErrorKind, PayoutError
from services.payment_processor import PaymentNotFoundError, RetryNotAllowedError
from services.payment_state import InvalidTransitionError
from services.providers import PayoutProviders, PayoutServices, build_payout_services
from services.reconciliation import ReconciliationError

router = APIRouter(tags=["Payments"])
logger = logging.getLogger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_providers(request: Request) -> PayoutProviders:
    """Provider clients built once at startup (see main.py)."""
    providers = getattr(request.app.state, "payout_providers", None)
    if providers is None:
        raise HTTPException(status_code=503, detail="Payout providers are not configured")
    return providers


def get_services(
    db: Session = Depends(get_db),
    providers: PayoutProviders = Depends(get_providers),
) -> PayoutServices:
    return build_payout_services(db, providers)


def payout_error_status(error: PayoutError) -> int:
    if error.kind in (ErrorKind.CONFIGURATION, ErrorKind.PRECONDITION):
        return 400
    return 502


# ============================================================================
# SCHEMAS
# ============================================================================

class PaymentResponse(BaseModel):
    """Payment / retainer payment schema."""
    id: str
    record_type: str
    creator_id: str
    company_id: str
    contract_id: Optional[str] = None
    month_number: Optional[int] = None
    gross_amount: Decimal
    platform_fee_amount: Decimal
    processing_fee_amount: Decimal
    net_amount: Decimal
    currency: str
    status: PaymentStatus
    payment_method: Optional[PayoutMethod] = None
    description: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    attempt_count: int
    failure_kind: Optional[str] = None
    failure_code: Optional[str] = None
    outcome_unknown: bool
    dispute_reason: Optional[str] = None
    disputed_at: Optional[datetime] = None
    dispute_resolution: Optional[DisputeResolution] = None
    dispute_notes: Optional[str] = None
    dispute_resolved_at: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DisputeCreate(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)
    disputed_by: str
    company_id: Optional[str] = None  # when set, payment must belong to this company


class DisputeResolve(BaseModel):
    resolution: Literal["refund", "complete", "cancel"]
    resolved_by: str
    notes: Optional[str] = Field(None, max_length=2000)


class ManualReconciliation(BaseModel):
    sent: bool
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class ConnectAccountCreate(BaseModel):
    user_id: str
    email: str
    country: str = Field(default="CA", pattern=r'^[A-Z]{2}$')
    existing_account_id: Optional[str] = None


class OnboardingLinkCreate(BaseModel):
    return_url: str
    refresh_url: str


# ============================================================================
# PAYMENTS
# ============================================================================

@router.get("/payments/disputed", response_model=List[PaymentResponse])
def list_disputed_payments(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    services: PayoutServices = Depends(get_services),
):
    """Disputed payments of both kinds, newest first."""
    return services.disputes.list_disputed(limit=limit, offset=offset)


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(payment_id: str, services: PayoutServices = Depends(get_services)):
    record = services.ledger.get_payment_or_retainer_payment(payment_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return record


@router.post("/payments/{payment_id}/process")
def process_payment(payment_id: str, services: PayoutServices = Depends(get_services)):
    """
    Dispatch a pending payment to the creator's default payout method.

    The response reports the classified error (kind, code, remediation) when
    the payment could not be sent; a pending result means the creator has to
    configure payment details first.
    """
    record = services.ledger.get_payment_or_retainer_payment(payment_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    try:
        result = services.processor.process_record(record)
    except (InvalidTransitionError, RetryNotAllowedError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.as_dict()


@router.post("/payments/{payment_id}/retry")
def retry_payment(payment_id: str, services: PayoutServices = Depends(get_services)):
    try:
        result = services.processor.retry_payment(payment_id)
    except PaymentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")
    except RetryNotAllowedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return result.as_dict()


@router.post("/payments/{payment_id}/reconcile", response_model=PaymentResponse)
def reconcile_payment(
    payment_id: str,
    body: ManualReconciliation,
    services: PayoutServices = Depends(get_services),
):
    """Record the operator's verdict after checking the provider dashboard."""
    try:
        return services.reconciliation.resolve_manually(
            payment_id, sent=body.sent, transaction_id=body.transaction_id, notes=body.notes,
        )
    except PaymentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")
    except (ReconciliationError, InvalidTransitionError) as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/payments/{payment_id}/dispute", response_model=PaymentResponse)
def dispute_payment(
    payment_id: str,
    body: DisputeCreate,
    services: PayoutServices = Depends(get_services),
):
    try:
        return services.disputes.raise_dispute(
            payment_id, body.reason, disputed_by=body.disputed_by, company_id=body.company_id,
        )
    except PaymentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")
    except DisputeNotAllowedError:
        raise HTTPException(status_code=403, detail="Unauthorized")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/payments/{payment_id}/resolve-dispute", response_model=PaymentResponse)
def resolve_dispute(
    payment_id: str,
    body: DisputeResolve,
    services: PayoutServices = Depends(get_services),
):
    try:
        return services.disputes.resolve_dispute(
            payment_id, body.resolution, resolved_by=body.resolved_by, notes=body.notes,
        )
    except PaymentNotFoundError:
        raise HTTPException(status_code=404, detail="Payment not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ============================================================================
# RETAINERS
# ============================================================================

@router.post("/retainers/batch")
def run_retainer_batch(services: PayoutServices = Depends(get_services)):
    """Run the monthly retainer batch now (normally triggered by Celery beat)."""
    result = services.scheduler.process_monthly_batch()
    return result.as_dict()


@router.post("/retainers/{contract_id}/process")
def process_retainer_contract(contract_id: str, services: PayoutServices = Depends(get_services)):
    if services.ledger.get_retainer_contract(contract_id) is None:
        raise HTTPException(status_code=404, detail="Contract not found")
    result = services.scheduler.process_single_contract(contract_id)
    return result.as_dict()


@router.post("/reconciliation/run")
def run_reconciliation(services: PayoutServices = Depends(get_services)):
    return services.reconciliation.reconcile().as_dict()


# ============================================================================
# STRIPE CONNECT ONBOARDING
# ============================================================================

@router.post("/connect/accounts", status_code=201)
def create_connect_account(body: ConnectAccountCreate, providers: PayoutProviders = Depends(get_providers)):
    try:
        account_id = providers.connect.create_connected_account(
            user_id=body.user_id,
            email=body.email,
            country=body.country,
            existing_account_id=body.existing_account_id,
        )
    except PayoutError as e:
        raise HTTPException(status_code=payout_error_status(e), detail=e.as_dict())
    return {"account_id": account_id}


@router.post("/connect/accounts/{account_id}/onboarding-link")
def create_onboarding_link(
    account_id: str,
    body: OnboardingLinkCreate,
    providers: PayoutProviders = Depends(get_providers),
):
    try:
        url = providers.connect.create_account_link(account_id, body.return_url, body.refresh_url)
    except PayoutError as e:
        raise HTTPException(status_code=payout_error_status(e), detail=e.as_dict())
    return {"account_id": account_id, "url": url}


@router.get("/connect/accounts/{account_id}/status")
def get_connect_account_status(account_id: str, providers: PayoutProviders = Depends(get_providers)):
    try:
        status = providers.connect.check_account_status(account_id)
    except PayoutError as e:
        raise HTTPException(status_code=payout_error_status(e), detail=e.as_dict())
    response = status.as_dict()
    if not status.payouts_enabled:
        response["remediation"] = status.remediation_message()
    return response


# ============================================================================
# FEES
# ============================================================================

@router.get("/fees/quote")
def quote_fees(
    gross_amount: Decimal = Query(..., ge=0),
    payer_id: Optional[str] = None,
    services: PayoutServices = Depends(get_services),
):
    fees = services.fee_calculator.calculate_fees(gross_amount, payer_id=payer_id)
    return fees.as_strings()
