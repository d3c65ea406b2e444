"""
Loan endpoints (staff)
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .deps import ServicingSystem, get_servicing_system, require_user
from .schemas import (
    CreateLoanRequest, PostPaymentRequest, AssessFeeRequest, AccrueInterestRequest,
    UpdateStatusRequest, parse_amount, loan_response, schedule_response, event_response,
    payment_response, payment_result_response, payoff_quote_response
)
from ..loans import LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    tenant_id: str,
    request: CreateLoanRequest,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Create a loan with its amortization schedule"""
    terms = request.to_loan_terms(system.config.default_currency)
    loan = system.loan_manager.create_loan(tenant_id, request.client_id, user_id, terms)
    return {
        "loan": loan_response(loan),
        "schedule": schedule_response(system.loan_manager.get_schedule(tenant_id, loan.id)),
    }


@router.get("")
def list_loans(
    tenant_id: str,
    status_filter: Optional[str] = Query(None, alias="status"),
    client_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """List the tenant's loans, newest first"""
    loan_status = LoanStatus(status_filter) if status_filter else None
    loans, total = system.loan_manager.list_loans(
        tenant_id, status=loan_status, client_id=client_id, limit=limit, offset=offset
    )
    return {
        "loans": [loan_response(loan) for loan in loans],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/{loan_id}")
def get_loan(
    tenant_id: str,
    loan_id: str,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Get a loan with its schedule, events and payments"""
    details = system.loan_manager.get_loan_details(tenant_id, loan_id)
    return {
        "loan": loan_response(details.loan),
        "schedule": schedule_response(details.schedule),
        "events": [event_response(event) for event in details.events],
        "payments": [payment_response(payment) for payment in details.payments],
    }


@router.get("/{loan_id}/schedule")
def get_schedule(
    tenant_id: str,
    loan_id: str,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    system.loan_manager.get_loan(tenant_id, loan_id)
    return {"schedule": schedule_response(system.loan_manager.get_schedule(tenant_id, loan_id))}


@router.get("/{loan_id}/events")
def get_events(
    tenant_id: str,
    loan_id: str,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    system.loan_manager.get_loan(tenant_id, loan_id)
    events = system.ledger.get_events(tenant_id, loan_id)
    return {"events": [event_response(event) for event in events]}


@router.get("/{loan_id}/reconcile")
def reconcile_loan(
    tenant_id: str,
    loan_id: str,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Check the loan's balances against its ledger history"""
    loan = system.loan_manager.get_loan(tenant_id, loan_id)
    return system.ledger.reconcile(loan)


@router.get("/{loan_id}/payments")
def get_payments(
    tenant_id: str,
    loan_id: str,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    system.loan_manager.get_loan(tenant_id, loan_id)
    payments = system.payment_engine.get_payments(tenant_id, loan_id)
    return {"payments": [payment_response(payment) for payment in payments]}


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def post_payment(
    tenant_id: str,
    loan_id: str,
    request: PostPaymentRequest,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Post a payment through the fees -> interest -> principal waterfall"""
    result = system.payment_engine.post_payment(
        tenant_id, loan_id, user_id, request.amount, request.method,
        effective_date=request.effective_date, notes=request.notes
    )
    return payment_result_response(result)


@router.post("/{loan_id}/fees", status_code=status.HTTP_201_CREATED)
def assess_fee(
    tenant_id: str,
    loan_id: str,
    request: AssessFeeRequest,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    loan = system.loan_manager.get_loan(tenant_id, loan_id)
    event = system.loan_manager.assess_fee(
        tenant_id, loan_id, user_id, parse_amount(request.amount, loan.currency),
        request.description, effective_date=request.effective_date
    )
    return event_response(event)


@router.post("/{loan_id}/interest", status_code=status.HTTP_201_CREATED)
def accrue_interest(
    tenant_id: str,
    loan_id: str,
    request: AccrueInterestRequest,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    loan = system.loan_manager.get_loan(tenant_id, loan_id)
    amount = parse_amount(request.amount, loan.currency) if request.amount else None
    event = system.loan_manager.accrue_interest(
        tenant_id, loan_id, user_id, amount=amount, effective_date=request.effective_date
    )
    return event_response(event)


@router.put("/{loan_id}/status")
def update_status(
    tenant_id: str,
    loan_id: str,
    request: UpdateStatusRequest,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    loan = system.loan_manager.update_status(
        tenant_id, loan_id, user_id, LoanStatus(request.status), substatus=request.substatus
    )
    return loan_response(loan)


@router.get("/{loan_id}/payoff-quote")
def get_payoff_quote(
    tenant_id: str,
    loan_id: str,
    quote_date: Optional[date] = None,
    user_id: str = Depends(require_user),
    system: ServicingSystem = Depends(get_servicing_system)
):
    quote = system.loan_manager.get_payoff_quote(tenant_id, loan_id, quote_date=quote_date)
    return payoff_quote_response(quote)
