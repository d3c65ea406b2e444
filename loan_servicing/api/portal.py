"""
Client portal endpoints

Borrowers see only their own loans; any other loan is reported as not found.
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from .deps import ServicingSystem, get_servicing_system, require_client
from .schemas import (
    MoneyModel, loan_response, schedule_response, payment_response, payoff_quote_response
)


router = APIRouter()


class PayoffQuoteRequest(BaseModel):
    effective_date: Optional[date] = None


@router.get("/dashboard")
def get_dashboard(
    tenant_id: str,
    client_id: str = Depends(require_client),
    system: ServicingSystem = Depends(get_servicing_system)
):
    client = system.client_manager.get_client(tenant_id, client_id)
    loans = system.loan_manager.list_client_loans(tenant_id, client_id)
    return {
        "client": {"id": client.id, "name": client.name, "email": client.email, "phone": client.phone},
        "loans": [loan_response(loan) for loan in loans],
    }


@router.get("/loans")
def list_my_loans(
    tenant_id: str,
    client_id: str = Depends(require_client),
    system: ServicingSystem = Depends(get_servicing_system)
):
    loans = system.loan_manager.list_client_loans(tenant_id, client_id)
    return {"loans": [loan_response(loan) for loan in loans]}


@router.get("/loans/{loan_id}")
def get_my_loan(
    tenant_id: str,
    loan_id: str,
    client_id: str = Depends(require_client),
    system: ServicingSystem = Depends(get_servicing_system)
):
    loan = system.loan_manager.get_client_loan(tenant_id, client_id, loan_id)
    return {
        "loan": loan_response(loan),
        "schedule": schedule_response(system.loan_manager.get_schedule(tenant_id, loan.id)),
        "payments": [payment_response(p) for p in system.payment_engine.get_payments(tenant_id, loan.id)],
    }


@router.get("/loans/{loan_id}/schedule")
def get_my_schedule(
    tenant_id: str,
    loan_id: str,
    client_id: str = Depends(require_client),
    system: ServicingSystem = Depends(get_servicing_system)
):
    loan = system.loan_manager.get_client_loan(tenant_id, client_id, loan_id)
    return {"schedule": schedule_response(system.loan_manager.get_schedule(tenant_id, loan.id))}


@router.get("/loans/{loan_id}/payments")
def get_my_payment_history(
    tenant_id: str,
    loan_id: str,
    client_id: str = Depends(require_client),
    system: ServicingSystem = Depends(get_servicing_system)
):
    """Payments and balance events on the loan, newest first"""
    history = system.loan_manager.get_portal_history(tenant_id, client_id, loan_id)
    return {
        "history": [
            {
                "kind": entry["kind"],
                "id": entry["id"],
                "date": entry["date"].isoformat(),
                "amount": MoneyModel.from_money(entry["amount"]).model_dump(),
                "description": entry["description"],
            }
            for entry in history
        ]
    }


@router.post("/loans/{loan_id}/payoff-quote")
def request_payoff_quote(
    tenant_id: str,
    loan_id: str,
    request: PayoffQuoteRequest,
    client_id: str = Depends(require_client),
    system: ServicingSystem = Depends(get_servicing_system)
):
    loan = system.loan_manager.get_client_loan(tenant_id, client_id, loan_id)
    quote = system.loan_manager.get_payoff_quote(tenant_id, loan.id, quote_date=request.effective_date)
    response = payoff_quote_response(quote)
    response["message"] = ("This is an estimated payoff quote. "
                           "Please contact us for an official payoff letter.")
    return response
