"""
Pydantic schemas for API requests and responses

Money travels as decimal strings so no amount ever passes through a float.
"""

from datetime import date
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field

from ..currency import Money, Currency, has_excess_precision, to_decimal
from ..exceptions import InvalidAmountError
from ..ledger import LoanEvent
from ..loans import Loan, LoanTerms, LoanPaymentSchedule, PaymentFrequency, PayoffQuote
from ..payments import Payment, PaymentResult


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def parse_currency(code: str) -> Currency:
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValueError(f"Unsupported currency: {code}")


def parse_amount(value: str, currency: Currency) -> Money:
    """
    Parse a decimal string into Money without rounding

    Raises:
        InvalidAmountError: If the value is not a finite number or has more
            precision than the currency allows
    """
    try:
        amount = to_decimal(value)
    except ValueError as exc:
        raise InvalidAmountError(str(exc)) from exc
    if has_excess_precision(amount, currency):
        raise InvalidAmountError(f"Amount {value} has more precision than {currency.code} allows")
    return Money(amount, currency)


# Request schemas
class CreateClientRequest(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class CreateLoanRequest(BaseModel):
    client_id: str
    principal: str = Field(..., description="Decimal amount as string")
    currency: Optional[str] = Field(None, description="Currency code, defaults to the configured one")
    annual_interest_rate: str = Field(..., description="Annual percentage rate, e.g. '6.5'")
    term_months: int
    start_date: date
    payment_frequency: str = "monthly"
    description: Optional[str] = None

    def to_loan_terms(self, default_currency: str) -> LoanTerms:
        currency = parse_currency(self.currency or default_currency)
        principal = parse_amount(self.principal, currency)
        return LoanTerms(
            principal=principal,
            annual_interest_rate=to_decimal(self.annual_interest_rate),
            term_months=self.term_months,
            start_date=self.start_date,
            payment_frequency=PaymentFrequency(self.payment_frequency),
            description=self.description
        )


class PostPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string, in the loan currency")
    method: str = Field(..., description="cash, credit_card, debit_card, bank_transfer, check, other")
    effective_date: Optional[date] = None
    notes: Optional[str] = None


class AssessFeeRequest(BaseModel):
    amount: str
    description: str
    effective_date: Optional[date] = None


class AccrueInterestRequest(BaseModel):
    amount: Optional[str] = Field(None, description="Defaults to one month on the current principal")
    effective_date: Optional[date] = None


class UpdateStatusRequest(BaseModel):
    status: str = Field(..., description="active, delinquent, charged_off or closed")
    substatus: Optional[str] = None


# Response builders
def _money(money: Money) -> Dict[str, str]:
    return MoneyModel.from_money(money).model_dump()


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "loan_number": loan.loan_number,
        "client_id": loan.client_id,
        "created_by": loan.created_by,
        "status": loan.status.value,
        "substatus": loan.substatus,
        "principal": _money(loan.terms.principal),
        "annual_interest_rate": str(loan.terms.annual_interest_rate),
        "term_months": loan.terms.term_months,
        "payment_frequency": loan.terms.payment_frequency.value,
        "start_date": loan.terms.start_date.isoformat(),
        "maturity_date": loan.maturity_date.isoformat(),
        "next_due_date": _iso(loan.next_due_date),
        "last_payment_date": _iso(loan.last_payment_date),
        "current_principal": _money(loan.current_principal),
        "current_interest": _money(loan.current_interest),
        "current_fees": _money(loan.current_fees),
        "total_paid": _money(loan.total_paid),
        "created_at": loan.created_at.isoformat(),
    }


def schedule_response(schedule: List[LoanPaymentSchedule]) -> List[Dict[str, Any]]:
    return [
        {
            "installment_number": row.installment_number,
            "due_date": row.due_date.isoformat(),
            "principal_due": _money(row.principal_due),
            "interest_due": _money(row.interest_due),
            "total_due": _money(row.total_due),
            "remaining_balance": _money(row.remaining_balance),
        }
        for row in schedule
    ]


def event_response(event: LoanEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "sequence": event.sequence,
        "event_type": event.event_type.value,
        "principal_amount": _money(event.principal_amount),
        "interest_amount": _money(event.interest_amount),
        "fee_amount": _money(event.fee_amount),
        "principal_balance": _money(event.principal_balance),
        "interest_balance": _money(event.interest_balance),
        "fee_balance": _money(event.fee_balance),
        "effective_date": event.effective_date.isoformat(),
        "description": event.description,
        "metadata": event.metadata,
        "created_by": event.created_by,
        "created_at": event.created_at.isoformat(),
    }


def payment_response(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "loan_id": payment.loan_id,
        "amount": _money(payment.amount),
        "method": payment.method.value,
        "effective_date": payment.effective_date.isoformat(),
        "notes": payment.notes,
        "allocation": {
            "fees": _money(payment.fee_paid),
            "interest": _money(payment.interest_paid),
            "principal": _money(payment.principal_paid),
        },
        "overpayment": _money(payment.overpayment),
        "created_at": payment.created_at.isoformat(),
    }


def payment_result_response(result: PaymentResult) -> Dict[str, Any]:
    return {
        "payment": payment_response(result.payment),
        "allocation": {
            "fees": _money(result.allocation.fees),
            "interest": _money(result.allocation.interest),
            "principal": _money(result.allocation.principal),
        },
        "overpayment": _money(result.overpayment),
        "loan": loan_response(result.loan),
    }


def payoff_quote_response(quote: PayoffQuote) -> Dict[str, Any]:
    return {
        "loan_id": quote.loan_id,
        "loan_number": quote.loan_number,
        "quote_date": quote.quote_date.isoformat(),
        "good_through_date": quote.good_through_date.isoformat(),
        "principal": _money(quote.principal),
        "interest": _money(quote.interest),
        "fees": _money(quote.fees),
        "payoff_amount": _money(quote.payoff_amount),
        "per_diem_interest": _money(quote.per_diem_interest),
    }
