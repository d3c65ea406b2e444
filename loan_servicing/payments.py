"""
Payment Allocation Module

Applies a received payment to a loan with a strict waterfall: outstanding
fees first, then accrued interest, then principal. Whatever is left once the
principal is retired is reported back as overpayment; it never turns into a
negative balance.

Posting is a single transaction: the loan row is locked, the allocation is
computed from the locked balances, and the balance update, the Payment record,
the payment_posted ledger event and the audit entry are written together.
Payments are never retried automatically.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import logging
import uuid

from .currency import Money, Currency, has_excess_precision, to_decimal
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .exceptions import InvalidAmountError
from .ledger import LoanEvent, LoanEventType
from .loans import Loan, LoanManager
from .logging_config import log_action

logger = logging.getLogger(__name__)


class PaymentMethod(Enum):
    """How a payment was received"""
    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    OTHER = "other"


@dataclass(frozen=True)
class PaymentAllocation:
    """How one payment was split across the balance buckets"""
    fees: Money
    interest: Money
    principal: Money
    overpayment: Money

    @property
    def applied(self) -> Money:
        """Portion of the payment that reduced a balance"""
        return self.fees + self.interest + self.principal

    def to_dict(self) -> Dict[str, str]:
        return {
            'fees': str(self.fees.amount),
            'interest': str(self.interest.amount),
            'principal': str(self.principal.amount),
            'overpayment': str(self.overpayment.amount),
        }


def allocate_payment(
    amount: Money,
    current_fees: Money,
    current_interest: Money,
    current_principal: Money
) -> PaymentAllocation:
    """
    Split a payment across fees, interest and principal, in that order

    Each bucket takes min(remaining, outstanding); the remainder after
    principal is the overpayment.
    """
    remaining = amount

    fees = min(remaining, current_fees)
    remaining = remaining - fees

    interest = min(remaining, current_interest)
    remaining = remaining - interest

    principal = min(remaining, current_principal)
    remaining = remaining - principal

    return PaymentAllocation(fees=fees, interest=interest, principal=principal, overpayment=remaining)


ALLOCATION_FIELDS = ('amount', 'fee_paid', 'interest_paid', 'principal_paid', 'overpayment')


@dataclass
class Payment(StorageRecord):
    """Received payment; written once and never changed"""
    tenant_id: str
    loan_id: str
    amount: Money
    method: PaymentMethod
    effective_date: date
    fee_paid: Money
    interest_paid: Money
    principal_paid: Money
    overpayment: Money
    event_id: str
    created_by: str
    notes: Optional[str] = None

    @property
    def allocation(self) -> PaymentAllocation:
        return PaymentAllocation(
            fees=self.fee_paid,
            interest=self.interest_paid,
            principal=self.principal_paid,
            overpayment=self.overpayment,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'tenant_id': self.tenant_id,
            'loan_id': self.loan_id,
            'currency': self.amount.currency.code,
            'method': self.method.value,
            'effective_date': self.effective_date.isoformat(),
            'event_id': self.event_id,
            'created_by': self.created_by,
            'notes': self.notes,
        }
        for name in ALLOCATION_FIELDS:
            result[name] = str(getattr(self, name).amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        currency = Currency[data['currency']]
        amounts = {name: Money(Decimal(data[name]), currency) for name in ALLOCATION_FIELDS}
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            tenant_id=data['tenant_id'],
            loan_id=data['loan_id'],
            method=PaymentMethod(data['method']),
            effective_date=date.fromisoformat(data['effective_date']),
            event_id=data['event_id'],
            created_by=data['created_by'],
            notes=data.get('notes'),
            **amounts
        )


@dataclass
class PaymentResult:
    """Outcome of a posted payment"""
    payment: Payment
    allocation: PaymentAllocation
    overpayment: Money
    loan: Loan
    event: LoanEvent


class PaymentAllocationEngine:
    """
    Posts payments against loans

    Postings on the same loan are serialized by the row lock taken in
    get_loan_for_update(), so each allocation sees the committed result of the
    one before it.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.audit_trail = audit_trail
        self.payments_table = loan_manager.payments_table

    def post_payment(
        self,
        tenant_id: str,
        loan_id: str,
        user_id: str,
        amount: Union[Money, Decimal, str, int],
        method: Union[PaymentMethod, str],
        effective_date: Optional[date] = None,
        notes: Optional[str] = None
    ) -> PaymentResult:
        """
        Apply a payment to a loan

        Args:
            tenant_id: Tenant owning the loan
            loan_id: Loan receiving the payment
            user_id: Staff user (or portal client) posting the payment
            amount: Payment amount, as Money or a decimal value in the loan currency
            method: Payment method
            effective_date: Date the payment counts from (defaults to today)
            notes: Free-form notes stored on the payment

        Returns:
            PaymentResult with the stored payment, allocation and overpayment

        Raises:
            InvalidAmountError: If the amount is not positive, not finite, has
                sub-cent precision, or is in another currency
            ValueError: If the payment method is unknown
            NotFoundError: If the loan does not exist for the tenant
            TransactionFailureError: If the datastore fails; nothing is written
        """
        raw_amount = self._raw_amount(amount)
        method = PaymentMethod(method)

        # Currency is part of the immutable terms, so an unlocked read is enough
        currency = self.loan_manager.get_loan(tenant_id, loan_id).currency
        payment_amount = self._validated_amount(amount, raw_amount, currency)
        effective_date = effective_date or date.today()

        try:
            with self.storage.atomic():
                result = self._post_locked(
                    tenant_id, loan_id, user_id, payment_amount, method, effective_date, notes
                )
        except Exception as exc:
            log_action(
                logger, "error", f"Payment on loan {loan_id} rolled back: {exc}",
                tenant_id=tenant_id, loan_id=loan_id, user_id=user_id,
                action="payment_rolled_back",
                extra={"amount": str(payment_amount.amount), "error": type(exc).__name__}
            )
            raise

        log_action(
            logger, "info", f"Posted payment {payment_amount.to_string()} on {result.loan.loan_number}",
            tenant_id=tenant_id, loan_id=loan_id, user_id=user_id, action="payment_posted",
            extra=result.allocation.to_dict()
        )
        return result

    @staticmethod
    def _raw_amount(amount: Union[Money, Decimal, str, int]) -> Decimal:
        if isinstance(amount, Money):
            value = amount.amount
        else:
            try:
                value = to_decimal(amount)
            except ValueError as exc:
                raise InvalidAmountError(str(exc)) from exc
        if value <= 0:
            raise InvalidAmountError(f"Payment amount must be positive, got {value}")
        return value

    @staticmethod
    def _validated_amount(amount: Union[Money, Decimal, str, int], value: Decimal,
                          currency: Currency) -> Money:
        if isinstance(amount, Money) and amount.currency != currency:
            raise InvalidAmountError(
                f"Payment currency {amount.currency.code} does not match loan currency {currency.code}"
            )
        if has_excess_precision(value, currency):
            raise InvalidAmountError(
                f"Payment amount {value} has more precision than {currency.code} allows"
            )
        return Money(value, currency)

    def _post_locked(
        self,
        tenant_id: str,
        loan_id: str,
        user_id: str,
        amount: Money,
        method: PaymentMethod,
        effective_date: date,
        notes: Optional[str]
    ) -> PaymentResult:
        loan = self.loan_manager.get_loan_for_update(tenant_id, loan_id)
        was_paid_off = loan.is_paid_off

        allocation = allocate_payment(
            amount, loan.current_fees, loan.current_interest, loan.current_principal
        )

        payment_id = str(uuid.uuid4())
        event = self.loan_manager.record_balance_change(
            loan,
            LoanEventType.PAYMENT_POSTED,
            principal_delta=-allocation.principal,
            interest_delta=-allocation.interest,
            fee_delta=-allocation.fees,
            payment_amount=amount,
            effective_date=effective_date,
            description=f"Payment received ({method.value})",
            metadata={
                'payment_id': payment_id,
                'method': method.value,
                'allocation': allocation.to_dict(),
                'overpayment': str(allocation.overpayment.amount),
            },
            created_by=user_id
        )

        now = datetime.now(timezone.utc)
        payment = Payment(
            id=payment_id,
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            loan_id=loan.id,
            amount=amount,
            method=method,
            effective_date=effective_date,
            fee_paid=allocation.fees,
            interest_paid=allocation.interest,
            principal_paid=allocation.principal,
            overpayment=allocation.overpayment,
            event_id=event.id,
            created_by=user_id,
            notes=notes
        )
        self.storage.insert(self.payments_table, payment.id, payment.to_dict())

        self.audit_trail.log_event(
            tenant_id=tenant_id,
            event_type=AuditEventType.LOAN_PAYMENT_POSTED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=user_id,
            metadata={
                "payment_id": payment.id,
                "amount": amount.to_string(),
                "method": method.value,
                "allocation": allocation.to_dict(),
            }
        )
        if loan.is_paid_off and not was_paid_off:
            self.audit_trail.log_event(
                tenant_id=tenant_id,
                event_type=AuditEventType.LOAN_PAID_OFF,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={"loan_number": loan.loan_number, "payment_id": payment.id}
            )
            log_action(
                logger, "info", f"Loan {loan.loan_number} paid off",
                tenant_id=tenant_id, loan_id=loan.id, user_id=user_id, action="loan_paid_off"
            )

        return PaymentResult(
            payment=payment,
            allocation=allocation,
            overpayment=allocation.overpayment,
            loan=loan,
            event=event,
        )

    def get_payments(self, tenant_id: str, loan_id: str) -> List[Payment]:
        """Payments of a loan, newest first"""
        return self.loan_manager.get_payments(tenant_id, loan_id)
