"""
Loan Module

Loan aggregate, creation protocol and the read side of loan servicing.

Balances live on the Loan record for fast reads, but they change only through
LoanManager.record_balance_change(), which applies the change and appends the
matching ledger event in the caller's transaction. There is no other code path
that writes a balance.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Any
from enum import Enum
import logging
import random
import re
import time
import uuid

from .currency import Money, Currency, round_half_up
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .amortization import ScheduleRow, add_months, generate_amortization_schedule, monthly_rate
from .clients import ClientManager
from .config import ServicingConfig, get_config
from .exceptions import (
    NotFoundError, InvalidAmountError, ConflictRetryableError,
    DuplicateRecordError, InvalidStatusTransitionError
)
from .ledger import LoanLedger, LoanEvent, LoanEventType
from .logging_config import log_action
from .tenancy import TenantManager

logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    CLOSED = "closed"
    DELINQUENT = "delinquent"
    CHARGED_OFF = "charged_off"
    PAID_OFF = "paid_off"         # Set only by a payment retiring the last of the principal


class PaymentFrequency(Enum):
    """Contractual payment frequency"""
    MONTHLY = "monthly"
    BIWEEKLY = "biweekly"
    WEEKLY = "weekly"


# Statuses staff may set by hand
MANUAL_STATUSES = {
    LoanStatus.ACTIVE,
    LoanStatus.DELINQUENT,
    LoanStatus.CHARGED_OFF,
    LoanStatus.CLOSED,
}

# Statuses that accept no new charges
CLOSED_STATUSES = {LoanStatus.PAID_OFF, LoanStatus.CLOSED}

LOAN_NUMBER_PATTERN = re.compile(r"^LOAN-(\d{4})-(\d+)$")


@dataclass
class LoanTerms:
    """Loan terms and conditions, fixed at creation"""
    principal: Money
    annual_interest_rate: Decimal       # Percent, e.g. Decimal('6') for 6%
    term_months: int
    start_date: date
    payment_frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    description: Optional[str] = None

    def __post_init__(self):
        if not self.principal.is_positive():
            raise ValueError("Principal must be positive")
        if not isinstance(self.annual_interest_rate, Decimal):
            self.annual_interest_rate = Decimal(str(self.annual_interest_rate))
        if not self.annual_interest_rate.is_finite():
            raise ValueError("Interest rate must be a finite number")
        if self.annual_interest_rate < 0 or self.annual_interest_rate >= 100:
            raise ValueError("Interest rate must be between 0 and 100")
        if self.annual_interest_rate != round_half_up(self.annual_interest_rate, 2):
            raise ValueError("Interest rate allows at most 2 decimal places")
        if isinstance(self.term_months, bool) or not isinstance(self.term_months, int) \
                or self.term_months < 1:
            raise ValueError("Term must be a whole number of months, at least 1")

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal.amount),
            'currency': self.principal.currency.code,
            'annual_interest_rate': str(self.annual_interest_rate),
            'term_months': self.term_months,
            'start_date': self.start_date.isoformat(),
            'payment_frequency': self.payment_frequency.value,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        return cls(
            principal=Money(Decimal(data['principal']), Currency[data['currency']]),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_months=data['term_months'],
            start_date=date.fromisoformat(data['start_date']),
            payment_frequency=PaymentFrequency(data['payment_frequency']),
            description=data.get('description'),
        )


BALANCE_FIELDS = ('current_principal', 'current_interest', 'current_fees', 'total_paid')


@dataclass
class Loan(StorageRecord):
    """Loan contract with its denormalized balances"""
    tenant_id: str
    loan_number: str
    client_id: str
    created_by: str
    terms: LoanTerms
    maturity_date: date
    next_due_date: Optional[date] = None

    # Outstanding balances
    current_principal: Money = None
    current_interest: Money = None
    current_fees: Money = None
    total_paid: Money = None

    status: LoanStatus = LoanStatus.ACTIVE
    substatus: Optional[str] = None
    last_payment_date: Optional[date] = None

    def __post_init__(self):
        zero = Money.zero(self.terms.currency)
        for name in BALANCE_FIELDS:
            if getattr(self, name) is None:
                setattr(self, name, zero)

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def total_outstanding(self) -> Money:
        return self.current_principal + self.current_interest + self.current_fees

    @property
    def is_paid_off(self) -> bool:
        return self.status == LoanStatus.PAID_OFF

    def apply_balance_change(
        self,
        event_type: LoanEventType,
        principal_delta: Money,
        interest_delta: Money,
        fee_delta: Money,
        payment_amount: Optional[Money] = None,
        effective_date: Optional[date] = None
    ) -> None:
        """
        Apply signed deltas to the balances

        Raises:
            ValueError: If a balance would go negative, principal would grow
                outside a disbursement, or currencies do not match
        """
        if principal_delta.is_positive() and event_type != LoanEventType.DISBURSEMENT:
            raise ValueError(f"Principal cannot increase through {event_type.value}")

        principal = self.current_principal + principal_delta
        interest = self.current_interest + interest_delta
        fees = self.current_fees + fee_delta

        for name, value in (("principal", principal), ("interest", interest), ("fees", fees)):
            if value.is_negative():
                raise ValueError(f"Loan {self.loan_number} {name} balance cannot go negative")

        self.current_principal = principal
        self.current_interest = interest
        self.current_fees = fees

        if payment_amount is not None:
            self.total_paid = self.total_paid + payment_amount
            self.last_payment_date = effective_date or date.today()

        if event_type == LoanEventType.PAYMENT_POSTED and principal.is_zero():
            self.status = LoanStatus.PAID_OFF
            self.substatus = LoanStatus.PAID_OFF.value
            self.next_due_date = None

        self.updated_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'tenant_id': self.tenant_id,
            'loan_number': self.loan_number,
            'client_id': self.client_id,
            'created_by': self.created_by,
            'terms': self.terms.to_dict(),
            'currency': self.currency.code,
            'maturity_date': self.maturity_date.isoformat(),
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'status': self.status.value,
            'substatus': self.substatus,
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None,
        }
        for name in BALANCE_FIELDS:
            result[name] = str(getattr(self, name).amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        terms = LoanTerms.from_dict(data['terms'])

        def get_date(name: str) -> Optional[date]:
            if data.get(name):
                return date.fromisoformat(data[name])
            return None

        balances = {name: Money(Decimal(data[name]), terms.currency) for name in BALANCE_FIELDS}
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            tenant_id=data['tenant_id'],
            loan_number=data['loan_number'],
            client_id=data['client_id'],
            created_by=data['created_by'],
            terms=terms,
            maturity_date=date.fromisoformat(data['maturity_date']),
            next_due_date=get_date('next_due_date'),
            status=LoanStatus(data['status']),
            substatus=data.get('substatus'),
            last_payment_date=get_date('last_payment_date'),
            **balances
        )


@dataclass
class LoanPaymentSchedule:
    """Persisted schedule row of a loan"""
    id: str
    tenant_id: str
    loan_id: str
    installment_number: int
    due_date: date
    principal_due: Money
    interest_due: Money
    total_due: Money
    remaining_balance: Money

    @classmethod
    def from_row(cls, tenant_id: str, loan_id: str, row: ScheduleRow) -> 'LoanPaymentSchedule':
        return cls(
            id=f"{loan_id}:{row.installment_number}",
            tenant_id=tenant_id,
            loan_id=loan_id,
            installment_number=row.installment_number,
            due_date=row.due_date,
            principal_due=row.principal_due,
            interest_due=row.interest_due,
            total_due=row.total_due,
            remaining_balance=row.remaining_balance,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'currency': self.principal_due.currency.code,
            'principal_due': str(self.principal_due.amount),
            'interest_due': str(self.interest_due.amount),
            'total_due': str(self.total_due.amount),
            'remaining_balance': str(self.remaining_balance.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPaymentSchedule':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            tenant_id=data['tenant_id'],
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_due=Money(Decimal(data['principal_due']), currency),
            interest_due=Money(Decimal(data['interest_due']), currency),
            total_due=Money(Decimal(data['total_due']), currency),
            remaining_balance=Money(Decimal(data['remaining_balance']), currency),
        )


@dataclass
class LoanDetails:
    """A loan together with everything recorded against it"""
    loan: Loan
    schedule: List[LoanPaymentSchedule]
    events: List[LoanEvent]
    payments: List[Any]   # payments.Payment, newest first


@dataclass
class PayoffQuote:
    """Amount needed to retire a loan, valid through good_through_date"""
    loan_id: str
    loan_number: str
    quote_date: date
    good_through_date: date
    principal: Money
    interest: Money
    fees: Money
    payoff_amount: Money
    per_diem_interest: Money


class LoanManager:
    """
    Manages loan creation, balance changes and loan reads

    Every method taking a tenant_id only ever sees that tenant's records; a
    loan of another tenant is reported as not found.
    """

    def __init__(
        self,
        storage: StorageInterface,
        client_manager: ClientManager,
        ledger: LoanLedger,
        audit_trail: AuditTrail,
        tenant_manager: Optional[TenantManager] = None,
        config: Optional[ServicingConfig] = None
    ):
        self.storage = storage
        self.client_manager = client_manager
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.tenant_manager = tenant_manager
        self.config = config or get_config()

        self.loans_table = "loans"
        self.schedule_table = "loan_payment_schedules"
        self.loan_numbers_table = "loan_numbers"
        self.payments_table = "payments"

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_loan(self, tenant_id: str, client_id: str, user_id: str, terms: LoanTerms) -> Loan:
        """
        Create a loan with its schedule and disbursement event atomically

        The loan number is reserved through an insert-only row; if another
        creation took the same number first, the whole transaction is rolled
        back and retried with jittered exponential backoff.

        Raises:
            NotFoundError: If the client does not belong to the tenant
            PlanLimitExceededError: If the tenant's plan allows no more loans
            ConflictRetryableError: If no loan number could be reserved
        """
        # A nested call cannot roll back only its own part, so it gets one attempt
        max_attempts = 1 if self.storage.in_transaction else max(1, self.config.loan_number_max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                with self.storage.atomic():
                    loan = self._create_loan_once(tenant_id, client_id, user_id, terms)
                break
            except DuplicateRecordError as exc:
                if exc.table != self.loan_numbers_table:
                    raise
                log_action(
                    logger, "warning", "Loan number already taken, retrying",
                    tenant_id=tenant_id, user_id=user_id, action="loan_number_conflict",
                    extra={"attempt": attempt, "loan_number": exc.record_id}
                )
                if attempt == max_attempts:
                    raise ConflictRetryableError(
                        f"Could not allocate a loan number after {max_attempts} attempts"
                    ) from exc
                self._backoff(attempt)

        log_action(
            logger, "info", f"Created loan {loan.loan_number}",
            tenant_id=tenant_id, loan_id=loan.id, user_id=user_id, action="loan_created",
            extra={"principal": str(terms.principal.amount), "term_months": terms.term_months}
        )
        return loan

    def _backoff(self, attempt: int) -> None:
        delay = self.config.loan_number_backoff_seconds * (2 ** (attempt - 1))
        time.sleep(delay * random.uniform(0.5, 1.5))

    def _create_loan_once(self, tenant_id: str, client_id: str, user_id: str, terms: LoanTerms) -> Loan:
        client = self.client_manager.get_client(tenant_id, client_id)

        if self.tenant_manager is not None and self.config.enforce_plan_limits:
            self.tenant_manager.check_limit(tenant_id, "loans", self.count_loans(tenant_id))

        now = datetime.now(timezone.utc)
        loan_id = str(uuid.uuid4())
        loan_number = self._reserve_loan_number(tenant_id, loan_id, now.year)

        schedule = generate_amortization_schedule(
            terms.principal, terms.annual_interest_rate, terms.term_months, terms.start_date
        )

        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            loan_number=loan_number,
            client_id=client.id,
            created_by=user_id,
            terms=terms,
            maturity_date=add_months(terms.start_date, terms.term_months),
            next_due_date=schedule[0].due_date,
        )
        self.storage.insert(self.loans_table, loan.id, loan.to_dict())

        for row in schedule:
            entry = LoanPaymentSchedule.from_row(tenant_id, loan.id, row)
            self.storage.insert(self.schedule_table, entry.id, entry.to_dict())

        zero = Money.zero(terms.currency)
        self.record_balance_change(
            loan,
            LoanEventType.DISBURSEMENT,
            principal_delta=terms.principal,
            interest_delta=zero,
            fee_delta=zero,
            effective_date=terms.start_date,
            description=f"Disbursement of {terms.principal.to_string()}",
            created_by=user_id
        )

        self.audit_trail.log_event(
            tenant_id=tenant_id,
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=user_id,
            metadata={
                "loan_number": loan_number,
                "client_id": client.id,
                "principal": terms.principal.to_string(),
                "annual_interest_rate": str(terms.annual_interest_rate),
                "term_months": terms.term_months,
                "start_date": terms.start_date.isoformat(),
            }
        )
        return loan

    def _reserve_loan_number(self, tenant_id: str, loan_id: str, year: int) -> str:
        """Take the next LOAN-{year}-{seq} for the tenant via an insert-only row"""
        highest = 0
        for data in self.storage.find(self.loan_numbers_table, {'tenant_id': tenant_id, 'year': year}):
            match = LOAN_NUMBER_PATTERN.match(data['loan_number'])
            if match:
                highest = max(highest, int(match.group(2)))

        loan_number = f"LOAN-{year}-{highest + 1:05d}"
        self.storage.insert(
            self.loan_numbers_table,
            f"{tenant_id}:{loan_number}",
            {'tenant_id': tenant_id, 'year': year, 'loan_number': loan_number, 'loan_id': loan_id}
        )
        return loan_number

    # ------------------------------------------------------------------
    # Balance changes
    # ------------------------------------------------------------------

    def record_balance_change(
        self,
        loan: Loan,
        event_type: LoanEventType,
        principal_delta: Money,
        interest_delta: Money,
        fee_delta: Money,
        payment_amount: Optional[Money] = None,
        effective_date: Optional[date] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None
    ) -> LoanEvent:
        """
        Mutate a loan's balances and append the matching ledger event

        Must be called inside a transaction that already holds the loan.
        """
        if not self.storage.in_transaction:
            raise RuntimeError("Balance changes require an active transaction")

        loan.apply_balance_change(
            event_type, principal_delta, interest_delta, fee_delta,
            payment_amount=payment_amount, effective_date=effective_date
        )
        self._save_loan(loan)

        return self.ledger.append_event(
            loan,
            event_type,
            principal_delta,
            interest_delta,
            fee_delta,
            effective_date=effective_date,
            description=description,
            metadata=metadata,
            created_by=created_by
        )

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def assess_fee(
        self,
        tenant_id: str,
        loan_id: str,
        user_id: str,
        amount: Money,
        description: str,
        effective_date: Optional[date] = None
    ) -> LoanEvent:
        """
        Charge a fee to a loan

        Raises:
            InvalidAmountError: If the amount is not a positive amount in the loan currency
            ValueError: If the loan is paid off or closed
        """
        if not amount.is_positive():
            raise InvalidAmountError("Fee amount must be positive")

        with self.storage.atomic():
            loan = self.get_loan_for_update(tenant_id, loan_id)
            self._require_open(loan, "assess a fee on")
            self._require_currency(loan, amount)

            zero = Money.zero(loan.currency)
            event = self.record_balance_change(
                loan,
                LoanEventType.FEE_ASSESSED,
                principal_delta=zero,
                interest_delta=zero,
                fee_delta=amount,
                effective_date=effective_date,
                description=description,
                created_by=user_id
            )
            self.audit_trail.log_event(
                tenant_id=tenant_id,
                event_type=AuditEventType.LOAN_FEE_ASSESSED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={"amount": amount.to_string(), "description": description,
                          "event_id": event.id}
            )

        log_action(
            logger, "info", f"Assessed fee {amount.to_string()} on {loan.loan_number}",
            tenant_id=tenant_id, loan_id=loan_id, user_id=user_id, action="fee_assessed"
        )
        return event

    def accrue_interest(
        self,
        tenant_id: str,
        loan_id: str,
        user_id: str,
        amount: Optional[Money] = None,
        effective_date: Optional[date] = None
    ) -> LoanEvent:
        """
        Add accrued interest to a loan

        Without an explicit amount one monthly period is accrued on the
        current principal.
        """
        if amount is not None and not amount.is_positive():
            raise InvalidAmountError("Interest amount must be positive")

        with self.storage.atomic():
            loan = self.get_loan_for_update(tenant_id, loan_id)
            self._require_open(loan, "accrue interest on")

            if amount is None:
                amount = loan.current_principal * monthly_rate(loan.terms.annual_interest_rate)
                if not amount.is_positive():
                    raise InvalidAmountError(f"Loan {loan.loan_number} accrues no interest")
            self._require_currency(loan, amount)

            zero = Money.zero(loan.currency)
            event = self.record_balance_change(
                loan,
                LoanEventType.INTEREST_ACCRUED,
                principal_delta=zero,
                interest_delta=amount,
                fee_delta=zero,
                effective_date=effective_date,
                description=f"Interest accrued {amount.to_string()}",
                created_by=user_id
            )
            self.audit_trail.log_event(
                tenant_id=tenant_id,
                event_type=AuditEventType.LOAN_INTEREST_ACCRUED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={"amount": amount.to_string(), "event_id": event.id}
            )

        log_action(
            logger, "info", f"Accrued interest {amount.to_string()} on {loan.loan_number}",
            tenant_id=tenant_id, loan_id=loan_id, user_id=user_id, action="interest_accrued"
        )
        return event

    def update_status(
        self,
        tenant_id: str,
        loan_id: str,
        user_id: str,
        status: LoanStatus,
        substatus: Optional[str] = None
    ) -> Loan:
        """
        Manually move a loan to active, delinquent, charged_off or closed

        Raises:
            InvalidStatusTransitionError: For paid_off as a target, or any
                change to a paid-off loan
        """
        if status not in MANUAL_STATUSES:
            raise InvalidStatusTransitionError(
                f"Status {status.value} cannot be set manually"
            )

        with self.storage.atomic():
            loan = self.get_loan_for_update(tenant_id, loan_id)
            if loan.is_paid_off:
                raise InvalidStatusTransitionError(
                    f"Loan {loan.loan_number} is paid off and cannot change status"
                )
            if loan.status == status and loan.substatus == substatus:
                return loan

            previous = loan.status
            loan.status = status
            loan.substatus = substatus

            zero = Money.zero(loan.currency)
            self.record_balance_change(
                loan,
                LoanEventType.STATUS_CHANGED,
                principal_delta=zero,
                interest_delta=zero,
                fee_delta=zero,
                description=f"Status changed from {previous.value} to {status.value}",
                metadata={"from": previous.value, "to": status.value, "substatus": substatus},
                created_by=user_id
            )
            self.audit_trail.log_event(
                tenant_id=tenant_id,
                event_type=AuditEventType.LOAN_STATUS_CHANGED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={"from": previous.value, "to": status.value, "substatus": substatus}
            )

        log_action(
            logger, "info", f"Loan {loan.loan_number} status {previous.value} -> {status.value}",
            tenant_id=tenant_id, loan_id=loan_id, user_id=user_id, action="status_changed"
        )
        return loan

    @staticmethod
    def _require_open(loan: Loan, verb: str) -> None:
        if loan.status in CLOSED_STATUSES:
            raise ValueError(f"Cannot {verb} loan {loan.loan_number} in status {loan.status.value}")

    @staticmethod
    def _require_currency(loan: Loan, amount: Money) -> None:
        if amount.currency != loan.currency:
            raise InvalidAmountError(
                f"Amount currency {amount.currency.code} does not match loan currency {loan.currency.code}"
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_loan(self, tenant_id: str, loan_id: str) -> Loan:
        """
        Raises:
            NotFoundError: If the loan does not exist for the tenant
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data or data.get('tenant_id') != tenant_id:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def get_loan_for_update(self, tenant_id: str, loan_id: str) -> Loan:
        """Load and lock a loan row for the rest of the current transaction"""
        data = self.storage.load_for_update(self.loans_table, loan_id)
        if not data or data.get('tenant_id') != tenant_id:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def get_schedule(self, tenant_id: str, loan_id: str) -> List[LoanPaymentSchedule]:
        rows = self.storage.find(self.schedule_table, {'tenant_id': tenant_id, 'loan_id': loan_id})
        schedule = [LoanPaymentSchedule.from_dict(data) for data in rows]
        schedule.sort(key=lambda row: row.installment_number)
        return schedule

    def get_payments(self, tenant_id: str, loan_id: str) -> List[Any]:
        """Payments recorded against a loan, newest first"""
        from .payments import Payment

        records = self.storage.find(self.payments_table, {'tenant_id': tenant_id, 'loan_id': loan_id})
        payments = [Payment.from_dict(data) for data in records]
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments

    def get_loan_details(self, tenant_id: str, loan_id: str) -> LoanDetails:
        loan = self.get_loan(tenant_id, loan_id)
        return LoanDetails(
            loan=loan,
            schedule=self.get_schedule(tenant_id, loan_id),
            events=self.ledger.get_events(tenant_id, loan_id),
            payments=self.get_payments(tenant_id, loan_id),
        )

    def list_loans(
        self,
        tenant_id: str,
        status: Optional[LoanStatus] = None,
        client_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None
    ) -> Tuple[List[Loan], int]:
        """
        List a tenant's loans, newest first

        Returns:
            (page of loans, total number of matching loans)
        """
        filters: Dict[str, Any] = {'tenant_id': tenant_id}
        if status is not None:
            filters['status'] = status.value
        if client_id is not None:
            filters['client_id'] = client_id

        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        total = len(loans)

        start = offset or 0
        end = start + limit if limit is not None else None
        return loans[start:end], total

    def count_loans(self, tenant_id: str) -> int:
        return len(self.storage.find(self.loans_table, {'tenant_id': tenant_id}))

    def get_payoff_quote(self, tenant_id: str, loan_id: str,
                         quote_date: Optional[date] = None) -> PayoffQuote:
        """Quote the amount that retires the loan today"""
        loan = self.get_loan(tenant_id, loan_id)
        quote_date = quote_date or date.today()
        per_diem = loan.current_principal * (loan.terms.annual_interest_rate / Decimal('100') / Decimal('365'))

        return PayoffQuote(
            loan_id=loan.id,
            loan_number=loan.loan_number,
            quote_date=quote_date,
            good_through_date=quote_date + timedelta(days=self.config.payoff_quote_valid_days),
            principal=loan.current_principal,
            interest=loan.current_interest,
            fees=loan.current_fees,
            payoff_amount=loan.total_outstanding,
            per_diem_interest=per_diem,
        )

    # ------------------------------------------------------------------
    # Client portal
    # ------------------------------------------------------------------

    def list_client_loans(self, tenant_id: str, client_id: str) -> List[Loan]:
        """Loans of one borrower, newest first"""
        self.client_manager.get_client(tenant_id, client_id)
        loans, _ = self.list_loans(tenant_id, client_id=client_id)
        return loans

    def get_client_loan(self, tenant_id: str, client_id: str, loan_id: str) -> Loan:
        """A loan as seen by its borrower; other borrowers' loans are not found"""
        loan = self.get_loan(tenant_id, loan_id)
        if loan.client_id != client_id:
            raise NotFoundError("loan", loan_id)
        return loan

    def get_portal_history(self, tenant_id: str, client_id: str, loan_id: str) -> List[Dict[str, Any]]:
        """
        Borrower-facing payment history

        Payments plus disbursement, payment and fee events, newest first,
        capped at portal_history_limit entries.
        """
        loan = self.get_client_loan(tenant_id, client_id, loan_id)

        history: List[Dict[str, Any]] = []
        for payment in self.get_payments(tenant_id, loan.id):
            history.append({
                'kind': 'payment',
                'id': payment.id,
                'date': payment.effective_date,
                'amount': payment.amount,
                'description': payment.notes or f"Payment by {payment.method.value}",
                'created_at': payment.created_at,
            })

        visible = [LoanEventType.PAYMENT_POSTED, LoanEventType.DISBURSEMENT, LoanEventType.FEE_ASSESSED]
        for event in self.ledger.get_events(tenant_id, loan.id, event_types=visible):
            history.append({
                'kind': event.event_type.value,
                'id': event.id,
                'date': event.effective_date,
                'amount': abs(event.total_amount),
                'description': event.description,
                'created_at': event.created_at,
            })

        history.sort(key=lambda entry: entry['created_at'], reverse=True)
        return history[:self.config.portal_history_limit]
