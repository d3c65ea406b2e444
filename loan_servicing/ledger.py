"""
Loan Ledger

Append-only log of balance-affecting events for each loan. Every event
records the signed change to each balance bucket (principal, interest, fees)
and a snapshot of the balances right after the event, so the history of a
loan can be replayed and checked against its current state.

Events are never updated or deleted.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, TYPE_CHECKING
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord

if TYPE_CHECKING:
    from .loans import Loan


class LoanEventType(Enum):
    """Kinds of loan ledger events"""
    DISBURSEMENT = "disbursement"
    PAYMENT_POSTED = "payment_posted"
    FEE_ASSESSED = "fee_assessed"
    INTEREST_ACCRUED = "interest_accrued"
    STATUS_CHANGED = "status_changed"


MONEY_FIELDS = (
    'principal_amount', 'interest_amount', 'fee_amount',
    'principal_balance', 'interest_balance', 'fee_balance',
)


@dataclass
class LoanEvent(StorageRecord):
    """
    One immutable ledger entry

    The *_amount fields are signed deltas (negative for payments). The
    *_balance fields are the loan's balances after the event was applied.
    """
    tenant_id: str
    loan_id: str
    sequence: int
    event_type: LoanEventType
    principal_amount: Money
    interest_amount: Money
    fee_amount: Money
    principal_balance: Money
    interest_balance: Money
    fee_balance: Money
    effective_date: date
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_by: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.principal_balance.currency

    @property
    def total_amount(self) -> Money:
        """Sum of the three deltas"""
        return self.principal_amount + self.interest_amount + self.fee_amount

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'tenant_id': self.tenant_id,
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'event_type': self.event_type.value,
            'currency': self.currency.code,
            'effective_date': self.effective_date.isoformat(),
            'description': self.description,
            'metadata': self.metadata,
            'created_by': self.created_by,
        }
        for name in MONEY_FIELDS:
            result[name] = str(getattr(self, name).amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanEvent':
        currency = Currency[data['currency']]
        amounts = {name: Money(Decimal(data[name]), currency) for name in MONEY_FIELDS}
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            tenant_id=data['tenant_id'],
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            event_type=LoanEventType(data['event_type']),
            effective_date=date.fromisoformat(data['effective_date']),
            description=data.get('description', ""),
            metadata=data.get('metadata') or {},
            created_by=data.get('created_by'),
            **amounts
        )


class LoanLedger:
    """
    Append-only event store for loans

    append_event() must run inside the same transaction that mutated the loan
    and must be given the loan after the mutation.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "loan_events"

    def append_event(
        self,
        loan: 'Loan',
        event_type: LoanEventType,
        principal_delta: Money,
        interest_delta: Money,
        fee_delta: Money,
        effective_date: Optional[date] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        created_by: Optional[str] = None
    ) -> LoanEvent:
        """
        Append an event for a loan whose balances already reflect it

        Returns:
            The stored LoanEvent
        """
        latest = self.get_latest_event(loan.tenant_id, loan.id)
        now = datetime.now(timezone.utc)

        event = LoanEvent(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            tenant_id=loan.tenant_id,
            loan_id=loan.id,
            sequence=(latest.sequence + 1) if latest else 1,
            event_type=event_type,
            principal_amount=principal_delta,
            interest_amount=interest_delta,
            fee_amount=fee_delta,
            principal_balance=loan.current_principal,
            interest_balance=loan.current_interest,
            fee_balance=loan.current_fees,
            effective_date=effective_date or date.today(),
            description=description,
            metadata=metadata or {},
            created_by=created_by
        )

        self.storage.insert(self.table_name, event.id, event.to_dict())
        return event

    def get_events(
        self,
        tenant_id: str,
        loan_id: str,
        event_types: Optional[List[LoanEventType]] = None,
        limit: Optional[int] = None
    ) -> List[LoanEvent]:
        """Events of a loan ordered by sequence (oldest first)"""
        records = self.storage.find(self.table_name, {'tenant_id': tenant_id, 'loan_id': loan_id})
        events = sorted((LoanEvent.from_dict(data) for data in records), key=lambda e: e.sequence)

        if event_types:
            events = [e for e in events if e.event_type in event_types]
        if limit is not None:
            events = events[:limit]
        return events

    def get_latest_event(self, tenant_id: str, loan_id: str) -> Optional[LoanEvent]:
        events = self.get_events(tenant_id, loan_id)
        return events[-1] if events else None

    def reconcile(self, loan: 'Loan') -> Dict[str, Any]:
        """
        Check a loan against its event history

        Replays every delta from zero and compares the running totals with each
        stored snapshot, then compares the last snapshot with the loan itself.
        """
        events = self.get_events(loan.tenant_id, loan.id)
        errors: List[str] = []

        currency = loan.currency
        principal = Money.zero(currency)
        interest = Money.zero(currency)
        fees = Money.zero(currency)

        for expected_sequence, event in enumerate(events, start=1):
            if event.sequence != expected_sequence:
                errors.append(f"Sequence gap: expected {expected_sequence}, found {event.sequence}")

            principal = principal + event.principal_amount
            interest = interest + event.interest_amount
            fees = fees + event.fee_amount

            replayed = (principal, interest, fees)
            snapshot = (event.principal_balance, event.interest_balance, event.fee_balance)
            if replayed != snapshot:
                errors.append(
                    f"Event {event.sequence} ({event.event_type.value}) snapshot "
                    f"{[m.amount for m in snapshot]} does not match replayed balances "
                    f"{[m.amount for m in replayed]}"
                )

        if events:
            last = events[-1]
            current = (loan.current_principal, loan.current_interest, loan.current_fees)
            if current != (last.principal_balance, last.interest_balance, last.fee_balance):
                errors.append("Latest event snapshot does not match the loan's current balances")
        else:
            errors.append("Loan has no ledger events")

        return {
            'valid': not errors,
            'event_count': len(events),
            'errors': errors,
        }
