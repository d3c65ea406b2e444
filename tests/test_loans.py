"""
Test suite for loans module

Tests the loan aggregate, the creation protocol (loan numbers, schedule,
disbursement event, plan limits), fee and interest charges, manual status
changes and the read side used by staff and the client portal.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date, timedelta

from loan_servicing.currency import Money, Currency
from loan_servicing.storage import InMemoryStorage
from loan_servicing.audit import AuditTrail, AuditEventType
from loan_servicing.clients import ClientManager
from loan_servicing.config import ServicingConfig
from loan_servicing.exceptions import (
    NotFoundError, InvalidAmountError, ConflictRetryableError,
    PlanLimitExceededError, InvalidStatusTransitionError
)
from loan_servicing.ledger import LoanLedger, LoanEventType
from loan_servicing.loans import Loan, LoanManager, LoanStatus, LoanTerms, PaymentFrequency
from loan_servicing.payments import PaymentAllocationEngine, PaymentMethod
from loan_servicing.tenancy import TenantManager, SubscriptionTier, TenantStatus


TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
USER = "staff-1"
THIS_YEAR = datetime.now(timezone.utc).year


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


def make_terms(principal='12000', rate='6', term=12, start=date(2024, 1, 15)) -> LoanTerms:
    return LoanTerms(
        principal=usd(principal),
        annual_interest_rate=Decimal(rate),
        term_months=term,
        start_date=start
    )


class StaleNumberStorage(InMemoryStorage):
    """Hides existing loan numbers for a number of reads, as a concurrent creator would"""

    def __init__(self):
        super().__init__()
        self.stale_reads = 0

    def find(self, table, filters):
        if table == "loan_numbers" and self.stale_reads > 0:
            self.stale_reads -= 1
            return []
        return super().find(table, filters)


@pytest.fixture
def storage():
    return StaleNumberStorage()


@pytest.fixture
def config():
    return ServicingConfig(loan_number_backoff_seconds=0.0, loan_number_max_attempts=3)


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def client_manager(storage):
    return ClientManager(storage)


@pytest.fixture
def tenant_manager(storage):
    return TenantManager(storage)


@pytest.fixture
def ledger(storage):
    return LoanLedger(storage)


@pytest.fixture
def loan_manager(storage, client_manager, ledger, audit_trail, tenant_manager, config):
    return LoanManager(storage, client_manager, ledger, audit_trail,
                       tenant_manager=tenant_manager, config=config)


@pytest.fixture
def payment_engine(storage, loan_manager, audit_trail):
    return PaymentAllocationEngine(storage, loan_manager, audit_trail)


@pytest.fixture
def client(client_manager):
    return client_manager.create_client(TENANT, "Ada Borrower", email="ada@example.com")


@pytest.fixture
def loan(loan_manager, client):
    return loan_manager.create_loan(TENANT, client.id, USER, make_terms())


class TestLoanTerms:
    """Test loan terms validation"""

    def test_valid_terms(self):
        terms = make_terms(rate='6.25')

        assert terms.principal == usd('12000')
        assert terms.annual_interest_rate == Decimal('6.25')
        assert terms.payment_frequency == PaymentFrequency.MONTHLY
        assert terms.currency == Currency.USD

    def test_rate_given_as_string_is_converted(self):
        terms = LoanTerms(principal=usd('100'), annual_interest_rate='7.5',
                          term_months=12, start_date=date(2024, 1, 1))
        assert terms.annual_interest_rate == Decimal('7.5')

    @pytest.mark.parametrize("principal,rate,term", [
        ('0', '5', 12),
        ('1000', '100', 12),
        ('1000', '-0.01', 12),
        ('1000', '5.125', 12),
        ('1000', '5', 0),
    ])
    def test_invalid_terms(self, principal, rate, term):
        with pytest.raises(ValueError):
            make_terms(principal=principal, rate=rate, term=term)


class TestLoanAggregate:
    """Test the single balance mutation point"""

    def make_loan(self, principal='100') -> Loan:
        now = datetime.now(timezone.utc)
        return Loan(
            id="loan-1",
            created_at=now,
            updated_at=now,
            tenant_id=TENANT,
            loan_number=f"LOAN-{THIS_YEAR}-00001",
            client_id="client-1",
            created_by=USER,
            terms=make_terms(principal=principal),
            maturity_date=date(2025, 1, 15),
            next_due_date=date(2024, 2, 15),
            current_principal=usd(principal)
        )

    def test_defaults_to_zero_balances(self):
        loan = self.make_loan()
        assert loan.current_interest.is_zero()
        assert loan.current_fees.is_zero()
        assert loan.total_paid.is_zero()
        assert loan.status == LoanStatus.ACTIVE

    def test_payment_to_zero_pays_off(self):
        loan = self.make_loan()
        zero = Money.zero(Currency.USD)

        loan.apply_balance_change(
            LoanEventType.PAYMENT_POSTED, usd('-100'), zero, zero,
            payment_amount=usd('150'), effective_date=date(2024, 3, 1)
        )

        assert loan.current_principal.is_zero()
        assert loan.total_paid == usd('150')
        assert loan.status == LoanStatus.PAID_OFF
        assert loan.substatus == "paid_off"
        assert loan.next_due_date is None
        assert loan.last_payment_date == date(2024, 3, 1)

    def test_rejects_negative_balance(self):
        loan = self.make_loan()
        zero = Money.zero(Currency.USD)

        with pytest.raises(ValueError, match="negative"):
            loan.apply_balance_change(LoanEventType.PAYMENT_POSTED, usd('-100.01'), zero, zero)
        with pytest.raises(ValueError, match="negative"):
            loan.apply_balance_change(LoanEventType.PAYMENT_POSTED, zero, zero, usd('-1'))

        assert loan.current_principal == usd('100')

    def test_principal_increases_only_by_disbursement(self):
        loan = self.make_loan()
        zero = Money.zero(Currency.USD)

        with pytest.raises(ValueError, match="Principal cannot increase"):
            loan.apply_balance_change(LoanEventType.FEE_ASSESSED, usd('1'), zero, usd('5'))

    def test_storage_round_trip(self):
        loan = self.make_loan()
        restored = Loan.from_dict(loan.to_dict())

        assert restored == loan


class TestLoanCreation:
    """Test the loan creation protocol"""

    def test_create_loan(self, loan_manager, ledger, client):
        loan = loan_manager.create_loan(TENANT, client.id, USER, make_terms())

        assert loan.loan_number == f"LOAN-{THIS_YEAR}-00001"
        assert loan.status == LoanStatus.ACTIVE
        assert loan.current_principal == usd('12000')
        assert loan.current_interest.is_zero()
        assert loan.current_fees.is_zero()
        assert loan.total_paid.is_zero()
        assert loan.maturity_date == date(2025, 1, 15)
        assert loan.next_due_date == date(2024, 2, 15)
        assert loan.created_by == USER

        stored = loan_manager.get_loan(TENANT, loan.id)
        assert stored.current_principal == usd('12000')
        assert stored.loan_number == loan.loan_number

    def test_schedule_persisted(self, loan_manager, loan):
        schedule = loan_manager.get_schedule(TENANT, loan.id)

        assert len(schedule) == 12
        assert [row.installment_number for row in schedule] == list(range(1, 13))
        assert schedule[0].interest_due == usd('60.00')
        assert schedule[0].principal_due == usd('972.80')
        total = sum((row.principal_due.amount for row in schedule), Decimal('0'))
        assert total == Decimal('12000.00')

    def test_disbursement_event(self, ledger, loan):
        events = ledger.get_events(TENANT, loan.id)

        assert len(events) == 1
        event = events[0]
        assert event.event_type == LoanEventType.DISBURSEMENT
        assert event.sequence == 1
        assert event.principal_amount == usd('12000')
        assert event.principal_balance == usd('12000')
        assert event.interest_balance.is_zero()
        assert event.effective_date == date(2024, 1, 15)
        assert event.created_by == USER

    def test_audit_entry(self, audit_trail, loan):
        entries = audit_trail.get_events_for_entity(TENANT, "loan", loan.id)

        assert [e.event_type for e in entries] == [AuditEventType.LOAN_CREATED]
        assert entries[0].metadata["loan_number"] == loan.loan_number

    def test_loan_numbers_are_sequential_per_tenant(self, loan_manager, client_manager, client):
        first = loan_manager.create_loan(TENANT, client.id, USER, make_terms())
        second = loan_manager.create_loan(TENANT, client.id, USER, make_terms())
        other_client = client_manager.create_client(OTHER_TENANT, "Bob")
        other = loan_manager.create_loan(OTHER_TENANT, other_client.id, USER, make_terms())

        assert first.loan_number == f"LOAN-{THIS_YEAR}-00001"
        assert second.loan_number == f"LOAN-{THIS_YEAR}-00002"
        assert other.loan_number == f"LOAN-{THIS_YEAR}-00001"

    def test_client_of_other_tenant_rejected(self, loan_manager, storage, client_manager):
        foreign = client_manager.create_client(OTHER_TENANT, "Mallory")

        with pytest.raises(NotFoundError):
            loan_manager.create_loan(TENANT, foreign.id, USER, make_terms())

        assert storage.count("loans") == 0
        assert storage.count("loan_numbers") == 0

    def test_unknown_client_rejected(self, loan_manager):
        with pytest.raises(NotFoundError, match="Client missing not found"):
            loan_manager.create_loan(TENANT, "missing", USER, make_terms())

    def test_loan_number_conflict_is_retried(self, loan_manager, storage, client):
        loan_manager.create_loan(TENANT, client.id, USER, make_terms())
        storage.stale_reads = 2

        loan = loan_manager.create_loan(TENANT, client.id, USER, make_terms())

        assert loan.loan_number == f"LOAN-{THIS_YEAR}-00002"
        assert storage.count("loans") == 2
        assert storage.count("loan_payment_schedules") == 24

    def test_loan_number_retries_exhausted(self, loan_manager, storage, ledger, client):
        first = loan_manager.create_loan(TENANT, client.id, USER, make_terms())
        storage.stale_reads = 10

        with pytest.raises(ConflictRetryableError):
            loan_manager.create_loan(TENANT, client.id, USER, make_terms())

        assert storage.count("loans") == 1
        assert storage.count("loan_payment_schedules") == 12
        assert storage.count("loan_events") == 1
        assert ledger.get_events(TENANT, first.id)[0].event_type == LoanEventType.DISBURSEMENT

    def test_creation_is_atomic(self, loan_manager, storage, ledger, client, monkeypatch):
        def fail(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(ledger, "append_event", fail)

        with pytest.raises(RuntimeError):
            loan_manager.create_loan(TENANT, client.id, USER, make_terms())

        for table in ("loans", "loan_payment_schedules", "loan_numbers", "loan_events", "audit_events"):
            assert storage.count(table) == 0

    def test_plan_limit_enforced(self, loan_manager, tenant_manager, client):
        tenant_manager.create_tenant("Acme Lending", "acme", SubscriptionTier.FREE, tenant_id=TENANT)

        for _ in range(5):
            loan_manager.create_loan(TENANT, client.id, USER, make_terms())

        with pytest.raises(PlanLimitExceededError):
            loan_manager.create_loan(TENANT, client.id, USER, make_terms())

    def test_plan_limit_can_be_disabled(self, storage, client_manager, ledger, audit_trail,
                                        tenant_manager, client):
        tenant_manager.create_tenant("Acme Lending", "acme", SubscriptionTier.FREE, tenant_id=TENANT)
        manager = LoanManager(storage, client_manager, ledger, audit_trail,
                              tenant_manager=tenant_manager,
                              config=ServicingConfig(enforce_plan_limits=False))

        for _ in range(6):
            manager.create_loan(TENANT, client.id, USER, make_terms())

        assert manager.count_loans(TENANT) == 6

    def test_suspended_tenant_cannot_create(self, loan_manager, tenant_manager, client):
        tenant_manager.create_tenant("Acme Lending", "acme", SubscriptionTier.ENTERPRISE, tenant_id=TENANT)
        tenant_manager.update_tenant(TENANT, status=TenantStatus.SUSPENDED)

        with pytest.raises(PlanLimitExceededError, match="suspended"):
            loan_manager.create_loan(TENANT, client.id, USER, make_terms())


class TestBalanceChanges:
    """Fees, interest and the transaction requirement"""

    def test_record_balance_change_requires_transaction(self, loan_manager, loan):
        zero = Money.zero(Currency.USD)
        with pytest.raises(RuntimeError):
            loan_manager.record_balance_change(loan, LoanEventType.FEE_ASSESSED, zero, zero, usd('5'))

    def test_assess_fee(self, loan_manager, ledger, audit_trail, loan):
        event = loan_manager.assess_fee(TENANT, loan.id, USER, usd('25'), "Late fee",
                                        effective_date=date(2024, 3, 1))

        assert event.event_type == LoanEventType.FEE_ASSESSED
        assert event.sequence == 2
        assert event.fee_amount == usd('25')
        assert event.principal_amount.is_zero()
        assert event.fee_balance == usd('25')
        assert event.description == "Late fee"
        assert loan_manager.get_loan(TENANT, loan.id).current_fees == usd('25')
        kinds = [e.event_type for e in audit_trail.get_events_for_entity(TENANT, "loan", loan.id)]
        assert AuditEventType.LOAN_FEE_ASSESSED in kinds

    def test_fee_must_be_positive(self, loan_manager, loan):
        with pytest.raises(InvalidAmountError):
            loan_manager.assess_fee(TENANT, loan.id, USER, usd('0'), "Nothing")

    def test_fee_currency_must_match(self, loan_manager, ledger, loan):
        with pytest.raises(InvalidAmountError):
            loan_manager.assess_fee(TENANT, loan.id, USER, Money(Decimal('5'), Currency.EUR), "Fee")
        assert len(ledger.get_events(TENANT, loan.id)) == 1

    def test_accrue_default_interest(self, loan_manager, loan):
        event = loan_manager.accrue_interest(TENANT, loan.id, USER)

        assert event.event_type == LoanEventType.INTEREST_ACCRUED
        assert event.interest_amount == usd('60.00')
        assert loan_manager.get_loan(TENANT, loan.id).current_interest == usd('60.00')

    def test_accrue_explicit_interest(self, loan_manager, loan):
        loan_manager.accrue_interest(TENANT, loan.id, USER, amount=usd('12.34'))
        assert loan_manager.get_loan(TENANT, loan.id).current_interest == usd('12.34')

    def test_zero_rate_loan_accrues_nothing(self, loan_manager, client):
        loan = loan_manager.create_loan(TENANT, client.id, USER, make_terms(rate='0'))
        with pytest.raises(InvalidAmountError):
            loan_manager.accrue_interest(TENANT, loan.id, USER)

    def test_no_charges_on_closed_loan(self, loan_manager, loan):
        loan_manager.update_status(TENANT, loan.id, USER, LoanStatus.CLOSED)

        with pytest.raises(ValueError, match="closed"):
            loan_manager.assess_fee(TENANT, loan.id, USER, usd('5'), "Fee")
        with pytest.raises(ValueError):
            loan_manager.accrue_interest(TENANT, loan.id, USER)

    def test_other_tenant_cannot_charge(self, loan_manager, loan):
        with pytest.raises(NotFoundError):
            loan_manager.assess_fee(OTHER_TENANT, loan.id, USER, usd('5'), "Fee")


class TestStatusUpdates:
    """Manual status changes"""

    def test_mark_delinquent(self, loan_manager, ledger, audit_trail, loan):
        updated = loan_manager.update_status(TENANT, loan.id, USER, LoanStatus.DELINQUENT,
                                             substatus="30_days")

        assert updated.status == LoanStatus.DELINQUENT
        assert updated.substatus == "30_days"

        event = ledger.get_latest_event(TENANT, loan.id)
        assert event.event_type == LoanEventType.STATUS_CHANGED
        assert event.total_amount.is_zero()
        assert event.principal_balance == usd('12000')
        assert event.metadata["from"] == "active"
        assert event.metadata["to"] == "delinquent"

        kinds = [e.event_type for e in audit_trail.get_events_for_entity(TENANT, "loan", loan.id)]
        assert kinds[-1] == AuditEventType.LOAN_STATUS_CHANGED

    def test_unchanged_status_records_nothing(self, loan_manager, ledger, loan):
        loan_manager.update_status(TENANT, loan.id, USER, LoanStatus.ACTIVE)
        assert len(ledger.get_events(TENANT, loan.id)) == 1

    def test_paid_off_cannot_be_set_manually(self, loan_manager, loan):
        with pytest.raises(InvalidStatusTransitionError):
            loan_manager.update_status(TENANT, loan.id, USER, LoanStatus.PAID_OFF)

    def test_paid_off_is_final(self, loan_manager, payment_engine, client):
        loan = loan_manager.create_loan(TENANT, client.id, USER, make_terms(principal='100'))
        payment_engine.post_payment(TENANT, loan.id, USER, usd('100'), PaymentMethod.CASH)

        with pytest.raises(ValueError):
            loan_manager.update_status(TENANT, loan.id, USER, LoanStatus.ACTIVE)
        assert loan_manager.get_loan(TENANT, loan.id).status == LoanStatus.PAID_OFF


class TestLoanReads:
    """Read accessors"""

    def test_get_loan_is_tenant_scoped(self, loan_manager, loan):
        with pytest.raises(NotFoundError):
            loan_manager.get_loan(OTHER_TENANT, loan.id)
        with pytest.raises(NotFoundError):
            loan_manager.get_loan(TENANT, "missing")

    def test_get_loan_details(self, loan_manager, payment_engine, loan):
        payment_engine.post_payment(TENANT, loan.id, USER, usd('500'), PaymentMethod.CHECK)

        details = loan_manager.get_loan_details(TENANT, loan.id)

        assert details.loan.id == loan.id
        assert len(details.schedule) == 12
        assert [e.event_type for e in details.events] == [
            LoanEventType.DISBURSEMENT, LoanEventType.PAYMENT_POSTED
        ]
        assert len(details.payments) == 1
        assert details.payments[0].amount == usd('500')

    def test_list_loans(self, loan_manager, client_manager, client):
        other_client = client_manager.create_client(TENANT, "Grace")
        first = loan_manager.create_loan(TENANT, client.id, USER, make_terms())
        second = loan_manager.create_loan(TENANT, other_client.id, USER, make_terms())
        third = loan_manager.create_loan(TENANT, client.id, USER, make_terms())
        loan_manager.update_status(TENANT, second.id, USER, LoanStatus.DELINQUENT)

        loans, total = loan_manager.list_loans(TENANT)
        assert total == 3
        assert [l.id for l in loans] == [third.id, second.id, first.id]

        page, total = loan_manager.list_loans(TENANT, limit=1, offset=1)
        assert total == 3
        assert [l.id for l in page] == [second.id]

        delinquent, total = loan_manager.list_loans(TENANT, status=LoanStatus.DELINQUENT)
        assert total == 1 and delinquent[0].id == second.id

        mine, total = loan_manager.list_loans(TENANT, client_id=client.id)
        assert total == 2

        assert loan_manager.list_loans(OTHER_TENANT) == ([], 0)

    def test_payoff_quote(self, loan_manager, loan):
        loan_manager.assess_fee(TENANT, loan.id, USER, usd('15'), "Fee")
        loan_manager.accrue_interest(TENANT, loan.id, USER)

        quote = loan_manager.get_payoff_quote(TENANT, loan.id, quote_date=date(2024, 2, 1))

        assert quote.loan_number == loan.loan_number
        assert quote.good_through_date == date(2024, 2, 11)
        assert quote.principal == usd('12000')
        assert quote.interest == usd('60.00')
        assert quote.fees == usd('15')
        assert quote.payoff_amount == usd('12075.00')
        assert quote.per_diem_interest == usd('1.97')

    def test_payoff_quote_defaults_to_today(self, loan_manager, loan):
        quote = loan_manager.get_payoff_quote(TENANT, loan.id)
        assert quote.quote_date == date.today()
        assert quote.good_through_date - quote.quote_date == timedelta(days=10)


class TestClientPortal:
    """Borrower-facing reads"""

    def test_list_client_loans(self, loan_manager, client_manager, client):
        mine = loan_manager.create_loan(TENANT, client.id, USER, make_terms())
        other_client = client_manager.create_client(TENANT, "Grace")
        loan_manager.create_loan(TENANT, other_client.id, USER, make_terms())

        assert [l.id for l in loan_manager.list_client_loans(TENANT, client.id)] == [mine.id]

    def test_other_borrowers_loan_not_found(self, loan_manager, client_manager, loan):
        other_client = client_manager.create_client(TENANT, "Grace")

        with pytest.raises(NotFoundError):
            loan_manager.get_client_loan(TENANT, other_client.id, loan.id)

    def test_portal_history(self, loan_manager, payment_engine, client, loan):
        loan_manager.assess_fee(TENANT, loan.id, USER, usd('10'), "Returned check fee")
        loan_manager.accrue_interest(TENANT, loan.id, USER)
        payment_engine.post_payment(TENANT, loan.id, USER, usd('100'), PaymentMethod.BANK_TRANSFER)

        history = loan_manager.get_portal_history(TENANT, client.id, loan.id)

        kinds = sorted(entry['kind'] for entry in history)
        assert kinds == ['disbursement', 'fee_assessed', 'payment', 'payment_posted']
        assert history[-1]['kind'] == 'disbursement'
        assert history[-1]['amount'] == usd('12000')
        payment_entry = next(e for e in history if e['kind'] == 'payment')
        assert payment_entry['amount'] == usd('100')

    def test_portal_history_is_capped(self, storage, client_manager, ledger, audit_trail,
                                      client, payment_engine):
        manager = LoanManager(storage, client_manager, ledger, audit_trail,
                              config=ServicingConfig(portal_history_limit=3))
        loan = manager.create_loan(TENANT, client.id, USER, make_terms())
        for _ in range(3):
            payment_engine.post_payment(TENANT, loan.id, USER, usd('10'), PaymentMethod.CASH)

        assert len(manager.get_portal_history(TENANT, client.id, loan.id)) == 3
