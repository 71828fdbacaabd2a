# backend/tests/test_closing.py
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from dealdesk.api import audit, closing
from dealdesk.api.closing import CloseDealIn, close_deal
from dealdesk.api.contracts import find_dangling_contracts, find_unfinished_closures
from dealdesk.core.exceptions import (
    ContractPersistenceError,
    DuplicateClosureError,
    InvalidClosureInputError,
    LeadNotFoundError,
    PartialClosureError,
    SequenceAllocationError,
    UnauthenticatedError,
)
from dealdesk.models import (
    AuditLog,
    ClosureRequest,
    Commission,
    Contract,
    ContractBroker,
    ContractSequence,
    FinancialEntry,
    Lead,
    Notification,
)

TODAY = date(2026, 3, 10)


def _count(db, model, *where):
    stmt = select(func.count()).select_from(model)
    if where:
        stmt = stmt.where(*where)
    return db.execute(stmt).scalar_one()


def _close(db, current, lead_id, notifier=None, **terms):
    return close_deal(db, current, lead_id, CloseDealIn(**terms), notifier=notifier, today=TODAY)


def _assert_nothing_written(db):
    assert _count(db, ClosureRequest) == 0
    assert _count(db, ContractSequence) == 0
    assert _count(db, Contract) == 0
    assert _count(db, FinancialEntry) == 0
    assert _count(db, Commission) == 0


# -----------------------------
# Happy paths
# -----------------------------
def test_full_closure_with_two_brokers(db, seed, current):
    result = _close(
        db, current, seed.lead_id,
        value=Decimal("300000"),
        down_payment=Decimal("30000"),
        installments=3,
        commission_percentage=Decimal("5"),
        broker_ids=[seed.broker1_id, seed.broker2_id],
        payment_conditions="Entrada + 3x",
    )

    assert result.contract_number == "CTR-2026-00001"
    assert result.installments_created == 3
    assert result.down_payment_created is True

    db.expire_all()
    contract = db.get(Contract, result.contract_id)
    assert contract.organization_id == seed.org_id
    assert contract.status == "active"
    assert contract.contract_type == "sale"
    assert contract.lead_id == seed.lead_id
    assert contract.property_id == seed.property_id
    assert contract.client_name == "Maria Souza"
    assert contract.value == Decimal("300000.00")
    assert contract.down_payment == Decimal("30000.00")
    assert contract.commission_value == Decimal("15000.00")
    assert contract.signing_date == TODAY
    assert contract.created_by == seed.admin_id

    receivables = sorted(
        (e for e in contract.entries if e.type == "receivable"),
        key=lambda e: e.installment_number,
    )
    assert [e.amount for e in receivables] == [Decimal("30000.00")] + [Decimal("90000.00")] * 3
    assert [e.due_date for e in receivables] == [
        date(2026, 3, 10),
        date(2026, 4, 10),
        date(2026, 5, 10),
        date(2026, 6, 10),
    ]
    assert receivables[1].description == "Parcela 1/3 - CTR-2026-00001"

    payables = [e for e in contract.entries if e.type == "payable"]
    assert len(payables) == 1
    assert payables[0].amount == Decimal("15000.00")
    assert payables[0].category == "Comissão"

    assert sorted((b.user_id, b.commission_percentage) for b in contract.brokers) == sorted(
        [(seed.broker1_id, Decimal("2.5")), (seed.broker2_id, Decimal("2.5"))]
    )
    assert sorted(c.amount for c in contract.commissions) == [Decimal("7500.00"), Decimal("7500.00")]
    commission = contract.commissions[0]
    assert commission.status == "forecast"
    assert commission.base_value == Decimal("300000.00")
    assert commission.forecast_date == TODAY
    assert commission.notes == "Comissão automática - CTR-2026-00001"

    lead = db.get(Lead, seed.lead_id)
    assert lead.deal_status == "won"
    assert lead.won_at is not None

    claim = db.execute(select(ClosureRequest)).scalar_one()
    assert claim.status == "completed"
    assert claim.contract_id == result.contract_id

    log = db.execute(select(AuditLog)).scalar_one()
    assert log.action == "auto_create_contract"
    assert log.entity_type == "contract"
    assert log.entity_id == str(result.contract_id)
    assert log.new_data["contract_number"] == "CTR-2026-00001"
    assert log.new_data["brokers_count"] == 2
    assert log.new_data["lead_name"] == "Maria Souza"

    # assignee, team leader and admin, inline on the same session
    recipients = set(db.execute(select(Notification.user_id)).scalars())
    assert recipients == {seed.rep_id, seed.leader_id, seed.admin_id}


def test_defaults_fall_back_to_assignee_and_five_percent(db, seed, current):
    result = _close(db, current, seed.lead_id, value=Decimal("200000"))

    assert result.installments_created == 1
    assert result.down_payment_created is False

    db.expire_all()
    contract = db.get(Contract, result.contract_id)
    assert contract.commission_percentage == Decimal("5")
    assert [(b.user_id, b.commission_percentage) for b in contract.brokers] == [(seed.rep_id, Decimal("5"))]
    assert [c.amount for c in contract.commissions] == [Decimal("10000.00")]
    assert [e.amount for e in contract.entries if e.type == "receivable"] == [Decimal("200000.00")]


def test_no_brokers_and_no_assignee_creates_no_commissions(db, seed, current):
    result = _close(db, current, seed.orphan_lead_id, value=Decimal("300000"))

    db.expire_all()
    contract = db.get(Contract, result.contract_id)
    assert contract.commission_value == Decimal("15000.00")
    assert _count(db, Commission) == 0
    assert _count(db, ContractBroker) == 0
    assert _count(db, FinancialEntry, FinancialEntry.type == "payable") == 0
    assert _count(db, FinancialEntry, FinancialEntry.type == "receivable") == 1
    # only the admin tier reaches anybody
    assert list(db.execute(select(Notification.user_id)).scalars()) == [seed.admin_id]


def test_contract_numbers_follow_the_counter(db, seed, current):
    first = _close(db, current, seed.lead_id, value=Decimal("1000"))
    second = _close(db, current, seed.orphan_lead_id, value=Decimal("1000"))

    assert (first.contract_number, second.contract_number) == ("CTR-2026-00001", "CTR-2026-00002")


# -----------------------------
# Preconditions: nothing is written
# -----------------------------
@pytest.mark.parametrize(
    "terms",
    [
        {"value": Decimal("0")},
        {"value": Decimal("-10")},
        {"value": Decimal("1000"), "down_payment": Decimal("1000.01")},
        {"value": Decimal("1000"), "down_payment": Decimal("-1")},
        {"value": Decimal("1000"), "installments": 0},
        {"value": Decimal("1000"), "commission_percentage": Decimal("100.5")},
        {"value": Decimal("1000"), "commission_percentage": Decimal("-1")},
        {"value": Decimal("1000"), "commission_percentage": Decimal("3.33335")},
    ],
)
def test_invalid_terms_are_rejected_before_any_write(db, seed, current, terms):
    with pytest.raises(InvalidClosureInputError):
        _close(db, current, seed.lead_id, **terms)
    _assert_nothing_written(db)


def test_duplicate_brokers_rejected(db, seed, current):
    with pytest.raises(InvalidClosureInputError):
        _close(db, current, seed.lead_id, value=Decimal("1000"), broker_ids=[seed.broker1_id, seed.broker1_id])
    _assert_nothing_written(db)


@pytest.mark.parametrize("broker", ["inactive_id", "outsider_id"])
def test_brokers_must_be_active_members_of_the_organization(db, seed, current, broker):
    with pytest.raises(InvalidClosureInputError):
        _close(db, current, seed.lead_id, value=Decimal("1000"), broker_ids=[getattr(seed, broker)])
    _assert_nothing_written(db)


def test_lead_of_another_organization_is_not_found(db, seed, current):
    with pytest.raises(LeadNotFoundError):
        _close(db, current, seed.foreign_lead_id, value=Decimal("1000"))
    _assert_nothing_written(db)


def test_missing_caller_is_rejected(db, seed):
    with pytest.raises(UnauthenticatedError):
        _close(db, None, seed.lead_id, value=Decimal("1000"))
    _assert_nothing_written(db)


# -----------------------------
# Idempotency
# -----------------------------
def test_second_closure_of_the_same_lead_is_rejected(db, seed, current):
    _close(db, current, seed.lead_id, value=Decimal("1000"))

    with pytest.raises(DuplicateClosureError):
        _close(db, current, seed.lead_id, value=Decimal("1000"))

    assert _count(db, Contract) == 1
    # no contract number was burnt by the rejected call
    assert db.execute(select(ContractSequence.last_number)).scalar_one() == 1


def test_retry_with_the_same_token_replays_the_result(db, seed, current):
    first = _close(db, current, seed.lead_id, value=Decimal("1000"), installments=2, request_token="req-1")
    again = _close(db, current, seed.lead_id, value=Decimal("1000"), installments=2, request_token="req-1")

    assert again == first
    assert _count(db, Contract) == 1
    assert _count(db, FinancialEntry, FinancialEntry.type == "receivable") == 2

    with pytest.raises(DuplicateClosureError):
        _close(db, current, seed.lead_id, value=Decimal("1000"), request_token="req-2")


# -----------------------------
# Failures before the contract exists
# -----------------------------
def test_allocation_failure_releases_the_claim(db, seed, current, monkeypatch):
    def _unavailable(*args, **kwargs):
        raise SequenceAllocationError("counter unavailable")

    monkeypatch.setattr(closing, "allocate_contract_number", _unavailable)
    with pytest.raises(SequenceAllocationError):
        _close(db, current, seed.lead_id, value=Decimal("1000"))
    _assert_nothing_written(db)

    monkeypatch.undo()
    assert _close(db, current, seed.lead_id, value=Decimal("1000")).contract_number == "CTR-2026-00001"


def test_contract_insert_failure_releases_the_claim(db, seed, current):
    # a stray contract already holds the next number
    db.add(
        Contract(
            organization_id=seed.org_id,
            contract_number="CTR-2026-00001",
            value=Decimal("1"),
            down_payment=Decimal("0"),
            installments=1,
            commission_percentage=Decimal("0"),
            commission_value=Decimal("0"),
        )
    )
    db.commit()

    with pytest.raises(ContractPersistenceError):
        _close(db, current, seed.lead_id, value=Decimal("1000"))

    assert _count(db, ClosureRequest) == 0
    assert _count(db, FinancialEntry) == 0
    assert db.get(Lead, seed.lead_id).deal_status == "open"

    # the burnt number is skipped on retry
    assert _close(db, current, seed.lead_id, value=Decimal("1000")).contract_number == "CTR-2026-00002"


# -----------------------------
# Failures after the contract exists
# -----------------------------
def test_entry_failure_leaves_a_dangling_contract(db, seed, current, monkeypatch):
    def _broken_entry(draft, organization_id, contract_id, lead_id, user_id):
        return closing.FinancialEntry(organization_id=organization_id, contract_id=contract_id, type=draft.type, amount=None)

    monkeypatch.setattr(closing, "_entry_from_draft", _broken_entry)

    with pytest.raises(PartialClosureError) as excinfo:
        _close(db, current, seed.lead_id, value=Decimal("1000"), installments=2)

    err = excinfo.value
    assert err.step == "entries"
    assert err.contract_number == "CTR-2026-00001"
    assert err.contract_id is not None

    assert _count(db, Contract) == 1
    assert _count(db, FinancialEntry) == 0
    assert db.get(Lead, seed.lead_id).deal_status == "open"

    claim = db.execute(select(ClosureRequest)).scalar_one()
    assert claim.status == "failed"
    assert claim.last_error.startswith("entries:")
    assert claim.contract_id == err.contract_id

    assert [c.id for c in find_dangling_contracts(db, seed.org_id)] == [err.contract_id]
    assert [r.id for r in find_unfinished_closures(db, seed.org_id)] == [claim.id]
    assert find_dangling_contracts(db, seed.other_org_id) == []

    # the failed claim blocks a blind retry
    monkeypatch.undo()
    with pytest.raises(DuplicateClosureError):
        _close(db, current, seed.lead_id, value=Decimal("1000"))


def test_commission_failure_keeps_the_schedule(db, seed, current, monkeypatch):
    def _broken_rows(split, organization_id, contract_id, contract_number, lead, base_value, today):
        return [closing.Commission(organization_id=organization_id, contract_id=contract_id, user_id=seed.rep_id, amount=None)]

    monkeypatch.setattr(closing, "_commission_rows", _broken_rows)

    with pytest.raises(PartialClosureError) as excinfo:
        _close(db, current, seed.lead_id, value=Decimal("1000"), down_payment=Decimal("100"), installments=3)

    assert excinfo.value.step == "commissions"
    assert _count(db, FinancialEntry, FinancialEntry.type == "receivable") == 4
    assert _count(db, FinancialEntry, FinancialEntry.type == "payable") == 0
    assert _count(db, Commission) == 0
    assert db.execute(select(ClosureRequest.status)).scalar_one() == "failed"
    assert find_dangling_contracts(db, seed.org_id) == []


def _lead_update_down(db, lead_id):
    raise SQLAlchemyError("leads table locked")


def test_lead_update_failure_keeps_contract_entries_and_commissions(db, seed, current, monkeypatch):
    monkeypatch.setattr(closing, "_mark_lead_won", _lead_update_down)

    with pytest.raises(PartialClosureError) as excinfo:
        _close(
            db, current, seed.lead_id,
            value=Decimal("300000"),
            down_payment=Decimal("30000"),
            installments=3,
            broker_ids=[seed.broker1_id, seed.broker2_id],
        )

    err = excinfo.value
    assert err.step == "lead"
    assert err.contract_number == "CTR-2026-00001"

    db.expire_all()
    assert db.get(Contract, err.contract_id) is not None
    assert _count(db, FinancialEntry, FinancialEntry.type == "receivable") == 4
    assert _count(db, FinancialEntry, FinancialEntry.type == "payable") == 1
    assert _count(db, ContractBroker) == 2
    assert _count(db, Commission) == 2
    assert db.get(Lead, seed.lead_id).deal_status == "open"

    claim = db.execute(select(ClosureRequest)).scalar_one()
    assert claim.status == "failed"
    assert claim.failed_step == "lead"
    assert claim.last_error.startswith("lead:")

    assert [r.id for r in find_unfinished_closures(db, seed.org_id)] == [claim.id]
    # the contract has its entries, so it is not dangling
    assert find_dangling_contracts(db, seed.org_id) == []


# -----------------------------
# Resuming a failed closure
# -----------------------------
def test_retry_with_the_same_token_resumes_after_entry_failure(db, seed, current, monkeypatch):
    def _broken_entry(draft, organization_id, contract_id, lead_id, user_id):
        return closing.FinancialEntry(organization_id=organization_id, contract_id=contract_id, type=draft.type, amount=None)

    monkeypatch.setattr(closing, "_entry_from_draft", _broken_entry)
    with pytest.raises(PartialClosureError) as excinfo:
        _close(db, current, seed.lead_id, value=Decimal("1000"), installments=2, request_token="req-1")
    monkeypatch.undo()

    # another token is still rejected
    with pytest.raises(DuplicateClosureError):
        _close(db, current, seed.lead_id, value=Decimal("1000"), installments=2, request_token="req-2")

    # amounts come from the stored contract, not from the retry
    result = _close(db, current, seed.lead_id, value=Decimal("999"), installments=7, request_token="req-1")

    assert result.contract_id == excinfo.value.contract_id
    assert result.contract_number == "CTR-2026-00001"
    assert result.installments_created == 2

    db.expire_all()
    assert _count(db, Contract) == 1
    assert db.execute(select(ContractSequence.last_number)).scalar_one() == 1
    amounts = db.execute(
        select(FinancialEntry.amount)
        .where(FinancialEntry.type == "receivable")
        .order_by(FinancialEntry.installment_number)
    ).scalars().all()
    assert amounts == [Decimal("500.00"), Decimal("500.00")]
    assert _count(db, Commission) == 1
    assert db.get(Lead, seed.lead_id).deal_status == "won"

    claim = db.execute(select(ClosureRequest)).scalar_one()
    assert claim.status == "completed"
    assert claim.failed_step is None
    assert find_unfinished_closures(db, seed.org_id) == []

    audit_row = db.execute(select(AuditLog)).scalar_one()
    assert audit_row.new_data["resumed_from"] == "entries"

    # a completed closure replays for the same token
    assert _close(db, current, seed.lead_id, value=Decimal("1000"), request_token="req-1") == result


def test_retry_with_the_same_token_resumes_after_lead_failure(db, seed, current, monkeypatch):
    monkeypatch.setattr(closing, "_mark_lead_won", _lead_update_down)
    with pytest.raises(PartialClosureError):
        _close(db, current, seed.lead_id, value=Decimal("1000"), installments=2, request_token="req-1")
    monkeypatch.undo()

    result = _close(db, current, seed.lead_id, value=Decimal("1000"), installments=2, request_token="req-1")

    assert result.contract_number == "CTR-2026-00001"
    db.expire_all()
    # the schedule and the commission ledger are not written twice
    assert _count(db, FinancialEntry, FinancialEntry.type == "receivable") == 2
    assert _count(db, FinancialEntry, FinancialEntry.type == "payable") == 1
    assert _count(db, Commission) == 1
    assert db.get(Lead, seed.lead_id).deal_status == "won"
    assert db.execute(select(ClosureRequest.status)).scalar_one() == "completed"


def test_failed_closure_without_token_cannot_resume(db, seed, current, monkeypatch):
    monkeypatch.setattr(closing, "_mark_lead_won", _lead_update_down)
    with pytest.raises(PartialClosureError):
        _close(db, current, seed.lead_id, value=Decimal("1000"))
    monkeypatch.undo()

    with pytest.raises(DuplicateClosureError):
        _close(db, current, seed.lead_id, value=Decimal("1000"))
    assert db.execute(select(ClosureRequest.status)).scalar_one() == "failed"


# -----------------------------
# Best-effort side effects
# -----------------------------
def test_audit_failure_does_not_fail_the_closure(db, seed, current, monkeypatch):
    def _audit_down(**kwargs):
        raise SQLAlchemyError("audit table unavailable")

    monkeypatch.setattr(audit, "AuditLog", _audit_down)

    result = _close(db, current, seed.lead_id, value=Decimal("1000"))

    assert result.contract_number == "CTR-2026-00001"
    assert _count(db, AuditLog) == 0
    assert db.execute(select(ClosureRequest.status)).scalar_one() == "completed"


def test_notifier_failure_does_not_fail_the_closure(db, seed, current):
    def _notifier(**payload):
        raise RuntimeError("queue down")

    result = _close(db, current, seed.lead_id, notifier=_notifier, value=Decimal("1000"))

    assert result.installments_created == 1
    assert db.get(Lead, seed.lead_id).deal_status == "won"


def test_notifier_receives_the_lead_context(db, seed, current):
    calls = []
    _close(db, current, seed.lead_id, notifier=lambda **p: calls.append(p), value=Decimal("1000"))

    assert calls == [
        {
            "lead_id": seed.lead_id,
            "lead_name": "Maria Souza",
            "organization_id": seed.org_id,
            "pipeline_id": seed.pipeline_id,
            "assigned_user_id": seed.rep_id,
            "source": "deal_closure",
        }
    ]
    # a custom notifier replaces the inline fan-out
    assert _count(db, Notification) == 0
