# backend/dealdesk/api/closing.py
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Path, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ClosureError,
    CommissionMismatchError,
    ContractPersistenceError,
    DuplicateClosureError,
    InvalidClosureInputError,
    LeadNotFoundError,
    PartialClosureError,
    SequenceAllocationError,
    UnauthenticatedError,
)
from ..models import (
    ClosureRequest,
    Commission,
    Contract,
    ContractBroker,
    FinancialEntry,
    Lead,
    User,
)
from .audit import log_audit_action
from .commission_runtime import PCT_QUANTUM, CommissionSplit, commission_value, split_commission
from .contract_sequence import allocate_contract_number
from .deps import get_db, get_current_user, CurrentUser, require_permissions
from .notifications import notify_lead_stakeholders, notify_lead_stakeholders_task
from .schedule_runtime import EntryDraft, generate_schedule, to_money

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leads", tags=["closing"])

Notifier = Callable[..., None]

# steps that run after the contract exists, in order; a failed claim resumes at its failed step
RESUMABLE_STEPS = ("entries", "commissions", "lead")


# ---------------------------
# Pydantic Schemas
# ---------------------------

class CloseDealIn(BaseModel):
    value: Decimal
    down_payment: Decimal = Decimal("0")
    installments: int = 1
    commission_percentage: Optional[Decimal] = None  # None -> DEFAULT_COMMISSION_PERCENTAGE
    broker_ids: List[int] = Field(default_factory=list)
    contract_type: Optional[str] = None
    payment_conditions: Optional[str] = None
    request_token: Optional[str] = Field(None, max_length=64)  # client retry key


class CloseDealOut(BaseModel):
    contract_id: int
    contract_number: str
    installments_created: int
    down_payment_created: bool


@dataclass
class LeadSnapshot:
    id: int
    name: str
    organization_id: int
    property_id: Optional[int]
    pipeline_id: Optional[int]
    assigned_user_id: Optional[int]


# ---------------------------
# Helpers
# ---------------------------

def _validate_terms(terms: CloseDealIn, commission_pct: Decimal) -> None:
    if terms.value is None or terms.value <= 0:
        raise InvalidClosureInputError("value must be greater than zero")
    if terms.down_payment < 0 or terms.down_payment > terms.value:
        raise InvalidClosureInputError("down_payment must be between 0 and value")
    if terms.installments < 1:
        raise InvalidClosureInputError("installments must be at least 1")
    if commission_pct < 0 or commission_pct > 100:
        raise InvalidClosureInputError("commission_percentage must be between 0 and 100")
    if commission_pct != commission_pct.quantize(PCT_QUANTUM):
        raise InvalidClosureInputError("commission_percentage accepts at most 4 decimal places")
    if len(set(terms.broker_ids)) != len(terms.broker_ids):
        raise InvalidClosureInputError("broker_ids must be unique")


def _load_lead(db: Session, organization_id: int, lead_id: int) -> LeadSnapshot:
    lead = (
        db.query(Lead)
        .filter(Lead.id == lead_id, Lead.organization_id == organization_id)
        .first()
    )
    if not lead:
        raise LeadNotFoundError(f"Lead {lead_id} not found")
    return LeadSnapshot(
        id=lead.id,
        name=lead.name,
        organization_id=lead.organization_id,
        property_id=lead.property_id,
        pipeline_id=lead.pipeline_id,
        assigned_user_id=lead.assigned_user_id,
    )


def _resolve_brokers(db: Session, organization_id: int, explicit: List[int], lead: LeadSnapshot) -> List[int]:
    """Explicit brokers, else the lead's representative, else nobody."""
    if explicit:
        found = set(
            db.execute(
                select(User.id).where(
                    User.id.in_(explicit),
                    User.organization_id == organization_id,
                    User.is_active.is_(True),
                )
            ).scalars()
        )
        missing = [b for b in explicit if b not in found]
        if missing:
            raise InvalidClosureInputError(f"Unknown brokers for this organization: {missing}")
        return list(explicit)
    if lead.assigned_user_id:
        return [lead.assigned_user_id]
    return []


def _claim(
    db: Session,
    organization_id: int,
    lead_id: int,
    request_token: Optional[str],
    user_id: int,
) -> Tuple[Optional[ClosureRequest], Optional[CloseDealOut]]:
    """
    One closure per lead. Returns (claim, None) for a fresh claim, or
    (None, result) when the same request token already completed.

    A failed claim retried with its own request token is handed back with
    status ``resuming``; the closure then continues at the failed step.
    """
    claim = ClosureRequest(
        organization_id=organization_id,
        lead_id=lead_id,
        request_token=request_token,
        status="claimed",
        created_by=user_id,
    )
    try:
        db.add(claim)
        db.commit()
        return claim, None
    except IntegrityError:
        db.rollback()
    except SQLAlchemyError as exc:
        db.rollback()
        raise ContractPersistenceError(f"Could not claim lead {lead_id} for closure") from exc

    existing = db.execute(
        select(ClosureRequest).where(
            ClosureRequest.organization_id == organization_id,
            ClosureRequest.lead_id == lead_id,
        )
    ).scalar_one_or_none()
    if existing is None:
        raise DuplicateClosureError(f"Lead {lead_id} is being closed by another request")

    if existing.status == "completed" and request_token and existing.request_token == request_token:
        logger.info("Replaying closure of lead %s (%s)", lead_id, existing.contract_number)
        return None, CloseDealOut(
            contract_id=existing.contract_id,
            contract_number=existing.contract_number,
            installments_created=existing.installments_created or 0,
            down_payment_created=bool(existing.down_payment_created),
        )

    if (
        existing.status == "failed"
        and request_token
        and existing.request_token == request_token
        and existing.contract_id is not None
        and existing.failed_step in RESUMABLE_STEPS
    ):
        # only one retry may take over the failed claim
        try:
            taken = (
                db.query(ClosureRequest)
                .filter(ClosureRequest.id == existing.id, ClosureRequest.status == "failed")
                .update({"status": "resuming"}, synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise ContractPersistenceError(f"Could not resume closure of lead {lead_id}") from exc
        if taken:
            logger.info(
                "Resuming closure of lead %s (%s) at step '%s'",
                lead_id, existing.contract_number, existing.failed_step,
            )
            db.refresh(existing)
            return existing, None

    raise DuplicateClosureError(
        f"Lead {lead_id} already has a closure ({existing.status}, "
        f"{existing.contract_number or 'no contract'})"
    )


def _release_claim(db: Session, claim: ClosureRequest) -> None:
    """Drops the claim after a failure that left no contract behind."""
    try:
        db.delete(claim)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("Could not release closure claim %s", claim.id, exc_info=True)


def _advance(db: Session, claim: ClosureRequest, status_: str, **fields) -> None:
    try:
        claim.status = status_
        for k, v in fields.items():
            setattr(claim, k, v)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.error("Could not record closure progress %s for claim %s", status_, claim.id, exc_info=True)


def _partial(
    db: Session,
    claim: ClosureRequest,
    step: str,
    exc: Exception,
    contract_id: int,
    contract_number: str,
) -> PartialClosureError:
    logger.error(
        "Closure step '%s' failed after %s was created; contract left in place",
        step, contract_number, exc_info=exc,
    )
    _advance(db, claim, "failed", failed_step=step, last_error=f"{step}: {exc}")
    return PartialClosureError(
        f"Contract {contract_number} was created but step '{step}' failed",
        step=step,
        contract_id=contract_id,
        contract_number=contract_number,
    )


def _entry_from_draft(draft: EntryDraft, organization_id: int, contract_id: int, lead_id: int, user_id: int) -> FinancialEntry:
    return FinancialEntry(
        organization_id=organization_id,
        contract_id=contract_id,
        lead_id=lead_id,
        type=draft.type,
        category=draft.category,
        description=draft.description,
        amount=draft.amount,
        due_date=draft.due_date,
        status="pending",
        installment_number=draft.installment_number,
        total_installments=draft.total_installments,
        created_by=user_id,
    )


def _commission_rows(
    split: CommissionSplit,
    organization_id: int,
    contract_id: int,
    contract_number: str,
    lead: LeadSnapshot,
    base_value: Decimal,
    today: date,
) -> list:
    rows: list = []
    for share in split.shares:
        rows.append(
            ContractBroker(
                contract_id=contract_id,
                user_id=share.user_id,
                commission_percentage=share.percentage,
            )
        )
    for share in split.shares:
        rows.append(
            Commission(
                organization_id=organization_id,
                contract_id=contract_id,
                lead_id=lead.id,
                user_id=share.user_id,
                property_id=lead.property_id,
                base_value=base_value,
                percentage=share.percentage,
                calculated_value=share.calculated_value,
                amount=share.calculated_value,
                status="forecast",
                forecast_date=today,
                notes=f"Comissão automática - {contract_number}",
            )
        )
    return rows


def _mark_lead_won(db: Session, lead_id: int) -> None:
    db.query(Lead).filter(Lead.id == lead_id).update(
        {"deal_status": "won", "won_at": datetime.utcnow()},
        synchronize_session=False,
    )
    db.commit()


# ---------------------------
# Orchestrator
# ---------------------------

def close_deal(
    db: Session,
    current: Optional[CurrentUser],
    lead_id: int,
    terms: CloseDealIn,
    notifier: Optional[Notifier] = None,
    today: Optional[date] = None,
) -> CloseDealOut:
    """
    Turns a won lead into a contract, its receivable schedule, the broker
    commission ledger and the commission payable.

    Every step commits on its own; there is no enclosing transaction.
    Failures before the contract insert leave nothing behind. Failures after
    it raise PartialClosureError and leave the committed steps in place, with
    the lead's ClosureRequest recording how far the closure got. A retry
    carrying the failed claim's request token picks up at the failed step,
    using the amounts stored on the contract; the retry's own terms only
    supply the brokers. Audit and notification failures are only logged.

    ``notifier`` receives the stakeholder payload as keyword arguments; by
    default the fan-out runs inline on ``db``.
    """
    if current is None or current.id is None:
        raise UnauthenticatedError("Caller could not be resolved")
    if not current.organization_id:
        raise UnauthenticatedError("Caller has no organization")
    organization_id = current.organization_id

    commission_pct = (
        terms.commission_percentage
        if terms.commission_percentage is not None
        else settings.DEFAULT_COMMISSION_PERCENTAGE
    )
    _validate_terms(terms, commission_pct)
    today = today or date.today()
    value = to_money(terms.value)
    down_payment = to_money(terms.down_payment)

    # 1) lead snapshot
    lead = _load_lead(db, organization_id, lead_id)
    broker_ids = _resolve_brokers(db, organization_id, terms.broker_ids, lead)

    claim, replay = _claim(db, organization_id, lead_id, terms.request_token, current.id)
    if replay is not None:
        return replay

    resumed_from: Optional[str] = None
    if claim.status == "resuming":
        # continue a failed closure on the contract it already created
        resumed_from = claim.failed_step
        contract = db.get(Contract, claim.contract_id)
        if contract is None:
            _advance(db, claim, "failed")
            raise ContractPersistenceError(
                f"Contract {claim.contract_number} of the failed closure no longer exists"
            )
        contract_id, contract_number = contract.id, contract.contract_number
        value, down_payment = contract.value, contract.down_payment
        installments, commission_pct = contract.installments, contract.commission_percentage
        today = contract.signing_date or today
        try:
            drafts = generate_schedule(value, down_payment, installments, contract_number, today)
            split = split_commission(value, commission_pct, broker_ids, contract_number, today)
        except (InvalidClosureInputError, CommissionMismatchError):
            _advance(db, claim, "failed")
            raise
    else:
        installments = terms.installments

        # 2) contract number
        try:
            contract_number = allocate_contract_number(db, organization_id, today)
        except SequenceAllocationError:
            _release_claim(db, claim)
            raise

        try:
            drafts = generate_schedule(value, down_payment, installments, contract_number, today)
            split = split_commission(value, commission_pct, broker_ids, contract_number, today)
        except (InvalidClosureInputError, CommissionMismatchError):
            _release_claim(db, claim)
            raise

        # 3) contract
        contract = Contract(
            organization_id=organization_id,
            contract_number=contract_number,
            contract_type=terms.contract_type or settings.DEFAULT_CONTRACT_TYPE,
            status="active",
            lead_id=lead.id,
            property_id=lead.property_id,
            value=value,
            down_payment=down_payment,
            installments=installments,
            commission_percentage=commission_pct,
            commission_value=commission_value(value, commission_pct),
            client_name=lead.name,
            payment_conditions=terms.payment_conditions,
            signing_date=today,
            created_by=current.id,
        )
        try:
            db.add(contract)
            db.commit()
            contract_id = contract.id
        except SQLAlchemyError as exc:
            db.rollback()
            _release_claim(db, claim)
            raise ContractPersistenceError(f"Could not create contract {contract_number}") from exc

        logger.info("Contract %s (%s) created for lead %s", contract_number, contract_id, lead.id)
        _advance(db, claim, "contract_created", contract_id=contract_id, contract_number=contract_number)

    pending = RESUMABLE_STEPS[RESUMABLE_STEPS.index(resumed_from or "entries"):]

    # 4) receivable schedule
    if "entries" in pending:
        try:
            db.add_all([_entry_from_draft(d, organization_id, contract_id, lead.id, current.id) for d in drafts])
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise _partial(db, claim, "entries", exc, contract_id, contract_number) from exc
        _advance(db, claim, "entries_created")

    # 5-6) brokers, commissions, payable
    if "commissions" in pending and split.shares:
        try:
            db.add_all(
                _commission_rows(split, organization_id, contract_id, contract_number, lead, value, today)
            )
            if split.payable is not None:
                db.add(_entry_from_draft(split.payable, organization_id, contract_id, lead.id, current.id))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise _partial(db, claim, "commissions", exc, contract_id, contract_number) from exc
        _advance(db, claim, "commissions_created")

    # 7) lead -> won
    try:
        _mark_lead_won(db, lead.id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise _partial(db, claim, "lead", exc, contract_id, contract_number) from exc

    result = CloseDealOut(
        contract_id=contract_id,
        contract_number=contract_number,
        installments_created=installments,
        down_payment_created=down_payment > 0,
    )
    _advance(
        db,
        claim,
        "completed",
        failed_step=None,
        installments_created=result.installments_created,
        down_payment_created=result.down_payment_created,
    )

    # 8) audit (never raises)
    audit_data = {
        "contract_number": contract_number,
        "lead_id": lead.id,
        "lead_name": lead.name,
        "value": str(value),
        "down_payment": str(down_payment),
        "installments": installments,
        "commission_percentage": str(commission_pct),
        "brokers_count": len(broker_ids),
    }
    if resumed_from:
        audit_data["resumed_from"] = resumed_from
    log_audit_action(
        db,
        "auto_create_contract",
        "contract",
        contract_id,
        None,
        audit_data,
        organization_id,
        current.id,
    )

    # 9) stakeholders
    payload = {
        "lead_id": lead.id,
        "lead_name": lead.name,
        "organization_id": organization_id,
        "pipeline_id": lead.pipeline_id,
        "assigned_user_id": lead.assigned_user_id,
        "source": "deal_closure",
    }
    try:
        if notifier is None:
            notify_lead_stakeholders(db, **payload)
        else:
            notifier(**payload)
    except Exception:
        logger.exception("Stakeholder notification failed for lead %s", lead.id)

    return result


# ---------------------------
# Endpoint
# ---------------------------

def get_notifier(background_tasks: BackgroundTasks) -> Notifier:
    """Runs the stakeholder fan-out after the response is sent."""
    def _schedule(**payload) -> None:
        background_tasks.add_task(notify_lead_stakeholders_task, **payload)
    return _schedule


@router.post(
    "/{lead_id}/close",
    summary="Close a won deal → contract + installments + commissions",
    response_model=CloseDealOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_permissions(["deals:close"]))],
)
def close_lead_deal(
    body: CloseDealIn,
    lead_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        return close_deal(db, current, lead_id, body, notifier=notifier)
    except UnauthenticatedError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
    except LeadNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except InvalidClosureInputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except DuplicateClosureError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except (SequenceAllocationError, ContractPersistenceError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except PartialClosureError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": str(exc),
                "step": exc.step,
                "contract_id": exc.contract_id,
                "contract_number": exc.contract_number,
            },
        )
    except ClosureError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
