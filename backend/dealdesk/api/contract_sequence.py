# backend/dealdesk/api/contract_sequence.py
import logging
from datetime import date
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import SequenceAllocationError
from ..models import ContractSequence

logger = logging.getLogger(__name__)


def format_contract_number(year: int, number: int, prefix: Optional[str] = None) -> str:
    """CTR-2026-00042"""
    return f"{prefix or settings.CONTRACT_NUMBER_PREFIX}-{year}-{number:05d}"


def _increment(db: Session, organization_id: int) -> Optional[int]:
    # single statement: the read and the write cannot interleave with another caller
    stmt = (
        update(ContractSequence)
        .where(ContractSequence.organization_id == organization_id)
        .values(last_number=ContractSequence.last_number + 1)
        .returning(ContractSequence.last_number)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).scalar_one_or_none()


def next_sequence_value(db: Session, organization_id: int, max_attempts: Optional[int] = None) -> int:
    """
    Atomically increments the organization's counter and returns the new value.
    The row is created lazily (last_number=1) on first use; if another caller
    creates it first the unique constraint fires and the increment is retried.
    Commits on success.
    """
    attempts = max_attempts or settings.SEQUENCE_MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        try:
            number = _increment(db, organization_id)
            if number is None:
                db.add(ContractSequence(organization_id=organization_id, last_number=1))
                db.flush()
                number = 1
            db.commit()
            return number
        except IntegrityError:
            db.rollback()
            logger.warning(
                "Contract sequence for organization %s created concurrently, retrying (%d/%d)",
                organization_id, attempt, attempts,
            )
        except SQLAlchemyError as exc:
            db.rollback()
            raise SequenceAllocationError(
                f"Could not allocate contract number for organization {organization_id}"
            ) from exc

    raise SequenceAllocationError(
        f"Could not allocate contract number for organization {organization_id} "
        f"after {attempts} attempts"
    )


def allocate_contract_number(
    db: Session,
    organization_id: int,
    today: Optional[date] = None,
) -> str:
    """Next contract number for the organization, e.g. CTR-2026-00001.

    The year is the issuance year; the counter itself never resets.
    """
    number = next_sequence_value(db, organization_id)
    contract_number = format_contract_number((today or date.today()).year, number)
    logger.info("Allocated %s for organization %s", contract_number, organization_id)
    return contract_number
