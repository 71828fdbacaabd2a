# backend/dealdesk/api/contracts.py
from typing import List, Optional
from datetime import datetime, date
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from .deps import get_db, get_current_user, CurrentUser, require_permissions
from ..models import ClosureRequest, Contract, FinancialEntry

router = APIRouter(prefix="/contracts", tags=["contracts"])

# ---------------------------
# Pydantic Schemas
# ---------------------------

class DanglingContractOut(BaseModel):
    id: int
    contract_number: str
    lead_id: Optional[int] = None
    value: Decimal
    installments: int
    signing_date: Optional[date] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UnfinishedClosureOut(BaseModel):
    id: int
    lead_id: int
    status: str
    contract_id: Optional[int] = None
    contract_number: Optional[str] = None
    failed_step: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReconciliationOut(BaseModel):
    dangling_contracts: List[DanglingContractOut]
    unfinished_closures: List[UnfinishedClosureOut]


# ---------------------------
# Queries
# ---------------------------

def find_dangling_contracts(db: Session, organization_id: int) -> List[Contract]:
    """Active contracts of the organization without a single financial entry."""
    has_entries = (
        select(FinancialEntry.id)
        .where(FinancialEntry.contract_id == Contract.id)
        .exists()
    )
    return list(
        db.execute(
            select(Contract)
            .where(
                Contract.organization_id == organization_id,
                Contract.status == "active",
                ~has_entries,
            )
            .order_by(Contract.id)
        ).scalars()
    )


def find_unfinished_closures(db: Session, organization_id: int) -> List[ClosureRequest]:
    return list(
        db.execute(
            select(ClosureRequest)
            .where(
                ClosureRequest.organization_id == organization_id,
                ClosureRequest.status != "completed",
            )
            .order_by(ClosureRequest.id)
        ).scalars()
    )


# ---------------------------
# Endpoints
# ---------------------------

@router.get(
    "/reconciliation",
    response_model=ReconciliationOut,
    summary="Contracts and closures left half-done by failed closures",
    description=(
        "A failed closure blocks new closures of its lead. Retrying the close call with the "
        "failed claim's request_token resumes it at failed_step; claims without a token "
        "need manual repair."
    ),
    dependencies=[Depends(require_permissions(["contracts:read"]))],
)
def reconciliation(
    db: Session = Depends(get_db),
    current: CurrentUser = Depends(get_current_user),
):
    return ReconciliationOut(
        dangling_contracts=[
            DanglingContractOut.model_validate(c)
            for c in find_dangling_contracts(db, current.organization_id)
        ],
        unfinished_closures=[
            UnfinishedClosureOut.model_validate(r)
            for r in find_unfinished_closures(db, current.organization_id)
        ],
    )

