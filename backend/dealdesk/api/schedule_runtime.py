# backend/dealdesk/api/schedule_runtime.py
from __future__ import annotations
from calendar import monthrange
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from ..core.exceptions import InvalidClosureInputError

CENT = Decimal("0.01")

CATEGORY_DOWN_PAYMENT = "Entrada"
CATEGORY_INSTALLMENT = "Parcela"
CATEGORY_COMMISSION = "Comissão"


@dataclass
class EntryDraft:
    """A financial entry before it has a contract id / organization attached."""
    type: str  # "receivable" | "payable"
    category: str
    description: str
    amount: Decimal
    due_date: date
    installment_number: Optional[int] = None
    total_installments: Optional[int] = None


def to_money(value) -> Decimal:
    """Standard (half-up) rounding to cents; floats go through str()."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def add_months(d: date, k: int) -> date:
    """Same day k calendar months later; clamped to the target month's last day."""
    base = (d.year * 12 + (d.month - 1)) + k
    year, month = base // 12, base % 12 + 1
    day = min(d.day, monthrange(year, month)[1])
    return date(year, month, day)


def installment_amounts(remaining: Decimal, installment_count: int) -> List[Decimal]:
    """
    Splits ``remaining`` into N amounts: N-1 equal rounded parts and a last
    part that absorbs the rounding remainder (positive or negative).
    """
    if installment_count <= 0:
        raise InvalidClosureInputError(
            f"installment count must be >= 1, got {installment_count}"
        )
    per = to_money(remaining / installment_count)
    last = remaining - per * (installment_count - 1)
    return [per] * (installment_count - 1) + [last]


def generate_schedule(
    total_value,
    down_payment,
    installment_count: int,
    contract_number: str,
    today: Optional[date] = None,
) -> List[EntryDraft]:
    """
    Down payment ("Entrada", index 0, due today) when > 0, then N installments
    ("Parcela", index 1..N) due one calendar month apart starting next month.
    down_payment + sum(installments) == total_value exactly.
    """
    if installment_count <= 0:
        raise InvalidClosureInputError(
            f"installment count must be >= 1, got {installment_count}"
        )
    today = today or date.today()
    total = to_money(total_value)
    down = to_money(down_payment or 0)

    drafts: List[EntryDraft] = []
    if down > 0:
        drafts.append(
            EntryDraft(
                type="receivable",
                category=CATEGORY_DOWN_PAYMENT,
                description=f"{CATEGORY_DOWN_PAYMENT} - {contract_number}",
                amount=down,
                due_date=today,
                installment_number=0,
                total_installments=installment_count,
            )
        )

    amounts = installment_amounts(total - down, installment_count)
    for i, amount in enumerate(amounts, start=1):
        drafts.append(
            EntryDraft(
                type="receivable",
                category=CATEGORY_INSTALLMENT,
                description=f"{CATEGORY_INSTALLMENT} {i}/{installment_count} - {contract_number}",
                amount=amount,
                due_date=add_months(today, i),
                installment_number=i,
                total_installments=installment_count,
            )
        )
    return drafts
