# backend/dealdesk/api/commission_runtime.py
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional, Sequence

from ..core.exceptions import CommissionMismatchError, InvalidClosureInputError
from .schedule_runtime import CATEGORY_COMMISSION, CENT, EntryDraft, to_money

PCT_QUANTUM = Decimal("0.0001")  # matches Numeric(9, 4)
HUNDRED = Decimal("100")


@dataclass
class BrokerShare:
    user_id: int
    percentage: Decimal
    calculated_value: Decimal


@dataclass
class CommissionSplit:
    commission_percentage: Decimal
    total_commission: Decimal
    shares: List[BrokerShare] = field(default_factory=list)
    payable: Optional[EntryDraft] = None


def _spread(amount: Decimal, k: int, quantum: Decimal) -> List[Decimal]:
    """k parts of ``amount`` rounded down to ``quantum``; the leftover quanta go
    one each to the first parts, so no part is negative and the sum is exact."""
    part = (amount / k).quantize(quantum, rounding=ROUND_DOWN)
    leftover = int((amount - part * k) / quantum)
    return [part + quantum if i < leftover else part for i in range(k)]


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def commission_value(base_value, commission_percentage) -> Decimal:
    """value * p / 100 rounded half-up to cents."""
    return to_money(_to_decimal(base_value) * _to_decimal(commission_percentage) / HUNDRED)


def split_commission(
    base_value,
    commission_percentage,
    broker_ids: Sequence[int],
    contract_number: str,
    today: Optional[date] = None,
) -> CommissionSplit:
    """
    Equal split of the commission pool across ``broker_ids``.

    Each broker gets p/k percent (4 places) and total/k of the aggregate
    commission (cents), both rounded down; the leftover units go one each to
    the first brokers, so every share is non-negative and the shares add up to
    p and to the aggregate payable exactly. No brokers means no shares and no
    payable.
    """
    base = to_money(base_value)
    pct = _to_decimal(commission_percentage)
    if pct < 0 or pct != pct.quantize(PCT_QUANTUM):
        raise InvalidClosureInputError(
            f"commission percentage must be non-negative with at most 4 decimal places, got {pct}"
        )
    total = commission_value(base, pct)
    split = CommissionSplit(commission_percentage=pct, total_commission=total)

    if not broker_ids:
        return split
    if len(set(broker_ids)) != len(broker_ids):
        raise InvalidClosureInputError("broker ids must be unique")

    k = len(broker_ids)
    percentages = _spread(pct, k, PCT_QUANTUM)
    values = _spread(total, k, CENT)
    for user_id, share_pct, share_value in zip(broker_ids, percentages, values):
        split.shares.append(BrokerShare(user_id=user_id, percentage=share_pct, calculated_value=share_value))

    # the payable is computed independently; the shares must agree with it
    share_sum = sum((s.calculated_value for s in split.shares), Decimal("0"))
    pct_sum = sum((s.percentage for s in split.shares), Decimal("0"))
    if share_sum != total or pct_sum != pct:
        raise CommissionMismatchError(
            f"broker shares {share_sum} ({pct_sum}%) != commission {total} ({pct}%)"
        )

    if total > 0:
        split.payable = EntryDraft(
            type="payable",
            category=CATEGORY_COMMISSION,
            description=f"Comissões - {contract_number}",
            amount=total,
            due_date=today or date.today(),
        )
    return split
