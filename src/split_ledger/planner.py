"""Settlement planning: turn a balance vector into pairwise transfers.

Greedy largest-creditor / largest-debtor matching. Every step zeroes at
least one member, so a vector with ``n`` nonzero members settles in at most
``n - 1`` transfers. This minimizes the transfer count in the common case but
is not optimal for every distribution.
"""

import heapq
import logging
from collections.abc import Iterable, Mapping

from .calculator import verify_conservation
from .exceptions import IntegrityError
from .models import Settlement

logger = logging.getLogger(__name__)


def plan_settlements(
    balances: Mapping[str, int], group_id: str | None = None
) -> list[Settlement]:
    """
    Plan the transfers that bring every balance to zero.

    Steps:
    1. Split members into creditors (> 0) and debtors (< 0), dropping zeros
    2. Pick the largest creditor and the largest debtor (ties: lowest id)
    3. Transfer the smaller of the two amounts from debtor to creditor
    4. Repeat until nothing is owed

    Args:
        balances: Member id -> net amount in minor units; must sum to zero
        group_id: Group the balances belong to, for error reporting

    Returns:
        Settlements in the order they were emitted

    Raises:
        IntegrityError: If the balances do not sum to zero
    """
    verify_conservation(balances, group_id=group_id)

    # Max-heaps keyed on (-amount, member_id) give largest-first with a
    # stable id tiebreak.
    creditors = [(-amount, m) for m, amount in balances.items() if amount > 0]
    debtors = [(amount, m) for m, amount in balances.items() if amount < 0]
    heapq.heapify(creditors)
    heapq.heapify(debtors)

    settlements: list[Settlement] = []
    while creditors and debtors:
        neg_credit, creditor = heapq.heappop(creditors)
        neg_debt, debtor = heapq.heappop(debtors)
        credit, debt = -neg_credit, -neg_debt

        amount = min(credit, debt)
        settlements.append(
            Settlement(from_member_id=debtor, to_member_id=creditor, amount=amount)
        )

        if credit > amount:
            heapq.heappush(creditors, (-(credit - amount), creditor))
        if debt > amount:
            heapq.heappush(debtors, (-(debt - amount), debtor))

    _verify_plan(balances, settlements, group_id)

    logger.debug(
        f"Planned {len(settlements)} settlements for group {group_id} "
        f"({sum(s.amount for s in settlements)} total)"
    )
    return settlements


def apply_settlements(
    balances: Mapping[str, int], settlements: Iterable[Settlement]
) -> dict[str, int]:
    """
    Apply transfers to a balance vector.

    Paying raises the debtor's balance and lowers the creditor's.

    Returns:
        A new balance vector
    """
    result = dict(balances)
    for settlement in settlements:
        result[settlement.from_member_id] = (
            result.get(settlement.from_member_id, 0) + settlement.amount
        )
        result[settlement.to_member_id] = (
            result.get(settlement.to_member_id, 0) - settlement.amount
        )
    return result


def _verify_plan(
    balances: Mapping[str, int],
    settlements: list[Settlement],
    group_id: str | None,
):
    """Check the post-conditions of a settlement plan."""
    pairs: set[tuple[str, str]] = set()
    for s in settlements:
        if s.amount <= 0 or s.from_member_id == s.to_member_id:
            raise IntegrityError(group_id, f"Invalid settlement planned: {s}")
        pair = (s.from_member_id, s.to_member_id)
        if pair in pairs:
            raise IntegrityError(group_id, f"Duplicate settlement pair planned: {pair}")
        pairs.add(pair)

    remaining = apply_settlements(balances, settlements)
    if any(remaining.values()):
        raise IntegrityError(
            group_id, f"Settlements leave nonzero balances: {remaining}"
        )

    owed = sum(amount for amount in balances.values() if amount > 0)
    transferred = sum(s.amount for s in settlements)
    if transferred != owed:
        raise IntegrityError(
            group_id,
            f"Settlements transfer {transferred}, expected {owed}",
        )
