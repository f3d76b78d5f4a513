"""Balance calculation: fold a group's bills and payments into net positions."""

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from .exceptions import IntegrityError

if TYPE_CHECKING:
    from .ledger import GroupLedger

logger = logging.getLogger(__name__)


def compute_balances(ledger: "GroupLedger") -> dict[str, int]:
    """
    Compute the net balance of every member of a group.

    The payer of each active bill is credited with the total and every share
    member is debited with their share. Recorded payments raise the sender's
    balance and lower the receiver's. Integer addition is associative and
    commutative, so the result does not depend on bill order.

    Args:
        ledger: The group's ledger

    Returns:
        Member id -> net amount in minor units (positive = is owed money).
        Every current member is present, including those at zero.

    Raises:
        IntegrityError: If a former member still carries a balance, or the
            balances do not sum to zero
    """
    balances: dict[str, int] = dict.fromkeys(ledger.members, 0)

    for bill in ledger.active_bills():
        balances[bill.payer_id] = balances.get(bill.payer_id, 0) + bill.total
        for share in bill.shares:
            balances[share.member_id] = balances.get(share.member_id, 0) - share.amount

    for payment in ledger.get_payments():
        sender, receiver = payment.from_member_id, payment.to_member_id
        balances[sender] = balances.get(sender, 0) + payment.amount
        balances[receiver] = balances.get(receiver, 0) - payment.amount

    for member_id in [m for m in balances if m not in ledger.members]:
        if balances[member_id] != 0:
            raise IntegrityError(
                ledger.group_id,
                f"Member {member_id} is no longer in group {ledger.group_id} "
                f"but has balance {balances[member_id]}",
            )
        del balances[member_id]

    verify_conservation(balances, group_id=ledger.group_id)
    return balances


def verify_conservation(balances: Mapping[str, int], group_id: str | None = None):
    """
    Check that a balance vector sums to exactly zero.

    Raises:
        IntegrityError: If the sum is not zero
    """
    total = sum(balances.values())
    if total != 0:
        raise IntegrityError(
            group_id,
            f"Balances of group {group_id} sum to {total}, expected 0",
        )
