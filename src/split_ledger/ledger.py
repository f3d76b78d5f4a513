"""In-memory ledger of a single group: members, bills and recorded payments.

The ledger is the validation boundary. Anything that would break the
zero-sum invariant of the group is rejected here with ``ValidationError``
and never reaches storage.
"""

import logging
from collections.abc import Iterable

from .exceptions import NotFoundError, ValidationError
from .models import Bill, Group, Member, Payment

logger = logging.getLogger(__name__)


class GroupLedger:
    """Members, bills and payments of one group.

    Not thread-safe on its own; ``LedgerService`` serializes access per group.
    """

    def __init__(self, group: Group):
        """Initialize an empty ledger for a group."""
        self.group = group
        self.members: dict[str, Member] = {}
        self.former_members: dict[str, Member] = {}
        self._bills: dict[str, Bill] = {}
        self._payments: list[Payment] = []

    @classmethod
    def from_records(
        cls,
        group: Group,
        members: Iterable[Member],
        bills: Iterable[Bill],
        payments: Iterable[Payment] = (),
    ) -> "GroupLedger":
        """
        Rebuild a ledger from persisted records.

        Historical bills may reference members that have since left the
        group, so membership is not checked here; the calculator decides
        whether such references are harmless. Amounts are still validated.

        Args:
            group: The group the records belong to
            members: Current members
            bills: Persisted bills, in creation order
            payments: Persisted payments, in creation order

        Returns:
            A populated ledger
        """
        ledger = cls(group)
        for member in members:
            ledger.members[member.id] = member
        for bill in bills:
            ledger._check_bill_amounts(bill)
            ledger._bills[bill.id] = bill
        for payment in payments:
            ledger._check_payment_amount(payment)
            ledger._payments.append(payment)
        return ledger

    def copy(self) -> "GroupLedger":
        """Shallow copy; records are immutable, so only the containers are new."""
        ledger = GroupLedger(self.group)
        ledger.members = dict(self.members)
        ledger.former_members = dict(self.former_members)
        ledger._bills = dict(self._bills)
        ledger._payments = list(self._payments)
        return ledger

    @property
    def group_id(self) -> str:
        return self.group.id

    # ========================================================================
    # Members
    # ========================================================================

    def get_member(self, member_id: str) -> Member:
        """Get a current member by id."""
        member = self.members.get(member_id)
        if member is None:
            raise NotFoundError("member", member_id)
        return member

    def add_member(self, member: Member) -> Member:
        """Add a member to the group."""
        if member.group_id != self.group_id:
            raise ValidationError(
                f"Member {member.id} belongs to group {member.group_id}, "
                f"not {self.group_id}"
            )
        if member.id in self.members:
            raise ValidationError(f"Member {member.id} is already in the group")

        self.members[member.id] = member
        self.former_members.pop(member.id, None)
        return member

    def remove_member(self, member_id: str) -> Member:
        """
        Remove a member from the group.

        Only a member who appears in no bill or payment can be removed. Such a
        member always has a zero net balance.

        Raises:
            NotFoundError: If the member is not in the group
            ValidationError: If the member is still referenced
        """
        member = self.get_member(member_id)

        if member_id in self.referenced_member_ids():
            raise ValidationError(
                f"Member {member_id} appears in bills or payments and cannot be removed"
            )

        del self.members[member_id]
        self.former_members[member_id] = member
        logger.info(f"Removed member {member_id} from group {self.group_id}")
        return member

    def referenced_member_ids(self) -> set[str]:
        """Every member id referenced by a bill or a payment."""
        referenced: set[str] = set()
        for bill in self._bills.values():
            referenced |= bill.member_ids
        for payment in self._payments:
            referenced.add(payment.from_member_id)
            referenced.add(payment.to_member_id)
        return referenced

    # ========================================================================
    # Bills
    # ========================================================================

    def get_bills(self) -> list[Bill]:
        """All bills, cancelled ones included, in insertion order."""
        return list(self._bills.values())

    def active_bills(self) -> list[Bill]:
        """Bills that count towards balances."""
        return [bill for bill in self._bills.values() if bill.status == "active"]

    def get_bill(self, bill_id: str) -> Bill:
        bill = self._bills.get(bill_id)
        if bill is None:
            raise NotFoundError("bill", bill_id)
        return bill

    def add_bill(self, bill: Bill) -> Bill:
        """
        Add a bill to the ledger.

        Raises:
            ValidationError: If the bill is malformed, references unknown
                members, or its id is already taken
        """
        if bill.id in self._bills:
            raise ValidationError(f"Bill {bill.id} already exists")
        self.validate_bill(bill)
        self._bills[bill.id] = bill
        logger.debug(f"Added bill {bill.id} ({bill.total}) to group {self.group_id}")
        return bill

    def update_bill(self, bill: Bill) -> Bill:
        """
        Replace an existing bill with a new version.

        Returns:
            The previous version of the bill
        """
        previous = self.get_bill(bill.id)
        self.validate_bill(bill)
        self._bills[bill.id] = bill
        return previous

    def remove_bill(self, bill_id: str) -> Bill:
        """Remove a bill and return it."""
        bill = self.get_bill(bill_id)
        del self._bills[bill_id]
        return bill

    def validate_bill(self, bill: Bill):
        """
        Check a bill against the ledger.

        Raises:
            ValidationError: On group mismatch, negative amounts, a share sum
                that differs from the total, or unknown member references
        """
        if bill.group_id != self.group_id:
            raise ValidationError(
                f"Bill {bill.id} belongs to group {bill.group_id}, not {self.group_id}"
            )

        self._check_bill_amounts(bill)

        unknown = sorted(bill.member_ids - self.members.keys())
        if unknown:
            raise ValidationError(
                f"Bill {bill.id} references unknown members: {', '.join(unknown)}"
            )

    def _check_bill_amounts(self, bill: Bill):
        if bill.total < 0:
            raise ValidationError(f"Bill {bill.id} has a negative total: {bill.total}")
        if not bill.shares:
            raise ValidationError(f"Bill {bill.id} has no shares")

        seen: set[str] = set()
        for share in bill.shares:
            if share.amount < 0:
                raise ValidationError(
                    f"Bill {bill.id} has a negative share for {share.member_id}: "
                    f"{share.amount}"
                )
            if share.member_id in seen:
                raise ValidationError(
                    f"Bill {bill.id} has more than one share for {share.member_id}"
                )
            seen.add(share.member_id)

        if bill.share_total != bill.total:
            raise ValidationError(
                f"Bill {bill.id} shares sum to {bill.share_total}, "
                f"expected {bill.total} (residual {bill.total - bill.share_total})"
            )

    # ========================================================================
    # Payments
    # ========================================================================

    def get_payments(self) -> list[Payment]:
        return list(self._payments)

    def record_payment(self, payment: Payment) -> Payment:
        """
        Record a transfer that actually happened between two members.

        Raises:
            ValidationError: If the amount is not positive, the payment is a
                self-transfer, or either member is unknown
        """
        if payment.group_id != self.group_id:
            raise ValidationError(
                f"Payment {payment.id} belongs to group {payment.group_id}, "
                f"not {self.group_id}"
            )
        self._check_payment_amount(payment)

        for member_id in (payment.from_member_id, payment.to_member_id):
            if member_id not in self.members:
                raise ValidationError(
                    f"Payment {payment.id} references unknown member {member_id}"
                )

        self._payments.append(payment)
        return payment

    def _check_payment_amount(self, payment: Payment):
        if payment.amount <= 0:
            raise ValidationError(
                f"Payment {payment.id} amount must be positive: {payment.amount}"
            )
        if payment.from_member_id == payment.to_member_id:
            raise ValidationError(f"Payment {payment.id} is a self-transfer")
