"""Tests for the in-memory group ledger."""

import pytest

from split_ledger.exceptions import NotFoundError, ValidationError
from split_ledger.ledger import GroupLedger
from split_ledger.models import Bill, Group, Member, Payment, Share

from .factories import GROUP_ID, make_bill, make_ledger


class TestAddBill:
    """Tests for bill validation at the ledger boundary."""

    def test_exact_share_sum_accepted(self):
        ledger = make_ledger("a", "b", "c")
        bill = make_bill("a", 900, {"a": 300, "b": 300, "c": 300})

        ledger.add_bill(bill)

        assert ledger.get_bills() == [bill]

    def test_share_sum_one_unit_short_rejected(self):
        ledger = make_ledger("a", "b", "c")
        bill = make_bill("a", 900, {"a": 300, "b": 300, "c": 299})

        with pytest.raises(ValidationError, match="sum to 899"):
            ledger.add_bill(bill)

        assert ledger.get_bills() == []

    def test_share_sum_over_total_rejected(self):
        ledger = make_ledger("a", "b")
        with pytest.raises(ValidationError):
            ledger.add_bill(make_bill("a", 100, {"a": 50, "b": 51}))

    def test_negative_total_rejected(self):
        ledger = make_ledger("a", "b")
        with pytest.raises(ValidationError, match="negative total"):
            ledger.add_bill(make_bill("a", -100, {"a": -50, "b": -50}))

    def test_negative_share_rejected(self):
        ledger = make_ledger("a", "b")
        with pytest.raises(ValidationError, match="negative share"):
            ledger.add_bill(make_bill("a", 100, {"a": 150, "b": -50}))

    def test_unknown_payer_rejected(self):
        ledger = make_ledger("a", "b")
        with pytest.raises(ValidationError, match="unknown members: z"):
            ledger.add_bill(make_bill("z", 100, {"a": 50, "b": 50}))

    def test_unknown_share_member_rejected(self):
        ledger = make_ledger("a", "b")
        with pytest.raises(ValidationError, match="unknown members"):
            ledger.add_bill(make_bill("a", 100, {"a": 50, "z": 50}))

    def test_other_group_rejected(self):
        ledger = make_ledger("a")
        bill = Bill(
            group_id="other",
            payer_id="a",
            total=10,
            shares=[Share(member_id="a", amount=10)],
        )
        with pytest.raises(ValidationError, match="belongs to group other"):
            ledger.add_bill(bill)

    def test_bill_without_shares_rejected(self):
        ledger = make_ledger("a")
        with pytest.raises(ValidationError, match="no shares"):
            ledger.add_bill(make_bill("a", 0, {}))

    def test_duplicate_share_member_rejected(self):
        ledger = make_ledger("a", "b")
        bill = Bill(
            group_id=GROUP_ID,
            payer_id="a",
            total=100,
            shares=[
                Share(member_id="b", amount=50),
                Share(member_id="b", amount=50),
            ],
        )
        with pytest.raises(ValidationError, match="more than one share"):
            ledger.add_bill(bill)

    def test_duplicate_bill_id_rejected(self):
        ledger = make_ledger("a", "b")
        ledger.add_bill(make_bill("a", 100, {"b": 100}, bill_id="x"))
        with pytest.raises(ValidationError, match="already exists"):
            ledger.add_bill(make_bill("a", 50, {"b": 50}, bill_id="x"))

    def test_zero_amount_bill_accepted(self):
        ledger = make_ledger("a", "b")
        ledger.add_bill(make_bill("a", 0, {"a": 0, "b": 0}))
        assert len(ledger.get_bills()) == 1


class TestUpdateAndRemoveBill:
    """Tests for bill replacement and removal."""

    def test_update_replaces_bill(self):
        ledger = make_ledger("a", "b")
        ledger.add_bill(make_bill("a", 100, {"b": 100}, bill_id="x"))

        previous = ledger.update_bill(make_bill("b", 60, {"a": 60}, bill_id="x"))

        assert previous.total == 100
        assert ledger.get_bill("x").total == 60

    def test_update_is_validated(self):
        ledger = make_ledger("a", "b")
        ledger.add_bill(make_bill("a", 100, {"b": 100}, bill_id="x"))

        with pytest.raises(ValidationError):
            ledger.update_bill(make_bill("a", 100, {"b": 99}, bill_id="x"))

        assert ledger.get_bill("x").shares[0].amount == 100

    def test_update_unknown_bill(self):
        ledger = make_ledger("a")
        with pytest.raises(NotFoundError):
            ledger.update_bill(make_bill("a", 1, {"a": 1}, bill_id="missing"))

    def test_remove_bill(self):
        ledger = make_ledger("a", "b")
        ledger.add_bill(make_bill("a", 100, {"b": 100}, bill_id="x"))

        removed = ledger.remove_bill("x")

        assert removed.id == "x"
        assert ledger.get_bills() == []

    def test_remove_unknown_bill(self):
        ledger = make_ledger("a")
        with pytest.raises(NotFoundError):
            ledger.remove_bill("missing")

    def test_cancelled_bills_are_not_active(self):
        ledger = make_ledger("a", "b")
        bill = make_bill("a", 100, {"b": 100}).model_copy(update={"status": "cancelled"})
        ledger.add_bill(bill)

        assert ledger.get_bills() == [bill]
        assert ledger.active_bills() == []


class TestMembers:
    """Tests for adding and removing members."""

    def test_duplicate_member_rejected(self):
        ledger = make_ledger("a")
        with pytest.raises(ValidationError, match="already in the group"):
            ledger.add_member(Member(id="a", group_id=GROUP_ID, name="Again"))

    def test_member_of_other_group_rejected(self):
        ledger = make_ledger()
        with pytest.raises(ValidationError):
            ledger.add_member(Member(id="a", group_id="other", name="A"))

    def test_remove_unreferenced_member(self):
        ledger = make_ledger("a", "b", "c")
        ledger.add_bill(make_bill("a", 100, {"b": 100}))

        removed = ledger.remove_member("c")

        assert removed.id == "c"
        assert "c" not in ledger.members
        assert "c" in ledger.former_members

    def test_remove_member_with_balance_rejected(self):
        ledger = make_ledger("a", "b")
        ledger.add_bill(make_bill("a", 100, {"b": 100}))

        with pytest.raises(ValidationError, match="cannot be removed"):
            ledger.remove_member("b")

        assert "b" in ledger.members

    def test_remove_member_in_settled_bill_rejected(self):
        """A member referenced by a bill stays even when their balance is zero."""
        ledger = make_ledger("a", "b")
        ledger.add_bill(make_bill("a", 100, {"a": 100}))
        ledger.add_bill(make_bill("b", 100, {"b": 100}))

        with pytest.raises(ValidationError):
            ledger.remove_member("b")

    def test_remove_unknown_member(self):
        ledger = make_ledger("a")
        with pytest.raises(NotFoundError):
            ledger.remove_member("zz")


class TestPayments:
    """Tests for recording payments."""

    def test_record_payment(self):
        ledger = make_ledger("a", "b")
        payment = Payment(group_id=GROUP_ID, from_member_id="b", to_member_id="a", amount=5)

        ledger.record_payment(payment)

        assert ledger.get_payments() == [payment]
        assert ledger.referenced_member_ids() == {"a", "b"}

    @pytest.mark.parametrize("amount", [0, -10])
    def test_non_positive_amount_rejected(self, amount):
        ledger = make_ledger("a", "b")
        payment = Payment(
            group_id=GROUP_ID, from_member_id="b", to_member_id="a", amount=amount
        )
        with pytest.raises(ValidationError, match="must be positive"):
            ledger.record_payment(payment)

    def test_self_transfer_rejected(self):
        ledger = make_ledger("a")
        payment = Payment(group_id=GROUP_ID, from_member_id="a", to_member_id="a", amount=5)
        with pytest.raises(ValidationError, match="self-transfer"):
            ledger.record_payment(payment)

    def test_unknown_member_rejected(self):
        ledger = make_ledger("a")
        payment = Payment(group_id=GROUP_ID, from_member_id="z", to_member_id="a", amount=5)
        with pytest.raises(ValidationError, match="unknown member z"):
            ledger.record_payment(payment)


class TestFromRecords:
    """Tests for rebuilding a ledger from persisted records."""

    def test_historical_bill_with_former_member_is_loaded(self):
        group = Group(id=GROUP_ID, name="Trip")
        members = [Member(id="a", group_id=GROUP_ID, name="A")]
        bill = make_bill("a", 100, {"a": 50, "gone": 50})

        ledger = GroupLedger.from_records(group, members, [bill])

        assert ledger.get_bills() == [bill]

    def test_amounts_are_still_validated(self):
        group = Group(id=GROUP_ID, name="Trip")
        bill = make_bill("a", 100, {"a": 99})

        with pytest.raises(ValidationError):
            GroupLedger.from_records(group, [], [bill])


class TestCopy:
    """Tests for copying a ledger before a mutation."""

    def test_copy_is_independent(self):
        ledger = make_ledger("a", "b")
        bill = make_bill("a", 100, {"b": 100})
        ledger.add_bill(bill)

        candidate = ledger.copy()
        candidate.remove_bill(bill.id)
        candidate.add_member(Member(id="c", group_id=GROUP_ID, name="c"))

        assert ledger.get_bills() == [bill]
        assert list(ledger.members) == ["a", "b"]
        assert candidate.get_bills() == []
        assert list(candidate.members) == ["a", "b", "c"]
