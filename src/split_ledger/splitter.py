"""Exact integer splitting of bill totals into shares.

Every helper returns shares whose amounts sum to the requested total to the
minor unit. Leftover minor units are handed out one at a time to the first
eligible members in the order given, so the result is deterministic.
"""

from collections.abc import Iterable, Mapping, Sequence
from decimal import ROUND_HALF_UP, Decimal

from .exceptions import ValidationError
from .models import BillItem, ExtraCharges, Share


def to_minor_units(amount: Decimal | str, minor_units: int = 2) -> int:
    """
    Convert a major-unit amount to integer minor units.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Amount in major units, e.g. Decimal("12.34") or "12.34"
        minor_units: Digits after the decimal point for the currency

    Returns:
        Amount in minor units (integer)
    """
    scaled = Decimal(amount) * (Decimal(10) ** minor_units)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, minor_units: int = 2) -> Decimal:
    """Convert integer minor units back to a major-unit Decimal."""
    return Decimal(amount).scaleb(-minor_units)


def _unique(member_ids: Iterable[str]) -> list[str]:
    ordered = list(member_ids)
    if len(set(ordered)) != len(ordered):
        raise ValidationError(f"Duplicate members in split: {ordered}")
    return ordered


def split_equal(total: int, member_ids: Sequence[str]) -> list[Share]:
    """
    Split a total equally among members.

    Args:
        total: Amount to split, in minor units
        member_ids: Participants, in the order remainders are allocated

    Returns:
        One share per member; the first ``total % n`` members get one extra unit

    Raises:
        ValidationError: If the total is negative or there are no members
    """
    members = _unique(member_ids)
    if not members:
        raise ValidationError("Cannot split a bill among zero members")
    if total < 0:
        raise ValidationError(f"Cannot split a negative total: {total}")

    base, remainder = divmod(total, len(members))
    return [
        Share(member_id=member_id, amount=base + (1 if i < remainder else 0))
        for i, member_id in enumerate(members)
    ]


def split_by_weights(total: int, weights: Mapping[str, int]) -> list[Share]:
    """
    Split a total proportionally to integer weights.

    Percentages are expressed as basis points (weights summing to 10000).
    Members with a zero weight receive no share.

    Args:
        total: Amount to split, in minor units
        weights: Member id -> non-negative weight, in allocation order

    Returns:
        Shares for every member with a positive weight

    Raises:
        ValidationError: If the total or any weight is negative, or all
            weights are zero
    """
    if total < 0:
        raise ValidationError(f"Cannot split a negative total: {total}")
    if any(weight < 0 for weight in weights.values()):
        raise ValidationError(f"Split weights must be non-negative: {dict(weights)}")

    weight_sum = sum(weights.values())
    if weight_sum == 0:
        raise ValidationError("Split weights must not all be zero")

    amounts = {
        member_id: total * weight // weight_sum
        for member_id, weight in weights.items()
        if weight > 0
    }

    # Fractional parts sum to less than the number of members, so one pass
    # over the members hands out the whole remainder.
    remainder = total - sum(amounts.values())
    for member_id in amounts:
        if remainder == 0:
            break
        amounts[member_id] += 1
        remainder -= 1

    return [Share(member_id=m, amount=amount) for m, amount in amounts.items()]


def split_by_items(
    items: Sequence[BillItem], extras: ExtraCharges | None = None
) -> list[Share]:
    """
    Split an itemized receipt.

    Each item is split equally among the members it is assigned to. Extra
    charges (tax, service charge, tip, minus discount) are then distributed
    proportionally to each member's item subtotal.

    Args:
        items: Receipt line items
        extras: Optional extra charges

    Returns:
        One share per member, ordered by first appearance in the items

    Raises:
        ValidationError: If an item has no assignees or a negative price,
            or the discount exceeds the subtotal
    """
    if not items:
        raise ValidationError("Itemized split requires at least one item")

    subtotals: dict[str, int] = {}
    for item in items:
        if item.price < 0:
            raise ValidationError(f"Item '{item.name}' has a negative price")
        if not item.assigned_to:
            raise ValidationError(f"Item '{item.name}' is not assigned to anyone")
        for share in split_equal(item.price, item.assigned_to):
            subtotals[share.member_id] = subtotals.get(share.member_id, 0) + share.amount

    net_extra = extras.net if extras else 0
    subtotal = sum(subtotals.values())

    if net_extra != 0:
        if subtotal + net_extra < 0:
            raise ValidationError(
                f"Discount exceeds bill subtotal: subtotal {subtotal}, "
                f"net extra charges {net_extra}"
            )
        if subtotal == 0:
            raise ValidationError("Cannot distribute extra charges over a zero subtotal")

        sign = 1 if net_extra > 0 else -1
        for share in split_by_weights(abs(net_extra), subtotals):
            subtotals[share.member_id] += sign * share.amount

    return [Share(member_id=m, amount=amount) for m, amount in subtotals.items()]
