"""Pydantic domain models for SplitLedger.

All money is integer minor units (e.g. cents). Amount fields are strict
integers so a float can never slip into the ledger arithmetic.
"""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def new_id() -> str:
    """Generate a new opaque identifier."""
    return uuid.uuid4().hex


_VALUE_CONFIG = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Group Models
# ============================================================================


class Group(BaseModel):
    """A set of members sharing bills."""

    model_config = _VALUE_CONFIG

    id: str = Field(default_factory=new_id)
    name: str
    created_at: datetime = Field(default_factory=datetime.now)


class Member(BaseModel):
    """A member's identity within a group. Immutable once added."""

    model_config = _VALUE_CONFIG

    id: str = Field(default_factory=new_id)
    group_id: str
    name: str
    joined_at: datetime = Field(default_factory=datetime.now)


# ============================================================================
# Bill Models
# ============================================================================


BillStatus = Literal["active", "cancelled"]


class Share(BaseModel):
    """A participant's obligation for one bill."""

    model_config = _VALUE_CONFIG

    member_id: str
    amount: int = Field(strict=True)


class Bill(BaseModel):
    """A single shared expense.

    Invariant (checked by the ledger): ``sum(share.amount) == total``.
    The payer may also hold a share; it nets out against the credit.
    """

    model_config = _VALUE_CONFIG

    id: str = Field(default_factory=new_id)
    group_id: str
    payer_id: str
    total: int = Field(strict=True)
    shares: tuple[Share, ...]
    description: str = ""
    category: str | None = None
    status: BillStatus = "active"
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def share_total(self) -> int:
        """Sum of all share amounts."""
        return sum(share.amount for share in self.shares)

    @property
    def member_ids(self) -> set[str]:
        """Every member referenced by this bill, payer included."""
        return {self.payer_id} | {share.member_id for share in self.shares}


class Payment(BaseModel):
    """A recorded transfer that has actually happened between two members."""

    model_config = _VALUE_CONFIG

    id: str = Field(default_factory=new_id)
    group_id: str
    from_member_id: str
    to_member_id: str
    amount: int = Field(strict=True)
    note: str = ""
    created_at: datetime = Field(default_factory=datetime.now)


class BillItem(BaseModel):
    """A line item on a receipt, assigned to one or more members."""

    name: str
    price: int = Field(strict=True)
    assigned_to: list[str]


class ExtraCharges(BaseModel):
    """Charges applied on top of the item subtotal."""

    tax: int = Field(default=0, strict=True)
    service_charge: int = Field(default=0, strict=True)
    tip: int = Field(default=0, strict=True)
    discount: int = Field(default=0, strict=True)

    @property
    def net(self) -> int:
        """Net adjustment to the subtotal (may be negative)."""
        return self.tax + self.service_charge + self.tip - self.discount


# ============================================================================
# Derived Models
# ============================================================================


class Balance(BaseModel):
    """A member's net position in a group.

    Positive = is owed money, negative = owes money, zero = settled.
    """

    model_config = _VALUE_CONFIG

    member_id: str
    group_id: str
    amount: int = Field(strict=True)


class Settlement(BaseModel):
    """A proposed transfer from a debtor to a creditor."""

    model_config = _VALUE_CONFIG

    from_member_id: str
    to_member_id: str
    amount: int = Field(strict=True)


class LedgerSnapshot(BaseModel):
    """Balances and settlements of one group at a given version."""

    model_config = _VALUE_CONFIG

    group_id: str
    version: int
    balances: tuple[Balance, ...]
    settlements: tuple[Settlement, ...]
    computed_at: datetime = Field(default_factory=datetime.now)
