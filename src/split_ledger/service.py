"""Service layer that owns per-group ledger state, caching and versioning.

Balances and settlements are pure functions of a group's bills and payments.
They are computed lazily on the first read after a change and cached until
the next change. Each group has its own lock; different groups never
contend with each other.
"""

import json
import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .calculator import compute_balances
from .exceptions import IntegrityError, NotFoundError, ValidationError
from .ledger import GroupLedger
from .models import (
    Balance,
    Bill,
    BillItem,
    ExtraCharges,
    Group,
    LedgerSnapshot,
    Member,
    Payment,
    Settlement,
    Share,
)
from .planner import plan_settlements
from .splitter import split_by_items, split_equal

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChangeListener = Callable[[str, int], None]
"""Called with ``(group_id, version)`` after a successful mutation."""


class BillRepository(Protocol):
    """Persistence collaborator. ``split_ledger.db.Database`` implements it."""

    def save_group(self, group: Group) -> None: ...

    def get_group(self, group_id: str) -> Group | None: ...

    def list_groups(self) -> list[Group]: ...

    def get_version(self, group_id: str) -> int: ...

    def bump_version(self, group_id: str) -> int: ...

    def save_member(self, member: Member) -> None: ...

    def delete_member(self, group_id: str, member_id: str) -> None: ...

    def load_members(self, group_id: str) -> list[Member]: ...

    def save_bill(self, bill: Bill) -> None: ...

    def delete_bill(self, bill_id: str) -> None: ...

    def find_bill_group(self, bill_id: str) -> str | None: ...

    def load_bills(self, group_id: str) -> list[Bill]: ...

    def save_payment(self, payment: Payment) -> None: ...

    def load_payments(self, group_id: str) -> list[Payment]: ...


@dataclass
class _GroupState:
    """Mutable state of one group.

    ``lock`` guards the fields below and is never held during repository I/O.
    ``write_lock`` serializes mutations of the group, including their
    repository writes, so writes land in version order.
    """

    group: Group
    ledger: GroupLedger | None = None
    version: int = 0
    snapshot: LedgerSnapshot | None = None
    needs_reload: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock)
    write_lock: threading.Lock = field(default_factory=threading.Lock)


class LedgerService:
    """Entry point for bill mutations and balance/settlement reads."""

    def __init__(
        self,
        repository: BillRepository | None = None,
        listeners: Iterable[ChangeListener] = (),
    ):
        """
        Initialize the ledger service.

        Args:
            repository: Optional persistence layer. Without one the service
                keeps everything in memory.
            listeners: Callbacks notified after every successful mutation
        """
        self.repository = repository
        self._listeners = list(listeners)
        self._groups: dict[str, _GroupState] = {}
        self._bill_groups: dict[str, str] = {}
        self._registry_lock = threading.Lock()

    def add_listener(self, listener: ChangeListener):
        """Register a change listener."""
        self._listeners.append(listener)

    # ========================================================================
    # Groups and members
    # ========================================================================

    def create_group(self, name: str) -> Group:
        """Create a new, empty group."""
        group = Group(name=name)
        if self.repository is not None:
            self.repository.save_group(group)

        state = _GroupState(group=group, ledger=GroupLedger(group))
        with self._registry_lock:
            self._groups[group.id] = state

        logger.info(f"Created group {group.id} ({name})")
        return group

    def get_group(self, group_id: str) -> Group:
        """Get a group by id."""
        return self._state(group_id).group

    def list_groups(self) -> list[Group]:
        """Get all known groups."""
        if self.repository is not None:
            return self.repository.list_groups()
        with self._registry_lock:
            return [state.group for state in self._groups.values()]

    def get_members(self, group_id: str) -> list[Member]:
        """Get the current members of a group."""
        return self._read(group_id, lambda ledger: list(ledger.members.values()))

    def add_member(
        self, group_id: str, name: str, member_id: str | None = None
    ) -> Member:
        """Add a member to a group."""
        fields: dict[str, Any] = {"group_id": group_id, "name": name}
        if member_id is not None:
            fields["id"] = member_id
        member = _build(Member, fields)

        _, version = self._mutate(
            group_id,
            lambda ledger: ledger.add_member(member),
            lambda repository, added: repository.save_member(added),
        )

        self._notify(group_id, version)
        return member

    def remove_member(self, group_id: str, member_id: str) -> Member:
        """
        Remove a member who appears in no bill or payment.

        Raises:
            NotFoundError: If the member is not in the group
            ValidationError: If the member cannot be removed
        """
        member, version = self._mutate(
            group_id,
            lambda ledger: ledger.remove_member(member_id),
            lambda repository, removed: repository.delete_member(group_id, removed.id),
        )

        self._notify(group_id, version)
        return member

    # ========================================================================
    # Bills
    # ========================================================================

    def create_bill(
        self,
        group_id: str,
        payer_id: str,
        total: int,
        shares: Mapping[str, int] | Iterable[Share],
        description: str = "",
        category: str | None = None,
    ) -> Bill:
        """
        Record a new bill.

        Args:
            group_id: Group the bill belongs to
            payer_id: Member who paid the bill
            total: Total amount in minor units
            shares: Member id -> owed amount, or a sequence of shares
            description: Free-form description
            category: Optional category label

        Returns:
            The stored bill

        Raises:
            ValidationError: If the bill is malformed
            NotFoundError: If the group is unknown
            StorageError: If the repository rejects the bill
        """
        bill = _build(
            Bill,
            {
                "group_id": group_id,
                "payer_id": payer_id,
                "total": total,
                "shares": _as_shares(shares),
                "description": description,
                "category": category,
            },
        )

        _, version = self._mutate(
            group_id,
            lambda ledger: ledger.add_bill(bill),
            lambda repository, added: repository.save_bill(added),
        )
        with self._registry_lock:
            self._bill_groups[bill.id] = group_id

        logger.info(
            f"Created bill {bill.id} in group {group_id}: "
            f"{bill.total} paid by {payer_id}, {len(bill.shares)} shares"
        )
        self._notify(group_id, version)
        return bill

    def create_equal_bill(
        self,
        group_id: str,
        payer_id: str,
        total: int,
        member_ids: Sequence[str] | None = None,
        description: str = "",
        category: str | None = None,
    ) -> Bill:
        """
        Record a bill split equally.

        Without ``member_ids`` the bill is split among all current members.
        """
        if member_ids is None:
            member_ids = [member.id for member in self.get_members(group_id)]
        shares = split_equal(total, member_ids)
        return self.create_bill(
            group_id, payer_id, total, shares, description=description, category=category
        )

    def create_itemized_bill(
        self,
        group_id: str,
        payer_id: str,
        items: Sequence[BillItem],
        extras: ExtraCharges | None = None,
        description: str = "",
        category: str | None = None,
    ) -> Bill:
        """Record a bill split by item assignment plus proportional extras."""
        shares = split_by_items(items, extras)
        total = sum(share.amount for share in shares)
        return self.create_bill(
            group_id, payer_id, total, shares, description=description, category=category
        )

    def update_bill(self, bill_id: str, **changes: Any) -> Bill:
        """
        Replace fields of an existing bill.

        Accepted fields: ``payer_id``, ``total``, ``shares``, ``description``,
        ``category``, ``status``. The updated bill is validated as a whole,
        so changing the total requires matching shares.

        Raises:
            NotFoundError: If the bill is unknown
            ValidationError: If the updated bill is malformed
        """
        allowed = {"payer_id", "total", "shares", "description", "category", "status"}
        unexpected = set(changes) - allowed
        if unexpected:
            raise ValidationError(f"Cannot update bill fields: {sorted(unexpected)}")
        if "shares" in changes:
            changes["shares"] = _as_shares(changes["shares"])

        group_id = self._group_of_bill(bill_id)

        def apply(ledger: GroupLedger) -> Bill:
            current = ledger.get_bill(bill_id)
            updated = _build(Bill, {**current.model_dump(), **changes})
            ledger.update_bill(updated)
            return updated

        bill, version = self._mutate(
            group_id, apply, lambda repository, updated: repository.save_bill(updated)
        )

        logger.info(f"Updated bill {bill_id} in group {group_id}")
        self._notify(group_id, version)
        return bill

    def cancel_bill(self, bill_id: str) -> Bill:
        """Mark a bill as cancelled; it stays on record but no longer counts."""
        return self.update_bill(bill_id, status="cancelled")

    def delete_bill(self, bill_id: str) -> Bill:
        """
        Delete a bill.

        Raises:
            NotFoundError: If the bill is unknown
        """
        group_id = self._group_of_bill(bill_id)
        bill, version = self._mutate(
            group_id,
            lambda ledger: ledger.remove_bill(bill_id),
            lambda repository, removed: repository.delete_bill(removed.id),
        )
        with self._registry_lock:
            self._bill_groups.pop(bill_id, None)

        logger.info(f"Deleted bill {bill_id} from group {group_id}")
        self._notify(group_id, version)
        return bill

    def get_bill(self, bill_id: str) -> Bill:
        """Get a bill by id."""
        group_id = self._group_of_bill(bill_id)
        return self._read(group_id, lambda ledger: ledger.get_bill(bill_id))

    def get_bills(self, group_id: str) -> list[Bill]:
        """Get all bills of a group in creation order."""
        return self._read(group_id, lambda ledger: ledger.get_bills())

    # ========================================================================
    # Payments
    # ========================================================================

    def record_payment(
        self,
        group_id: str,
        from_member_id: str,
        to_member_id: str,
        amount: int,
        note: str = "",
    ) -> Payment:
        """
        Record a transfer that actually happened, e.g. after settling up.

        Raises:
            ValidationError: If the payment is malformed
        """
        payment = _build(
            Payment,
            {
                "group_id": group_id,
                "from_member_id": from_member_id,
                "to_member_id": to_member_id,
                "amount": amount,
                "note": note,
            },
        )

        _, version = self._mutate(
            group_id,
            lambda ledger: ledger.record_payment(payment),
            lambda repository, recorded: repository.save_payment(recorded),
        )

        logger.info(
            f"Recorded payment of {amount} from {from_member_id} to {to_member_id} "
            f"in group {group_id}"
        )
        self._notify(group_id, version)
        return payment

    def get_payments(self, group_id: str) -> list[Payment]:
        """Get all recorded payments of a group."""
        return self._read(group_id, lambda ledger: ledger.get_payments())

    # ========================================================================
    # Reads
    # ========================================================================

    def get_snapshot(self, group_id: str) -> LedgerSnapshot:
        """
        Get the balances and settlements of a group.

        Recomputes only if the group changed since the last read. The
        snapshot is immutable and reflects a single, fully applied mutation.

        Raises:
            NotFoundError: If the group is unknown
            IntegrityError: If the group's balances violate the zero-sum
                invariant; nothing is cached in that case
        """
        state = self._state(group_id)
        while True:
            self._ensure_loaded(state)
            with state.lock:
                if state.needs_reload:
                    continue
                if state.snapshot is None:
                    state.snapshot = self._compute(state)
                return state.snapshot

    def get_balances(self, group_id: str) -> tuple[Balance, ...]:
        """Net balance of every current member."""
        return self.get_snapshot(group_id).balances

    def get_settlements(self, group_id: str) -> tuple[Settlement, ...]:
        """Transfers that settle every balance in the group."""
        return self.get_snapshot(group_id).settlements

    def get_version(self, group_id: str) -> int:
        """Current revision of a group; increases with every change."""
        state = self._state(group_id)
        with state.lock:
            return state.version

    def on_bill_changed(self, group_id: str):
        """
        Invalidate a group after an external change to its bills.

        Nothing is recomputed here; the next read does it. With a repository,
        the group's records are reloaded from it before that read.
        """
        with self._registry_lock:
            state = self._groups.get(group_id)
        if state is None:
            # Not loaded yet; the first access reads fresh records anyway.
            return

        with state.write_lock:
            with state.lock:
                state.snapshot = None
                if self.repository is not None:
                    state.needs_reload = True
            version = self._next_version(state)
            with state.lock:
                state.version = version

        logger.debug(f"Group {group_id} invalidated at version {version}")
        self._notify(group_id, version)

    # ========================================================================
    # Internals
    # ========================================================================

    def _state(self, group_id: str) -> _GroupState:
        """Get the state of a group, registering it from the repository."""
        with self._registry_lock:
            state = self._groups.get(group_id)
        if state is not None:
            return state

        if self.repository is None:
            raise NotFoundError("group", group_id)
        group = self.repository.get_group(group_id)
        if group is None:
            raise NotFoundError("group", group_id)
        # Seeded from storage so versions keep increasing across restarts.
        version = self.repository.get_version(group_id)

        with self._registry_lock:
            return self._groups.setdefault(
                group_id, _GroupState(group=group, version=version, needs_reload=True)
            )

    def _ensure_loaded(self, state: _GroupState):
        """Load a group's records from the repository if they are stale."""
        while True:
            with state.lock:
                if not state.needs_reload:
                    return
                version = state.version

            # Repository I/O happens outside the group lock.
            ledger = self._load_ledger(state.group)

            with state.lock:
                if state.version == version:
                    state.ledger = ledger
                    state.snapshot = None
                    state.needs_reload = False
                    return

    def _load_ledger(self, group: Group) -> GroupLedger:
        if self.repository is None:
            raise NotFoundError("group", group.id)

        ledger = GroupLedger.from_records(
            group,
            members=self.repository.load_members(group.id),
            bills=self.repository.load_bills(group.id),
            payments=self.repository.load_payments(group.id),
        )
        with self._registry_lock:
            for bill in ledger.get_bills():
                self._bill_groups[bill.id] = group.id

        logger.debug(
            f"Loaded group {group.id}: {len(ledger.members)} members, "
            f"{len(ledger.get_bills())} bills"
        )
        return ledger

    def _read(self, group_id: str, fn: Callable[[GroupLedger], T]) -> T:
        state = self._state(group_id)
        while True:
            self._ensure_loaded(state)
            with state.lock:
                if state.needs_reload or state.ledger is None:
                    continue
                return fn(state.ledger)

    def _mutate(
        self,
        group_id: str,
        fn: Callable[[GroupLedger], T],
        persist: Callable[[BillRepository, T], None],
    ) -> tuple[T, int]:
        """
        Apply a mutation to a copy of the ledger, store it, then publish it.

        Readers keep seeing the previous ledger until the repository write
        has succeeded. If ``fn`` or the write fails, the published ledger is
        unchanged. Listeners are not notified here.

        Returns:
            The result of ``fn`` and the group's new version
        """
        state = self._state(group_id)
        with state.write_lock:
            self._ensure_loaded(state)
            with state.lock:
                assert state.ledger is not None
                candidate = state.ledger.copy()

            result = fn(candidate)

            if self.repository is not None:
                try:
                    persist(self.repository, result)
                except Exception:
                    # Storage may hold part of the change; resync from it.
                    with state.lock:
                        state.snapshot = None
                        state.needs_reload = True
                    raise
            version = self._next_version(state)

            with state.lock:
                state.ledger = candidate
                state.version = version
                state.snapshot = None
        return result, version

    def _next_version(self, state: _GroupState) -> int:
        """Allocate the next version. Caller holds ``state.write_lock``."""
        if self.repository is not None:
            return self.repository.bump_version(state.group.id)
        return state.version + 1

    def _compute(self, state: _GroupState) -> LedgerSnapshot:
        """Compute a fresh snapshot. Caller holds ``state.lock``."""
        assert state.ledger is not None
        group_id = state.group.id
        try:
            balances = compute_balances(state.ledger)
            settlements = plan_settlements(balances, group_id=group_id)
        except IntegrityError as e:
            logger.error(f"Integrity violation in group {group_id}: {e}")
            raise

        logger.debug(
            f"Recomputed group {group_id} at version {state.version}: "
            f"{len(settlements)} settlements"
        )
        return LedgerSnapshot(
            group_id=group_id,
            version=state.version,
            balances=tuple(
                Balance(member_id=m, group_id=group_id, amount=amount)
                for m, amount in balances.items()
            ),
            settlements=tuple(settlements),
        )

    def _group_of_bill(self, bill_id: str) -> str:
        with self._registry_lock:
            group_id = self._bill_groups.get(bill_id)
        if group_id is None and self.repository is not None:
            group_id = self.repository.find_bill_group(bill_id)
        if group_id is None:
            raise NotFoundError("bill", bill_id)
        return group_id

    def _notify(self, group_id: str, version: int):
        """Call every listener; a failing listener does not affect the others."""
        for listener in self._listeners:
            try:
                listener(group_id, version)
            except Exception as e:
                logger.error(
                    f"Change listener {listener!r} failed for group {group_id} "
                    f"v{version}: {e}"
                )


def _as_shares(shares: Mapping[str, int] | Iterable[Share]) -> list[Share]:
    if isinstance(shares, Mapping):
        return [_build(Share, {"member_id": m, "amount": a}) for m, a in shares.items()]
    return list(shares)


def _build(model: type[T], data: dict[str, Any]) -> T:
    """Validate model input, surfacing failures as ``ValidationError``."""
    try:
        return model.model_validate(data)  # type: ignore[attr-defined]
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e


# ============================================================================
# Wire format
# ============================================================================


def balances_to_json(balances: Iterable[Balance]) -> str:
    """Serialize balances as ``[{"memberId", "amount"}]`` with integer amounts."""
    return json.dumps(
        [
            balance.model_dump(by_alias=True, include={"member_id", "amount"})
            for balance in balances
        ]
    )


def settlements_to_json(settlements: Iterable[Settlement]) -> str:
    """Serialize settlements as ``[{"fromMemberId", "toMemberId", "amount"}]``."""
    return json.dumps([s.model_dump(by_alias=True) for s in settlements])
