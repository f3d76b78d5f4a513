"""SplitLedger - Group expense balances and debt settlement."""

__version__ = "0.1.0"

from .calculator import compute_balances
from .config import Settings, load_settings
from .db import Database
from .exceptions import (
    IntegrityError,
    NotFoundError,
    SplitLedgerError,
    StorageError,
    ValidationError,
)
from .ledger import GroupLedger
from .models import Balance, Bill, Group, Member, Payment, Settlement, Share
from .planner import apply_settlements, plan_settlements
from .service import LedgerService, balances_to_json, settlements_to_json
from .splitter import split_by_items, split_by_weights, split_equal, to_minor_units

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "SplitLedgerError",
    "ValidationError",
    "NotFoundError",
    "IntegrityError",
    "StorageError",
    "GroupLedger",
    "Group",
    "Member",
    "Bill",
    "Share",
    "Payment",
    "Balance",
    "Settlement",
    "compute_balances",
    "plan_settlements",
    "apply_settlements",
    "split_equal",
    "split_by_weights",
    "split_by_items",
    "to_minor_units",
    "LedgerService",
    "balances_to_json",
    "settlements_to_json",
]
