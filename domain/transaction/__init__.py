from .entity import (
    LineItem,
    MergeOutcome,
    TERMINAL_STATUSES,
    TransactionRecord,
    TransactionStatus,
)
from .repository import TransactionStore

__all__ = [
    "LineItem",
    "MergeOutcome",
    "TERMINAL_STATUSES",
    "TransactionRecord",
    "TransactionStatus",
    "TransactionStore",
]
