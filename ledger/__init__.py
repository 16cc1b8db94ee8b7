"""
Course Ledger

This module provides:
- Courses, chapters and registered accounts
- Ledger entries: one per (customer email, course), PENDING → PAID / FAILED / CANCELLED, PAID → REFUNDED
- Zero-price SERIES_UNLOCK grants created by the reconciliation engine
- Monotonic chapter access per account
- The platform service and HTTP API that drive reconciliation (ledger.service, ledger.api)
"""

from .models import (
    SERIES_UNLOCK,
    PaymentStatus,
    Course,
    Chapter,
    Account,
    LedgerEntry,
    ChapterAccess,
)
from .store import LedgerStore, PersistenceError, build_engine

__all__ = [
    "SERIES_UNLOCK",
    "PaymentStatus",
    "Course",
    "Chapter",
    "Account",
    "LedgerEntry",
    "ChapterAccess",
    "LedgerStore",
    "PersistenceError",
    "build_engine",
]
