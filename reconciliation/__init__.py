"""
Series Entitlement Reconciliation

Guarantees that a customer who paid for one part of a course series ends up
holding every published part of it:

- EntitlementResolver: which series courses a customer holds and misses
- GrantEngine: idempotent zero-price SERIES_UNLOCK ledger entries
- ChapterAccessCascade: unlocks chapters for the linked account, or defers
- IdentityLinker: email → registered account
- ReconciliationScheduler: point unlock, new-course backfill, full repair
"""

from .cascade import CascadeOutcome, CascadeStatus, ChapterAccessCascade
from .errors import ReconciliationError, SeriesValidationError, SourceEntryNotFoundError
from .grants import GrantBatch, GrantEngine
from .identity import IdentityLinker, IdentityResolution
from .models import PairOutcome, ReconciliationMode, ReconciliationResult, UnitFailure
from .resolver import EntitlementResolver, SeriesResolution
from .scheduler import ReconciliationScheduler

__all__ = [
    "CascadeOutcome",
    "CascadeStatus",
    "ChapterAccessCascade",
    "ReconciliationError",
    "SeriesValidationError",
    "SourceEntryNotFoundError",
    "GrantBatch",
    "GrantEngine",
    "IdentityLinker",
    "IdentityResolution",
    "PairOutcome",
    "ReconciliationMode",
    "ReconciliationResult",
    "UnitFailure",
    "EntitlementResolver",
    "SeriesResolution",
    "ReconciliationScheduler",
]
