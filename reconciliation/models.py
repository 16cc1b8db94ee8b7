from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field

from ledger.models import LedgerEntry


class ReconciliationMode(str, Enum):
    POINT_UNLOCK = "point_unlock"
    NEW_COURSE_BACKFILL = "new_course_backfill"
    COMPREHENSIVE_REPAIR = "comprehensive_repair"


class UnitFailure(BaseModel):
    customer_email: Optional[str] = None
    series_name: Optional[str] = None
    course_id: Optional[UUID] = None
    error_type: str
    message: str

    @classmethod
    def from_error(cls, error: Exception, **context) -> "UnitFailure":
        return cls(error_type=type(error).__name__, message=str(error), **context)


class PairOutcome(BaseModel):
    """Result of repairing one (customer, series) pair."""
    customer_email: str
    series_name: str
    series_courses: int = 0
    grants: list[LedgerEntry] = Field(default_factory=list)
    chapters_unlocked: int = 0
    deferred_unlocks: int = 0
    failure: Optional[UnitFailure] = None


class ReconciliationResult(BaseModel):
    mode: ReconciliationMode
    customers_processed: int = 0
    pairs_processed: int = 0
    grants_created: int = 0
    chapters_unlocked: int = 0
    deferred_unlocks: int = 0
    grants: list[LedgerEntry] = Field(default_factory=list)
    failures: list[UnitFailure] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def add_grants(self, entries: list[LedgerEntry]) -> None:
        self.grants.extend(entries)
        self.grants_created += len(entries)

    def absorb(self, outcome: PairOutcome) -> None:
        self.pairs_processed += 1
        self.add_grants(outcome.grants)
        self.chapters_unlocked += outcome.chapters_unlocked
        self.deferred_unlocks += outcome.deferred_unlocks
        if outcome.failure is not None:
            self.failures.append(outcome.failure)
