from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from ledger.models import Course, normalize_email, normalize_series
from ledger.store import LedgerStore

from .errors import SeriesValidationError


@dataclass
class SeriesResolution:
    customer_email: str
    series_name: Optional[str] = None
    courses: list[Course] = field(default_factory=list)
    satisfied: set[UUID] = field(default_factory=set)

    @property
    def is_series(self) -> bool:
        return self.series_name is not None

    @property
    def missing(self) -> list[UUID]:
        """Series courses the customer does not hold yet, ascending by part."""
        return [c.id for c in self.courses if c.id not in self.satisfied]

    @property
    def course_ids(self) -> list[UUID]:
        return [c.id for c in self.courses]


class EntitlementResolver:
    """
    Read-only view of what a customer should hold within a series.

    Series membership is recomputed from the published courses on every call;
    nothing here is cached, so it is always safe to call again.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def resolve(self, course_id: UUID, customer_email: str) -> SeriesResolution:
        course = self.store.get_course(course_id)
        if course is None:
            raise SeriesValidationError(f"Course {course_id} not found")

        series_name = normalize_series(course.series_name)
        if series_name is None:
            return SeriesResolution(customer_email=normalize_email(customer_email))
        return self.resolve_series(series_name, customer_email)

    def resolve_series(self, series_name: str, customer_email: str) -> SeriesResolution:
        series_name = normalize_series(series_name)
        if series_name is None:
            raise SeriesValidationError("Series name must not be blank")

        customer_email = normalize_email(customer_email)
        courses = self.store.list_series_courses(series_name)
        satisfied = self.store.paid_course_ids(customer_email, [c.id for c in courses])
        return SeriesResolution(
            customer_email=customer_email,
            series_name=series_name,
            courses=courses,
            satisfied=satisfied,
        )
