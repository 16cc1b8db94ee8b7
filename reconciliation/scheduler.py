"""
Reconciliation Scheduler

Three entry points over the same primitives (resolver, grant engine,
chapter cascade):

- Mode A, on_payment_confirmed: one customer, one series, right after a
  payment lands. Never raises.
- Mode B, backfill_new_course: one newly published course, every existing
  holder of its series.
- Mode C, repair_all / iter_repair: every (customer, series) pair against the
  current published state.

Each unit commits on its own. Modes B and C collect per-unit failures in the
result instead of raising; only PersistenceError escapes them.
"""

import logging
from typing import Callable, Iterator, Optional
from uuid import UUID

from ledger.models import normalize_email, normalize_series
from ledger.store import LedgerStore

from .cascade import CascadeOutcome, ChapterAccessCascade
from .errors import ReconciliationError, SeriesValidationError
from .grants import GrantEngine
from .identity import IdentityLinker
from .models import PairOutcome, ReconciliationMode, ReconciliationResult, UnitFailure
from .resolver import EntitlementResolver

logger = logging.getLogger(__name__)


class ReconciliationScheduler:
    def __init__(
        self,
        store: LedgerStore,
        resolver: Optional[EntitlementResolver] = None,
        grants: Optional[GrantEngine] = None,
        cascade: Optional[ChapterAccessCascade] = None,
    ):
        self.store = store
        self.resolver = resolver or EntitlementResolver(store)
        self.grants = grants or GrantEngine(store)
        self.cascade = cascade or ChapterAccessCascade(store, IdentityLinker(store))

    def on_payment_confirmed(self, customer_email: str, course_id: UUID) -> ReconciliationResult:
        customer_email = normalize_email(customer_email)
        result = ReconciliationResult(mode=ReconciliationMode.POINT_UNLOCK, customers_processed=1)
        series_name = None
        try:
            resolution = self.resolver.resolve(course_id, customer_email)
            series_name = resolution.series_name
            targets = [course_id]
            if resolution.is_series:
                result.pairs_processed = 1
                batch = self.grants.grant(customer_email, resolution.missing)
                result.add_grants(batch.created)
                targets.extend(entry.course_id for entry in batch.created)

            for target in targets:
                self._record_cascade(result, self.cascade.unlock_course(customer_email, target))
        except Exception as e:
            # the payment already succeeded; nothing here may change that
            logger.exception(
                "point_unlock_failed",
                extra={"customer_email": customer_email, "course_id": str(course_id)},
            )
            result.failures.append(UnitFailure.from_error(
                e, customer_email=customer_email, series_name=series_name, course_id=course_id,
            ))

        logger.info(
            "point_unlock_completed",
            extra={"customer_email": customer_email, "course_id": str(course_id),
                   "grants_created": result.grants_created, "failures": len(result.failures)},
        )
        return result

    def backfill_new_course(self, course_id: UUID, series_name: Optional[str] = None) -> ReconciliationResult:
        result = ReconciliationResult(mode=ReconciliationMode.NEW_COURSE_BACKFILL)
        try:
            series_name = self._validate_backfill(course_id, series_name)
        except SeriesValidationError as e:
            logger.warning("backfill_rejected", extra={"course_id": str(course_id), "error": str(e)})
            result.failures.append(UnitFailure.from_error(e, series_name=series_name, course_id=course_id))
            return result

        holders = list(dict.fromkeys(self.store.list_series_holders(series_name, exclude_course_id=course_id)))
        logger.info(
            "backfill_started",
            extra={"course_id": str(course_id), "series_name": series_name, "customers": len(holders)},
        )

        for customer_email in holders:
            result.customers_processed += 1
            result.pairs_processed += 1
            try:
                batch = self.grants.grant(customer_email, [course_id])
                result.add_grants(batch.created)
                if batch.created or batch.already_granted:
                    self._record_cascade(result, self.cascade.unlock_course(customer_email, course_id))
            except ReconciliationError as e:
                logger.warning(
                    "backfill_customer_failed",
                    extra={"customer_email": customer_email, "course_id": str(course_id), "error": str(e)},
                )
                result.failures.append(UnitFailure.from_error(
                    e, customer_email=customer_email, series_name=series_name, course_id=course_id,
                ))

        logger.info(
            "backfill_completed",
            extra={"course_id": str(course_id), "series_name": series_name,
                   "customers_processed": result.customers_processed,
                   "grants_created": result.grants_created, "failures": len(result.failures)},
        )
        return result

    def _validate_backfill(self, course_id: UUID, series_name: Optional[str]) -> str:
        course = self.store.get_course(course_id)
        if course is None:
            raise SeriesValidationError(f"Course {course_id} not found")
        if not course.is_published:
            raise SeriesValidationError(f"Course {course_id} is not published")

        course_series = normalize_series(course.series_name)
        if course_series is None:
            raise SeriesValidationError(f"Course {course_id} does not belong to a series")
        requested = normalize_series(series_name)
        if requested is not None and requested != course_series:
            raise SeriesValidationError(
                f"Course {course_id} belongs to series {course_series!r}, not {requested!r}"
            )
        return course_series

    def iter_repair(self) -> Iterator[PairOutcome]:
        """Yield one outcome per (customer, series) pair as soon as it is committed."""
        for customer_email, series_name in self.store.list_series_customers():
            yield self.repair_pair(customer_email, series_name)

    def repair_all(self, progress: Optional[Callable[[PairOutcome], None]] = None) -> ReconciliationResult:
        result = ReconciliationResult(mode=ReconciliationMode.COMPREHENSIVE_REPAIR)
        customers = set()
        logger.info("comprehensive_repair_started")

        for outcome in self.iter_repair():
            customers.add(outcome.customer_email)
            result.absorb(outcome)
            if progress is not None:
                progress(outcome)

        result.customers_processed = len(customers)
        logger.info(
            "comprehensive_repair_completed",
            extra={"customers_processed": result.customers_processed,
                   "pairs_processed": result.pairs_processed,
                   "grants_created": result.grants_created,
                   "chapters_unlocked": result.chapters_unlocked,
                   "failures": len(result.failures)},
        )
        return result

    def repair_pair(self, customer_email: str, series_name: str) -> PairOutcome:
        outcome = PairOutcome(customer_email=normalize_email(customer_email), series_name=series_name)
        try:
            resolution = self.resolver.resolve_series(series_name, customer_email)
            outcome.series_courses = len(resolution.courses)
            batch = self.grants.grant(resolution.customer_email, resolution.missing)
            outcome.grants = batch.created

            # cascade everything held, so unlocks missed earlier are repaired too
            held = resolution.satisfied | {e.course_id for e in batch.created} | set(batch.already_granted)
            for course in resolution.courses:
                if course.id not in held:
                    continue
                cascade = self.cascade.unlock_course(resolution.customer_email, course.id)
                outcome.chapters_unlocked += cascade.chapters_unlocked
                outcome.deferred_unlocks += int(cascade.deferred)
        except ReconciliationError as e:
            logger.warning(
                "repair_pair_failed",
                extra={"customer_email": outcome.customer_email, "series_name": series_name, "error": str(e)},
            )
            outcome.failure = UnitFailure.from_error(
                e, customer_email=outcome.customer_email, series_name=series_name,
            )
        return outcome

    @staticmethod
    def _record_cascade(result: ReconciliationResult, cascade: CascadeOutcome) -> None:
        result.chapters_unlocked += cascade.chapters_unlocked
        result.deferred_unlocks += int(cascade.deferred)
