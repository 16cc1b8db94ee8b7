import logging
from collections import defaultdict
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from reconciliation import ChapterAccessCascade, IdentityLinker, ReconciliationResult, ReconciliationScheduler

from .config import Settings
from .models import (
    SERIES_UNLOCK,
    AccountResponse,
    Chapter,
    CheckoutRequest,
    ConfirmPaymentRequest,
    Course,
    CreateAccountRequest,
    CreateChapterRequest,
    CreateCourseRequest,
    CustomerLedgerResponse,
    CustomerSeriesStatus,
    LedgerEntry,
    PaymentStatus,
    SeriesAccessStatus,
    SeriesStatusReport,
    SeriesUnlockStats,
    normalize_email,
)
from .store import DuplicateRecordError, EntryExistsError, LedgerStore, build_engine

logger = logging.getLogger(__name__)

REOPENABLE_STATUSES = (PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED)


class LedgerServiceError(Exception):
    pass


class EntryNotFoundError(LedgerServiceError):
    pass


class CourseNotFoundError(LedgerServiceError):
    pass


class AccountExistsError(LedgerServiceError):
    pass


class AlreadyPurchasedError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


class CourseResponse(BaseModel):
    course: Course
    backfill: Optional[ReconciliationResult] = None
    message: str


class PaymentResponse(BaseModel):
    entry: LedgerEntry
    reconciliation: Optional[ReconciliationResult] = None
    message: str


class PlatformService:
    """
    The platform-side collaborators of the reconciliation engine: checkout,
    payment status changes, course publishing, account creation and the
    admin views. Each of them hands off to the scheduler at the point the
    engine's contracts require.
    """

    def __init__(self, store: Optional[LedgerStore] = None, scheduler: Optional[ReconciliationScheduler] = None):
        if store is None:
            store = LedgerStore(build_engine("sqlite://"))
            store.create_all()
        self.store = store
        self.scheduler = scheduler or ReconciliationScheduler(store)
        self.cascade = ChapterAccessCascade(store, IdentityLinker(store))

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlatformService":
        store = LedgerStore(build_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO))
        store.create_all()
        return cls(store)

    # Courses

    def create_course(self, request: CreateCourseRequest) -> CourseResponse:
        course = self.store.add_course(request)
        logger.info("course_created", extra={"course_id": str(course.id), "series_name": course.series_name})
        if course.is_published and course.series_name:
            return CourseResponse(
                course=course,
                backfill=self.scheduler.backfill_new_course(course.id, course.series_name),
                message="Course published and series holders backfilled",
            )
        return CourseResponse(course=course, message="Course created")

    def publish_course(self, course_id: UUID) -> CourseResponse:
        existing = self._require_course(course_id)
        if existing.is_published:
            return CourseResponse(course=existing, message="Course already published")

        course = self.store.publish_course(course_id)
        if course is None:
            raise CourseNotFoundError(f"Course {course_id} not found")
        if course.series_name:
            return CourseResponse(
                course=course,
                backfill=self.scheduler.backfill_new_course(course.id, course.series_name),
                message="Course published and series holders backfilled",
            )
        return CourseResponse(course=course, message="Course published")

    def add_chapter(self, course_id: UUID, request: CreateChapterRequest) -> Chapter:
        self._require_course(course_id)
        try:
            return self.store.add_chapter(course_id, request)
        except DuplicateRecordError as e:
            raise LedgerServiceError(str(e)) from e

    def _require_course(self, course_id: UUID) -> Course:
        course = self.store.get_course(course_id)
        if course is None:
            raise CourseNotFoundError(f"Course {course_id} not found")
        return course

    # Checkout and payment status

    def checkout(self, request: CheckoutRequest) -> LedgerEntry:
        course = self._require_course(request.course_id)
        if not course.is_published:
            raise LedgerServiceError(f"Course {course.id} is not available for purchase")

        try:
            return self.store.insert_entry(
                request.customer_email,
                course.id,
                customer_name=request.customer_name,
                customer_phone=request.customer_phone,
                price_paid=course.price,
                payment_status=PaymentStatus.PENDING,
            )
        except EntryExistsError as conflict:
            existing = conflict.entry

        if existing.payment_status == PaymentStatus.PENDING:
            return existing
        if existing.payment_status == PaymentStatus.PAID:
            raise AlreadyPurchasedError(f"{request.customer_email} already holds course {course.id}")

        reopened = self.store.transition_entry(
            existing.id,
            REOPENABLE_STATUSES,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            price_paid=course.price,
            payment_status=PaymentStatus.PENDING,
            payment_method=None,
            transaction_id=None,
        )
        if reopened is None:
            raise AlreadyPurchasedError(f"Checkout for course {course.id} changed concurrently; retry")
        return reopened

    def confirm_payment(
        self,
        entry_id: UUID,
        request: Optional[ConfirmPaymentRequest] = None,
        run_reconciliation: bool = True,
    ) -> PaymentResponse:
        """
        PENDING -> PAID. The conditional update means exactly one caller wins
        the transition, and only that caller triggers the point unlock.
        With run_reconciliation=False the caller schedules it instead.
        """
        request = request or ConfirmPaymentRequest()
        entry = self._transition(
            entry_id,
            (PaymentStatus.PENDING,),
            payment_status=PaymentStatus.PAID,
            payment_method=request.payment_method,
            transaction_id=request.transaction_id,
        )
        logger.info("payment_confirmed", extra={"entry_id": str(entry_id), "course_id": str(entry.course_id)})

        if not run_reconciliation:
            return PaymentResponse(entry=entry, message="Payment confirmed")
        return PaymentResponse(
            entry=entry,
            reconciliation=self.scheduler.on_payment_confirmed(entry.customer_email, entry.course_id),
            message="Payment confirmed",
        )

    def fail_payment(self, entry_id: UUID) -> LedgerEntry:
        return self._transition(entry_id, (PaymentStatus.PENDING,), payment_status=PaymentStatus.FAILED)

    def cancel_checkout(self, entry_id: UUID) -> LedgerEntry:
        return self._transition(entry_id, (PaymentStatus.PENDING,), payment_status=PaymentStatus.CANCELLED)

    def refund(self, entry_id: UUID) -> LedgerEntry:
        """PAID -> REFUNDED. Series grants and chapter access are kept."""
        entry = self._transition(entry_id, (PaymentStatus.PAID,), payment_status=PaymentStatus.REFUNDED)
        logger.info("payment_refunded", extra={"entry_id": str(entry_id), "course_id": str(entry.course_id)})
        return entry

    def _transition(self, entry_id: UUID, from_statuses, **values) -> LedgerEntry:
        entry = self.store.transition_entry(entry_id, from_statuses, **values)
        if entry is not None:
            return entry

        current = self.store.get_entry(entry_id)
        if current is None:
            raise EntryNotFoundError(f"Ledger entry {entry_id} not found")
        target = values["payment_status"]
        raise InvalidStateTransitionError(
            f"Cannot move ledger entry from {current.payment_status.value} to {target.value}"
        )

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(f"Ledger entry {entry_id} not found")
        return entry

    def get_customer_ledger(self, customer_email: str) -> CustomerLedgerResponse:
        customer_email = normalize_email(customer_email)
        entries = self.store.list_entries(customer_email)
        return CustomerLedgerResponse(customer_email=customer_email, entries=entries, total_count=len(entries))

    # Accounts

    def create_account(self, request: CreateAccountRequest) -> AccountResponse:
        try:
            account = self.store.add_account(request.email, request.display_name)
        except DuplicateRecordError as e:
            raise AccountExistsError(str(e)) from e

        # guests who bought before registering get their deferred unlocks now
        unlocked = 0
        for entry in self.store.list_paid_entries(account.email):
            unlocked += self.cascade.unlock_for_account(account.id, entry.course_id).chapters_unlocked

        logger.info("account_created", extra={"account_id": str(account.id), "chapters_unlocked": unlocked})
        return AccountResponse(account=account, chapters_unlocked=unlocked, message="Account created")

    # Admin

    def run_comprehensive_check(self) -> ReconciliationResult:
        return self.scheduler.repair_all()

    def series_status(self, customer_email: Optional[str] = None) -> SeriesStatusReport:
        if customer_email is not None:
            customer_email = normalize_email(customer_email)

        grouped: dict[str, dict[str, list[LedgerEntry]]] = defaultdict(lambda: defaultdict(list))
        names: dict[str, str] = {}
        for entry, course in self.store.list_paid_series_entries(customer_email):
            grouped[entry.customer_email][course.series_name].append(entry)
            names.setdefault(entry.customer_email, entry.customer_name)

        series_courses: dict[str, list[Course]] = {}
        unlock_totals: dict[str, int] = defaultdict(int)
        customers = []
        for email, by_series in grouped.items():
            statuses = []
            for series_name, entries in by_series.items():
                if series_name not in series_courses:
                    series_courses[series_name] = self.store.list_series_courses(series_name)
                granted = {e.course_id for e in entries}
                unlocked_by_series = sum(1 for e in entries if e.payment_method == SERIES_UNLOCK)
                unlock_totals[series_name] += unlocked_by_series
                statuses.append(SeriesAccessStatus(
                    series_name=series_name,
                    total_courses=len(series_courses[series_name]),
                    granted_courses=len(granted),
                    unlocked_by_series=unlocked_by_series,
                    missing_course_ids=[c.id for c in series_courses[series_name] if c.id not in granted],
                ))
            customers.append(CustomerSeriesStatus(customer_email=email, customer_name=names.get(email), series=statuses))

        return SeriesStatusReport(
            total_customers=len(customers),
            total_series_unlocks=sum(unlock_totals.values()),
            customers=customers,
            series_stats=[
                SeriesUnlockStats(series_name=name, total_unlocks=count)
                for name, count in sorted(unlock_totals.items())
            ],
        )
