"""
Ledger Store

Data access for courses, chapters, accounts, ledger entries and chapter
access. Every write runs in its own short transaction so a batch caller that
fails halfway keeps whatever it already committed.

The store never reads before it writes to decide whether a grant exists:
grants and unlocks are plain inserts, and the unique constraints on
(customer_email, course_id) and (account_id, chapter_id) turn a duplicate into
an IntegrityError that is then resolved with a conditional update.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence
from uuid import UUID

from sqlalchemy import case, create_engine, event, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    SERIES_UNLOCK,
    Account,
    Chapter,
    ChapterAccess,
    Course,
    CreateChapterRequest,
    CreateCourseRequest,
    LedgerEntry,
    PaymentStatus,
    normalize_email,
)
from .schema import (
    AccountRecord,
    Base,
    ChapterAccessRecord,
    ChapterRecord,
    CourseRecord,
    LedgerEntryRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

# Rows in these states do not entitle anyone, so a grant may take them over.
# A promoted PENDING row can no longer be confirmed, so it is never charged.
PROMOTABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.CANCELLED)


class LedgerStoreError(Exception):
    pass


class PersistenceError(LedgerStoreError):
    """The backing database could not complete the operation."""


class DuplicateRecordError(LedgerStoreError):
    pass


class EntryExistsError(DuplicateRecordError):
    def __init__(self, entry: LedgerEntry):
        self.entry = entry
        super().__init__(
            f"{entry.customer_email} already holds an entry for course {entry.course_id} "
            f"({entry.payment_status.value})"
        )


class AlreadyGrantedError(EntryExistsError):
    pass


def build_engine(database_url: str, echo: bool = False) -> Engine:
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, echo=echo, **kwargs)

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class LedgerStore:
    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    def create_all(self) -> None:
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not create tables: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error("ledger_store_unavailable", extra={"error": str(e)})
            raise PersistenceError(str(e)) from e

    # Courses and chapters

    def add_course(self, request: CreateCourseRequest) -> Course:
        with self._transaction() as session:
            record = CourseRecord(
                title=request.title,
                price=request.price,
                is_published=request.is_published,
                series_name=request.series_name,
                series_part=request.series_part,
            )
            session.add(record)
            session.flush()
            return Course.model_validate(record)

    def get_course(self, course_id: UUID) -> Optional[Course]:
        with self._transaction() as session:
            record = session.get(CourseRecord, course_id)
            return Course.model_validate(record) if record else None

    def publish_course(self, course_id: UUID) -> Optional[Course]:
        with self._transaction() as session:
            record = session.get(CourseRecord, course_id)
            if record is None:
                return None
            record.is_published = True
            session.flush()
            return Course.model_validate(record)

    def list_series_courses(self, series_name: str) -> list[Course]:
        """Published courses of a series, ascending by part."""
        with self._transaction() as session:
            records = session.scalars(
                select(CourseRecord)
                .where(CourseRecord.series_name == series_name, CourseRecord.is_published.is_(True))
                .order_by(CourseRecord.series_part, CourseRecord.created_at, CourseRecord.title)
            ).all()
            return [Course.model_validate(r) for r in records]

    def add_chapter(self, course_id: UUID, request: CreateChapterRequest) -> Chapter:
        try:
            with self._transaction() as session:
                record = ChapterRecord(
                    course_id=course_id,
                    title=request.title,
                    order_index=request.order_index,
                    is_unlocked_by_default=request.is_unlocked_by_default,
                )
                session.add(record)
                session.flush()
                return Chapter.model_validate(record)
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"Course {course_id} already has a chapter at position {request.order_index}"
            ) from e

    def list_chapters(self, course_id: UUID) -> list[Chapter]:
        with self._transaction() as session:
            records = session.scalars(
                select(ChapterRecord)
                .where(ChapterRecord.course_id == course_id)
                .order_by(ChapterRecord.order_index)
            ).all()
            return [Chapter.model_validate(r) for r in records]

    # Accounts

    def add_account(self, email: str, display_name: Optional[str] = None) -> Account:
        email = normalize_email(email)
        try:
            with self._transaction() as session:
                record = AccountRecord(email=email, display_name=display_name)
                session.add(record)
                session.flush()
                return Account.model_validate(record)
        except IntegrityError as e:
            raise DuplicateRecordError(f"Account for {email} already exists") from e

    def get_account_by_email(self, email: str) -> Optional[Account]:
        email = normalize_email(email)
        with self._transaction() as session:
            record = session.scalars(
                select(AccountRecord).where(AccountRecord.email == email)
            ).first()
            return Account.model_validate(record) if record else None

    # Ledger entries

    def insert_entry(
        self,
        customer_email: str,
        course_id: UUID,
        customer_name: str,
        price_paid,
        payment_status: PaymentStatus,
        customer_phone: Optional[str] = None,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> LedgerEntry:
        customer_email = normalize_email(customer_email)
        try:
            with self._transaction() as session:
                record = LedgerEntryRecord(
                    customer_email=customer_email,
                    course_id=course_id,
                    customer_name=customer_name,
                    customer_phone=customer_phone,
                    price_paid=price_paid,
                    payment_status=payment_status.value,
                    payment_method=payment_method,
                    transaction_id=transaction_id,
                )
                session.add(record)
                session.flush()
                return LedgerEntry.model_validate(record)
        except IntegrityError as e:
            existing = self.get_entry_for(customer_email, course_id)
            if existing is None:
                raise PersistenceError(f"Ledger insert rejected for course {course_id}: {e.orig}") from e
            raise EntryExistsError(existing) from e

    def insert_grant(
        self,
        customer_email: str,
        course_id: UUID,
        customer_name: str,
        customer_phone: Optional[str] = None,
    ) -> LedgerEntry:
        """
        Insert a zero-price SERIES_UNLOCK entry, or take over a PENDING, FAILED
        or CANCELLED row for the same pair. Raises AlreadyGrantedError when the
        pair is PAID or REFUNDED.
        """
        customer_email = normalize_email(customer_email)
        values = {
            "customer_name": customer_name,
            "customer_phone": customer_phone,
            "price_paid": 0,
            "payment_status": PaymentStatus.PAID,
            "payment_method": SERIES_UNLOCK,
            "transaction_id": f"series_unlock:{course_id}",
        }
        try:
            return self.insert_entry(customer_email, course_id, **values)
        except EntryExistsError as conflict:
            if conflict.entry.payment_status not in PROMOTABLE_STATUSES:
                raise AlreadyGrantedError(conflict.entry) from conflict
            promoted = self.transition_pair(customer_email, course_id, PROMOTABLE_STATUSES, **values)
            if promoted is None:
                # lost a race with another writer; report whatever won
                current = self.get_entry_for(customer_email, course_id)
                raise AlreadyGrantedError(current or conflict.entry) from conflict
            logger.info(
                "ledger_entry_promoted",
                extra={"customer_email": customer_email, "course_id": str(course_id),
                       "previous_status": conflict.entry.payment_status.value},
            )
            return promoted

    def transition_entry(
        self,
        entry_id: UUID,
        from_statuses: Sequence[PaymentStatus],
        **values,
    ) -> Optional[LedgerEntry]:
        """Conditionally update one entry; None when it is not in from_statuses."""
        return self._transition(LedgerEntryRecord.id == entry_id, from_statuses, values)

    def transition_pair(
        self,
        customer_email: str,
        course_id: UUID,
        from_statuses: Sequence[PaymentStatus],
        **values,
    ) -> Optional[LedgerEntry]:
        customer_email = normalize_email(customer_email)
        return self._transition(
            (LedgerEntryRecord.customer_email == customer_email) & (LedgerEntryRecord.course_id == course_id),
            from_statuses,
            values,
        )

    def _transition(self, criteria, from_statuses, values: dict) -> Optional[LedgerEntry]:
        if isinstance(values.get("payment_status"), PaymentStatus):
            values["payment_status"] = values["payment_status"].value
        values["updated_at"] = utcnow()
        with self._transaction() as session:
            result = session.execute(
                update(LedgerEntryRecord)
                .where(criteria, LedgerEntryRecord.payment_status.in_([s.value for s in from_statuses]))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            record = session.scalars(select(LedgerEntryRecord).where(criteria)).one()
            return LedgerEntry.model_validate(record)

    def get_entry(self, entry_id: UUID) -> Optional[LedgerEntry]:
        with self._transaction() as session:
            record = session.get(LedgerEntryRecord, entry_id)
            return LedgerEntry.model_validate(record) if record else None

    def get_entry_for(self, customer_email: str, course_id: UUID) -> Optional[LedgerEntry]:
        customer_email = normalize_email(customer_email)
        with self._transaction() as session:
            record = session.scalars(
                select(LedgerEntryRecord).where(
                    LedgerEntryRecord.customer_email == customer_email,
                    LedgerEntryRecord.course_id == course_id,
                )
            ).first()
            return LedgerEntry.model_validate(record) if record else None

    def list_entries(self, customer_email: str) -> list[LedgerEntry]:
        customer_email = normalize_email(customer_email)
        with self._transaction() as session:
            records = session.scalars(
                select(LedgerEntryRecord)
                .where(LedgerEntryRecord.customer_email == customer_email)
                .order_by(LedgerEntryRecord.created_at.desc())
            ).all()
            return [LedgerEntry.model_validate(r) for r in records]

    def list_paid_entries(self, customer_email: str) -> list[LedgerEntry]:
        return [e for e in self.list_entries(customer_email) if e.payment_status == PaymentStatus.PAID]

    def find_source_entry(self, customer_email: str) -> Optional[LedgerEntry]:
        """Most recent PAID entry for the customer, real purchases first."""
        customer_email = normalize_email(customer_email)
        synthetic_last = case((LedgerEntryRecord.payment_method == SERIES_UNLOCK, 1), else_=0)
        with self._transaction() as session:
            record = session.scalars(
                select(LedgerEntryRecord)
                .where(
                    LedgerEntryRecord.customer_email == customer_email,
                    LedgerEntryRecord.payment_status == PaymentStatus.PAID.value,
                )
                .order_by(synthetic_last, LedgerEntryRecord.created_at.desc())
                .limit(1)
            ).first()
            return LedgerEntry.model_validate(record) if record else None

    def paid_course_ids(self, customer_email: str, course_ids: Sequence[UUID]) -> set[UUID]:
        if not course_ids:
            return set()
        customer_email = normalize_email(customer_email)
        with self._transaction() as session:
            rows = session.scalars(
                select(LedgerEntryRecord.course_id).where(
                    LedgerEntryRecord.customer_email == customer_email,
                    LedgerEntryRecord.payment_status == PaymentStatus.PAID.value,
                    LedgerEntryRecord.course_id.in_(list(course_ids)),
                )
            ).all()
            return set(rows)

    def _paid_series_query(self):
        return (
            select(LedgerEntryRecord, CourseRecord)
            .join(CourseRecord, CourseRecord.id == LedgerEntryRecord.course_id)
            .where(
                LedgerEntryRecord.payment_status == PaymentStatus.PAID.value,
                CourseRecord.is_published.is_(True),
                CourseRecord.series_name.is_not(None),
            )
        )

    def list_series_holders(self, series_name: str, exclude_course_id: Optional[UUID] = None) -> list[str]:
        """Distinct emails holding PAID for a published course of the series, ascending."""
        query = (
            select(LedgerEntryRecord.customer_email)
            .join(CourseRecord, CourseRecord.id == LedgerEntryRecord.course_id)
            .where(
                LedgerEntryRecord.payment_status == PaymentStatus.PAID.value,
                CourseRecord.is_published.is_(True),
                CourseRecord.series_name == series_name,
            )
            .distinct()
            .order_by(LedgerEntryRecord.customer_email)
        )
        if exclude_course_id is not None:
            query = query.where(CourseRecord.id != exclude_course_id)
        with self._transaction() as session:
            return list(session.scalars(query).all())

    def list_series_customers(self) -> list[tuple[str, str]]:
        """Distinct (email, series) pairs with a PAID series entry, ascending."""
        query = (
            select(LedgerEntryRecord.customer_email, CourseRecord.series_name)
            .join(CourseRecord, CourseRecord.id == LedgerEntryRecord.course_id)
            .where(
                LedgerEntryRecord.payment_status == PaymentStatus.PAID.value,
                CourseRecord.is_published.is_(True),
                CourseRecord.series_name.is_not(None),
            )
            .distinct()
            .order_by(LedgerEntryRecord.customer_email, CourseRecord.series_name)
        )
        with self._transaction() as session:
            return [(email, series) for email, series in session.execute(query).all()]

    def list_paid_series_entries(self, customer_email: Optional[str] = None) -> list[tuple[LedgerEntry, Course]]:
        query = self._paid_series_query().order_by(
            LedgerEntryRecord.customer_email, CourseRecord.series_name, CourseRecord.series_part
        )
        if customer_email is not None:
            query = query.where(LedgerEntryRecord.customer_email == normalize_email(customer_email))
        with self._transaction() as session:
            return [
                (LedgerEntry.model_validate(entry), Course.model_validate(course))
                for entry, course in session.execute(query).all()
            ]

    # Chapter access

    def unlock_chapter(self, account_id: UUID, chapter_id: UUID) -> bool:
        """Insert-if-absent an unlocked access row. True only when this call unlocked it."""
        now = utcnow()
        try:
            with self._transaction() as session:
                session.add(ChapterAccessRecord(
                    account_id=account_id, chapter_id=chapter_id, is_unlocked=True, unlocked_at=now,
                ))
            return True
        except IntegrityError:
            logger.debug(
                "chapter_access_exists",
                extra={"account_id": str(account_id), "chapter_id": str(chapter_id)},
            )

        # only ever locked -> unlocked
        with self._transaction() as session:
            result = session.execute(
                update(ChapterAccessRecord)
                .where(
                    ChapterAccessRecord.account_id == account_id,
                    ChapterAccessRecord.chapter_id == chapter_id,
                    ChapterAccessRecord.is_unlocked.is_(False),
                )
                .values(is_unlocked=True, unlocked_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def get_chapter_access(self, account_id: UUID, chapter_id: UUID) -> Optional[ChapterAccess]:
        with self._transaction() as session:
            record = session.scalars(
                select(ChapterAccessRecord).where(
                    ChapterAccessRecord.account_id == account_id,
                    ChapterAccessRecord.chapter_id == chapter_id,
                )
            ).first()
            return ChapterAccess.model_validate(record) if record else None

    def list_chapter_access(self, account_id: UUID) -> list[ChapterAccess]:
        with self._transaction() as session:
            records = session.scalars(
                select(ChapterAccessRecord).where(ChapterAccessRecord.account_id == account_id)
            ).all()
            return [ChapterAccess.model_validate(r) for r in records]
