from decimal import Decimal

import pytest

from ledger.models import CreateChapterRequest, CreateCourseRequest, PaymentStatus
from ledger.service import PlatformService
from ledger.store import LedgerStore, build_engine
from reconciliation import ReconciliationScheduler


@pytest.fixture
def store():
    store = LedgerStore(build_engine("sqlite://"))
    store.create_all()
    yield store
    store.engine.dispose()


@pytest.fixture
def service(store):
    return PlatformService(store)


@pytest.fixture
def scheduler(store):
    return ReconciliationScheduler(store)


@pytest.fixture
def make_course(store):
    def _make(title, price="49.00", series_name=None, part=1, published=True, chapters=2):
        course = store.add_course(CreateCourseRequest(
            title=title,
            price=Decimal(price),
            series_name=series_name,
            series_part=part,
            is_published=published,
        ))
        for index in range(chapters):
            store.add_chapter(course.id, CreateChapterRequest(title=f"{title} - Chapter {index + 1}", order_index=index))
        return course
    return _make


@pytest.fixture
def make_series(make_course):
    def _make(series_name, parts=3, price="49.00", chapters=2):
        return [
            make_course(f"{series_name} - Part {part}", price=price, series_name=series_name, part=part, chapters=chapters)
            for part in range(1, parts + 1)
        ]
    return _make


@pytest.fixture
def record_purchase(store):
    """Write a ledger entry directly, as the payment collaborator would have."""
    def _record(email, course, name="Test Customer", phone="+1-555-0100", status=PaymentStatus.PAID):
        return store.insert_entry(
            email,
            course.id,
            customer_name=name,
            customer_phone=phone,
            price_paid=course.price,
            payment_status=status,
            payment_method="CARD" if status == PaymentStatus.PAID else None,
        )
    return _record
