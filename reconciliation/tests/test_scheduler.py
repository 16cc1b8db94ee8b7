import pytest
from decimal import Decimal
from uuid import UUID

from ledger.models import SERIES_UNLOCK, CreateAccountRequest, PaymentStatus
from ledger.service import InvalidStateTransitionError
from ledger.store import PersistenceError
from reconciliation import EntitlementResolver, ReconciliationMode


JANE = "jane@example.com"
UNKNOWN_COURSE = UUID("00000000-0000-0000-0000-000000000000")


def assert_series_complete(store, series_name, email):
    resolution = EntitlementResolver(store).resolve_series(series_name, email)
    assert resolution.missing == []


class TestComprehensiveRepair:
    """Tests for the full (customer, series) sweep."""

    def test_paint_correction_repair(self, store, scheduler, make_series, record_purchase):
        """Test the canonical case: one paid part, two granted, all chapters unlocked."""
        part1, part2, part3 = make_series("Paint Correction", chapters=2)
        record_purchase(JANE, part1)
        account = store.add_account(JANE)

        result = scheduler.repair_all()

        assert result.mode == ReconciliationMode.COMPREHENSIVE_REPAIR
        assert result.customers_processed == 1
        assert result.pairs_processed == 1
        assert result.grants_created == 2
        assert result.chapters_unlocked == 6
        assert result.succeeded
        assert {g.course_id for g in result.grants} == {part2.id, part3.id}
        assert all(g.payment_method == SERIES_UNLOCK for g in result.grants)
        assert len(store.list_chapter_access(account.id)) == 6

    def test_rerun_is_a_no_op(self, store, scheduler, make_series, record_purchase):
        """Test that a second sweep over an unchanged catalog changes nothing."""
        part1, _, _ = make_series("Paint Correction")
        record_purchase(JANE, part1)
        store.add_account(JANE)
        scheduler.repair_all()

        rerun = scheduler.repair_all()

        assert rerun.grants_created == 0
        assert rerun.chapters_unlocked == 0
        assert len(store.list_entries(JANE)) == 3

    def test_guest_unlocks_deferred_until_account(self, store, service, scheduler, make_series, record_purchase):
        """Test that a guest gets grants now and chapters when they register."""
        part1, _, _ = make_series("Paint Correction", chapters=2)
        record_purchase(JANE, part1)

        result = scheduler.repair_all()

        assert result.grants_created == 2
        assert result.chapters_unlocked == 0
        assert result.deferred_unlocks == 3

        response = service.create_account(CreateAccountRequest(email=JANE))
        assert response.chapters_unlocked == 6

    def test_repairs_missed_chapter_unlocks(self, store, scheduler, make_series, record_purchase):
        """Test that chapters of an already held course are unlocked if they were missed."""
        part1, part2 = make_series("Paint Correction", parts=2, chapters=2)
        record_purchase(JANE, part1)
        record_purchase(JANE, part2)
        store.add_account(JANE)

        result = scheduler.repair_all()

        assert result.grants_created == 0
        assert result.chapters_unlocked == 4

    def test_every_pair_completed(self, store, scheduler, make_series, record_purchase):
        """Test completeness across several customers and series."""
        paint = make_series("Paint Correction", parts=3)
        detailing = make_series("Detailing Basics", parts=2)
        record_purchase(JANE, paint[0])
        record_purchase(JANE, detailing[1])
        record_purchase("bob@example.com", detailing[0])

        result = scheduler.repair_all()

        assert result.customers_processed == 2
        assert result.pairs_processed == 3
        assert result.grants_created == 4
        assert_series_complete(store, "Paint Correction", JANE)
        assert_series_complete(store, "Detailing Basics", JANE)
        assert_series_complete(store, "Detailing Basics", "bob@example.com")
        assert store.get_entry_for("bob@example.com", paint[0].id) is None

    def test_one_failing_customer_does_not_stop_the_rest(
        self, store, scheduler, make_series, record_purchase, monkeypatch
    ):
        """Test per-unit isolation: one failure is recorded, the others still commit."""
        part1, _, _ = make_series("Paint Correction")
        for email in ("a@example.com", "b@example.com", "c@example.com"):
            record_purchase(email, part1)

        find_source_entry = store.find_source_entry
        monkeypatch.setattr(
            store,
            "find_source_entry",
            lambda email: None if email == "b@example.com" else find_source_entry(email),
        )

        result = scheduler.repair_all()

        assert result.customers_processed == 3
        assert result.grants_created == 4
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.customer_email == "b@example.com"
        assert failure.series_name == "Paint Correction"
        assert failure.error_type == "SourceEntryNotFoundError"
        assert len(store.list_entries("b@example.com")) == 1

    def test_persistence_error_propagates(self, store, scheduler, make_series, record_purchase, monkeypatch):
        """Test that a store outage aborts the run instead of being recorded per unit."""
        part1, _, _ = make_series("Paint Correction")
        record_purchase(JANE, part1)

        def broken(email):
            raise PersistenceError("database unavailable")

        monkeypatch.setattr(store, "find_source_entry", broken)

        with pytest.raises(PersistenceError):
            scheduler.repair_all()

    def test_iteration_order_and_progress(self, store, scheduler, make_series, record_purchase):
        """Test that pairs are processed in email order and reported as they finish."""
        part1, _ = make_series("Paint Correction", parts=2)
        for email in ("zed@example.com", "amy@example.com", "bob@example.com"):
            record_purchase(email, part1)
        seen = []

        scheduler.repair_all(progress=lambda outcome: seen.append(outcome.customer_email))

        assert seen == ["amy@example.com", "bob@example.com", "zed@example.com"]

    def test_iter_repair_commits_each_pair(self, store, scheduler, make_series, record_purchase):
        """Test that each pair is committed before the next one is processed."""
        part1, part2 = make_series("Paint Correction", parts=2)
        record_purchase("amy@example.com", part1)
        record_purchase("bob@example.com", part1)

        outcomes = scheduler.iter_repair()
        first = next(outcomes)

        assert first.customer_email == "amy@example.com"
        assert store.get_entry_for("amy@example.com", part2.id) is not None
        assert store.get_entry_for("bob@example.com", part2.id) is None
        assert [o.customer_email for o in outcomes] == ["bob@example.com"]

    def test_refunded_part_not_regranted(self, store, service, scheduler, make_series, record_purchase):
        """Test that a refund keeps granted access and is not overwritten by later repairs."""
        part1, part2, _ = make_series("Paint Correction")
        purchase = record_purchase(JANE, part1)
        account = store.add_account(JANE)
        scheduler.repair_all()

        service.refund(purchase.id)
        result = scheduler.repair_all()

        assert result.grants_created == 0
        assert result.succeeded
        assert store.get_entry(purchase.id).payment_status == PaymentStatus.REFUNDED
        assert store.get_entry_for(JANE, part2.id).payment_status == PaymentStatus.PAID
        access = store.list_chapter_access(account.id)
        assert len(access) == 6
        assert all(a.is_unlocked for a in access)

    def test_failed_checkout_promoted_to_grant(self, store, scheduler, make_series, record_purchase):
        """Test that an abandoned checkout does not block the series grant."""
        part1, part2 = make_series("Paint Correction", parts=2)
        record_purchase(JANE, part1)
        failed = record_purchase(JANE, part2, status=PaymentStatus.FAILED)

        result = scheduler.repair_all()

        assert result.grants_created == 1
        entry = store.get_entry_for(JANE, part2.id)
        assert entry.id == failed.id
        assert entry.payment_status == PaymentStatus.PAID
        assert entry.payment_method == SERIES_UNLOCK

    def test_abandoned_checkout_granted_and_not_chargeable(
        self, store, service, scheduler, make_series, record_purchase
    ):
        """Test that an open checkout for an entitled part converges to the free grant."""
        part1, part2, part3 = make_series("Paint Correction")
        record_purchase(JANE, part1)
        pending = record_purchase(JANE, part2, status=PaymentStatus.PENDING)

        result = scheduler.repair_all()

        assert result.grants_created == 2
        assert result.succeeded
        entry = store.get_entry(pending.id)
        assert entry.payment_status == PaymentStatus.PAID
        assert entry.payment_method == SERIES_UNLOCK
        assert entry.price_paid == Decimal("0")
        assert_series_complete(store, "Paint Correction", JANE)

        rerun = scheduler.repair_all()
        assert rerun.grants_created == 0
        assert rerun.succeeded

        with pytest.raises(InvalidStateTransitionError):
            service.confirm_payment(pending.id)

    def test_mixed_case_purchase_is_a_source(self, store, scheduler, make_series, record_purchase):
        """Test that a purchase recorded with a mixed-case email still sources grants."""
        part1, part2 = make_series("Paint Correction", parts=2)
        record_purchase("Jane@Example.COM", part1)

        result = scheduler.repair_all()

        assert result.succeeded
        assert result.grants_created == 1
        assert store.get_entry_for(JANE, part2.id).payment_method == SERIES_UNLOCK

    def test_empty_ledger(self, scheduler):
        """Test that a sweep over an empty ledger does nothing."""
        result = scheduler.repair_all()
        assert result.customers_processed == 0
        assert result.pairs_processed == 0


class TestNewCourseBackfill:
    """Tests for granting a newly published course to existing series holders."""

    def test_detailing_basics_backfill(self, store, scheduler, make_course, make_series, record_purchase):
        """Test that every holder of the series gets the new part."""
        part1, part2 = make_series("Detailing Basics", parts=2)
        record_purchase(JANE, part1)
        record_purchase("bob@example.com", part2)
        store.add_account("bob@example.com")
        part3 = make_course("Detailing Basics - Part 3", series_name="Detailing Basics", part=3, published=False, chapters=3)
        store.publish_course(part3.id)

        result = scheduler.backfill_new_course(part3.id, "Detailing Basics")

        assert result.mode == ReconciliationMode.NEW_COURSE_BACKFILL
        assert result.customers_processed == 2
        assert result.grants_created == 2
        assert result.chapters_unlocked == 3
        assert result.deferred_unlocks == 1
        for email in (JANE, "bob@example.com"):
            entry = store.get_entry_for(email, part3.id)
            assert entry.payment_method == SERIES_UNLOCK
            assert entry.payment_status == PaymentStatus.PAID

    def test_one_failing_holder_does_not_stop_the_rest(
        self, store, scheduler, make_course, make_series, record_purchase, monkeypatch
    ):
        """Test per-customer isolation: the other holders still get the new course."""
        part1 = make_series("Detailing Basics", parts=1)[0]
        for email in ("a@example.com", "b@example.com", "c@example.com"):
            record_purchase(email, part1)
        part2 = make_course("Detailing Basics - Part 2", series_name="Detailing Basics", part=2)

        find_source_entry = store.find_source_entry
        monkeypatch.setattr(
            store,
            "find_source_entry",
            lambda email: None if email == "b@example.com" else find_source_entry(email),
        )

        result = scheduler.backfill_new_course(part2.id, "Detailing Basics")

        assert result.customers_processed == 3
        assert result.grants_created == 2
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.customer_email == "b@example.com"
        assert failure.course_id == part2.id
        assert failure.error_type == "SourceEntryNotFoundError"
        assert store.get_entry_for("a@example.com", part2.id).payment_method == SERIES_UNLOCK
        assert store.get_entry_for("c@example.com", part2.id).payment_method == SERIES_UNLOCK
        assert store.get_entry_for("b@example.com", part2.id) is None

    def test_holder_of_several_parts_processed_once(self, store, scheduler, make_course, make_series, record_purchase):
        """Test that a customer holding several parts is backfilled once."""
        part1, part2 = make_series("Detailing Basics", parts=2)
        record_purchase(JANE, part1)
        record_purchase(JANE, part2)
        part3 = make_course("Detailing Basics - Part 3", series_name="Detailing Basics", part=3)

        result = scheduler.backfill_new_course(part3.id)

        assert result.customers_processed == 1
        assert result.grants_created == 1

    def test_backfill_is_idempotent(self, store, scheduler, make_course, make_series, record_purchase):
        """Test that a second backfill of the same course grants nothing."""
        part1, _ = make_series("Detailing Basics", parts=2)
        record_purchase(JANE, part1)
        part3 = make_course("Detailing Basics - Part 3", series_name="Detailing Basics", part=3)
        scheduler.backfill_new_course(part3.id)

        rerun = scheduler.backfill_new_course(part3.id)

        assert rerun.grants_created == 0
        assert rerun.succeeded

    def test_other_series_untouched(self, store, scheduler, make_course, make_series, record_purchase):
        """Test that holders of a different series are not backfilled."""
        paint = make_series("Paint Correction", parts=1)
        record_purchase("bob@example.com", paint[0])
        part1 = make_series("Detailing Basics", parts=1)[0]
        record_purchase(JANE, part1)
        part2 = make_course("Detailing Basics - Part 2", series_name="Detailing Basics", part=2)

        result = scheduler.backfill_new_course(part2.id)

        assert result.customers_processed == 1
        assert store.get_entry_for("bob@example.com", part2.id) is None

    def test_unknown_course_rejected(self, scheduler):
        """Test that an unknown course is recorded as a validation failure."""
        result = scheduler.backfill_new_course(UNKNOWN_COURSE)

        assert result.customers_processed == 0
        assert [f.error_type for f in result.failures] == ["SeriesValidationError"]

    def test_unpublished_course_rejected(self, store, scheduler, make_course, make_series, record_purchase):
        """Test that drafts are never backfilled."""
        part1 = make_series("Detailing Basics", parts=1)[0]
        record_purchase(JANE, part1)
        draft = make_course("Detailing Basics - Part 2", series_name="Detailing Basics", part=2, published=False)

        result = scheduler.backfill_new_course(draft.id)

        assert result.failures[0].error_type == "SeriesValidationError"
        assert store.get_entry_for(JANE, draft.id) is None

    def test_series_mismatch_rejected(self, scheduler, make_course):
        """Test that a course cannot be backfilled under another series name."""
        course = make_course("Detailing Basics - Part 2", series_name="Detailing Basics", part=2)

        result = scheduler.backfill_new_course(course.id, "Paint Correction")

        assert len(result.failures) == 1
        assert result.grants_created == 0

    def test_course_without_series_rejected(self, scheduler, make_course):
        """Test that a standalone course is not backfilled."""
        course = make_course("Standalone Course")

        result = scheduler.backfill_new_course(course.id)

        assert result.failures[0].course_id == course.id


class TestPointUnlock:
    """Tests for reconciliation right after a payment is confirmed."""

    def test_grants_rest_of_series(self, store, scheduler, make_series, record_purchase):
        """Test that a confirmed payment grants and unlocks the rest of the series."""
        part1, part2, part3 = make_series("Paint Correction", chapters=2)
        record_purchase(JANE, part1)
        store.add_account(JANE)

        result = scheduler.on_payment_confirmed(JANE, part1.id)

        assert result.mode == ReconciliationMode.POINT_UNLOCK
        assert result.customers_processed == 1
        assert result.pairs_processed == 1
        assert result.grants_created == 2
        assert result.chapters_unlocked == 6

    def test_non_series_course_unlocks_only_itself(self, store, scheduler, make_course, record_purchase):
        """Test that a standalone purchase only unlocks its own chapters."""
        course = make_course("Standalone Course", chapters=2)
        record_purchase(JANE, course)
        store.add_account(JANE)

        result = scheduler.on_payment_confirmed(JANE, course.id)

        assert result.pairs_processed == 0
        assert result.grants_created == 0
        assert result.chapters_unlocked == 2
        assert result.succeeded

    def test_unknown_course_never_raises(self, scheduler):
        """Test that a failure is recorded rather than raised to the payment flow."""
        result = scheduler.on_payment_confirmed(JANE, UNKNOWN_COURSE)

        assert len(result.failures) == 1
        assert result.failures[0].error_type == "SeriesValidationError"

    def test_repair_after_point_unlock_finds_nothing(self, store, scheduler, make_series, record_purchase):
        """Test that the point unlock and the sweep converge on the same state."""
        part1, _, _ = make_series("Paint Correction")
        record_purchase(JANE, part1)
        scheduler.on_payment_confirmed(JANE, part1.id)

        result = scheduler.repair_all()

        assert result.grants_created == 0
        assert len(store.list_entries(JANE)) == 3

    def test_mixed_case_email(self, store, scheduler, make_series, record_purchase):
        """Test that the payment email is normalized before resolution."""
        part1, part2 = make_series("Paint Correction", parts=2)
        record_purchase(JANE, part1)

        result = scheduler.on_payment_confirmed("  JANE@example.com ", part1.id)

        assert result.grants_created == 1
        assert store.get_entry_for(JANE, part2.id) is not None
