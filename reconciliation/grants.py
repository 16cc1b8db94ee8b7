import logging
from dataclasses import dataclass, field
from typing import Iterable
from uuid import UUID

from ledger.models import LedgerEntry, PaymentStatus, normalize_email
from ledger.store import AlreadyGrantedError, LedgerStore

from .errors import SourceEntryNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class GrantBatch:
    customer_email: str
    created: list[LedgerEntry] = field(default_factory=list)
    already_granted: list[UUID] = field(default_factory=list)
    # pairs held by a REFUNDED row; left alone
    skipped: list[UUID] = field(default_factory=list)


class GrantEngine:
    """
    Creates zero-price SERIES_UNLOCK ledger entries for courses a customer is
    missing.

    There is no existence check before the insert and no lock: two callers
    granting the same (email, course) race on the ledger's unique constraint,
    one wins and the other sees AlreadyGrantedError, which counts as success.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def grant(self, customer_email: str, missing_course_ids: Iterable[UUID]) -> GrantBatch:
        customer_email = normalize_email(customer_email)
        batch = GrantBatch(customer_email=customer_email)
        missing_course_ids = list(dict.fromkeys(missing_course_ids))
        if not missing_course_ids:
            return batch

        source = self.store.find_source_entry(customer_email)
        if source is None:
            raise SourceEntryNotFoundError(customer_email)

        for course_id in missing_course_ids:
            try:
                entry = self.store.insert_grant(
                    customer_email,
                    course_id,
                    customer_name=source.customer_name,
                    customer_phone=source.customer_phone,
                )
            except AlreadyGrantedError as e:
                if e.entry.payment_status == PaymentStatus.PAID:
                    batch.already_granted.append(course_id)
                else:
                    batch.skipped.append(course_id)
                logger.debug(
                    "grant_already_present",
                    extra={"customer_email": customer_email, "course_id": str(course_id),
                           "payment_status": e.entry.payment_status.value},
                )
                continue

            batch.created.append(entry)
            logger.info(
                "series_unlock_granted",
                extra={"customer_email": customer_email, "course_id": str(course_id), "entry_id": str(entry.id)},
            )

        return batch
