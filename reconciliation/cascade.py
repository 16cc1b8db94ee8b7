import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from uuid import UUID

from ledger.store import LedgerStore

from .identity import IdentityLinker

logger = logging.getLogger(__name__)


class CascadeStatus(str, Enum):
    UNLOCKED = "unlocked"
    DEFERRED = "deferred"


@dataclass
class CascadeOutcome:
    customer_email: Optional[str]
    course_id: UUID
    status: CascadeStatus
    account_id: Optional[UUID] = None
    chapters_total: int = 0
    chapters_unlocked: int = 0

    @property
    def deferred(self) -> bool:
        return self.status == CascadeStatus.DEFERRED


class ChapterAccessCascade:
    """
    Unlocks every chapter of a granted course for the customer's account.

    A guest without an account gets a DEFERRED outcome; their chapters are
    unlocked when the account is created (see PlatformService.create_account).
    Access rows are only ever inserted or flipped from locked to unlocked.
    """

    def __init__(self, store: LedgerStore, identity: Optional[IdentityLinker] = None):
        self.store = store
        self.identity = identity or IdentityLinker(store)

    def unlock_course(self, customer_email: str, course_id: UUID) -> CascadeOutcome:
        resolution = self.identity.resolve(customer_email)
        if not resolution.resolved:
            logger.info(
                "chapter_unlock_deferred",
                extra={"customer_email": resolution.email, "course_id": str(course_id)},
            )
            return CascadeOutcome(
                customer_email=resolution.email, course_id=course_id, status=CascadeStatus.DEFERRED
            )

        outcome = self.unlock_for_account(resolution.account_id, course_id)
        outcome.customer_email = resolution.email
        return outcome

    def unlock_for_account(self, account_id: UUID, course_id: UUID) -> CascadeOutcome:
        chapters = self.store.list_chapters(course_id)
        unlocked = sum(1 for chapter in chapters if self.store.unlock_chapter(account_id, chapter.id))
        if unlocked:
            logger.info(
                "chapters_unlocked",
                extra={"account_id": str(account_id), "course_id": str(course_id),
                       "chapters_unlocked": unlocked, "chapters_total": len(chapters)},
            )
        return CascadeOutcome(
            customer_email=None,
            course_id=course_id,
            status=CascadeStatus.UNLOCKED,
            account_id=account_id,
            chapters_total=len(chapters),
            chapters_unlocked=unlocked,
        )
