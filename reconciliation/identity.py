import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from ledger.models import normalize_email
from ledger.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityResolution:
    email: str
    account_id: Optional[UUID] = None

    @property
    def resolved(self) -> bool:
        return self.account_id is not None


class IdentityLinker:
    """Maps a customer email to a registered account, if one exists. Never creates accounts."""

    def __init__(self, store: LedgerStore):
        self.store = store

    def resolve(self, email: str) -> IdentityResolution:
        email = normalize_email(email)
        account = self.store.get_account_by_email(email)
        if account is None:
            logger.debug("identity_unresolved", extra={"customer_email": email})
            return IdentityResolution(email=email)
        return IdentityResolution(email=email, account_id=account.id)
