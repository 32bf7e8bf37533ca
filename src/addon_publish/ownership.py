"""
Ownership check against the catalog.

Decides whether the current account may publish a version of an add-on.
Runs strictly before any build so a conflict costs no compute.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .catalog import CatalogCapability
from .models import Credential, OwnershipRecord, OwnershipStatus

__all__ = ["OwnershipCheck", "OwnershipResolver"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OwnershipCheck:
    status: OwnershipStatus
    record: Optional[OwnershipRecord] = None

    @property
    def owner(self) -> str:
        return self.record.owner if self.record else ""


class OwnershipResolver:
    """Compares the catalog owner of an add-on with the credential's account."""

    def __init__(self, catalog: CatalogCapability):
        self.catalog = catalog

    def check_ownership(self, addon_id: str, credential: Credential) -> OwnershipStatus:
        """
        Args:
            addon_id: Add-on identifier
            credential: Fresh credential of the publishing account

        Returns:
            NOT_REGISTERED if nobody published this id yet, OWNED_BY_SELF if
            the account owns it, OWNED_BY_OTHER otherwise

        Raises:
            CatalogUnavailable: If the catalog cannot be queried
        """
        return self.lookup(addon_id, credential).status

    def lookup(self, addon_id: str, credential: Credential) -> OwnershipCheck:
        """Like check_ownership, but keeps the catalog record for reporting."""
        record = self.catalog.lookup_ownership(addon_id)
        if record is None:
            status = OwnershipStatus.NOT_REGISTERED
        elif record.owner == credential.account_id:
            status = OwnershipStatus.OWNED_BY_SELF
        else:
            status = OwnershipStatus.OWNED_BY_OTHER

        logger.debug(f"Ownership of {addon_id}: {status.value}")
        return OwnershipCheck(status=status, record=record)
