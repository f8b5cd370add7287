"""Application wiring for the membership service."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..membership import ChangeLogEntry, MembershipEventLogger, MembershipService, load_membership_config
from ..membership.repository import PostgresUnitOfWork


logger = logging.getLogger("membership")


class LoggingMembershipEventLogger(MembershipEventLogger):
    """Event logger forwarding committed membership changes to logging."""

    def log(self, entry: ChangeLogEntry) -> None:
        logger.info(
            "Membership event %s membership=%s tier=%s->%s actor=%s metadata=%s",
            entry.reason.value,
            entry.membership_id,
            entry.old_tier_id,
            entry.new_tier_id,
            entry.changed_by,
            entry.metadata,
        )


@lru_cache(maxsize=1)
def get_membership_service() -> MembershipService:
    config = load_membership_config()
    service = MembershipService(
        unit_of_work=PostgresUnitOfWork(),
        event_logger=LoggingMembershipEventLogger(),
        config=config,
    )
    return service


__all__ = ["get_membership_service", "LoggingMembershipEventLogger"]
