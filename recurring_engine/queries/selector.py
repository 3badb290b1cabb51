"""
Due Transaction Selection

DESIGN DECISION: Selection is DETERMINISTIC and READ-ONLY.
Storage does the coarse filtering; this module re-applies the due
predicate so a backend with a looser query can never leak a deleted,
paused or foreign-tenant definition into an unattended run.

Ordering is stable: (next_occurrence_date, id). Two runs over the
same data always process items in the same order.
"""

from datetime import datetime

import structlog

from recurring_engine.models.recurring import RecurringDefinition
from recurring_engine.services.storage import RecurringStorageInterface


logger = structlog.get_logger("recurring_engine.selector")


class DueTransactionSelector:
    """
    Selects the definitions an auto-apply run should process.

    GUARANTEES:
    - Never writes to storage
    - Only returns definitions of the requested tenant
    - Storage errors propagate (the run cannot start without a list)
    """

    def __init__(self, storage: RecurringStorageInterface):
        self._storage = storage

    async def select_due(
        self,
        now: datetime,
        tenant_id: str,
    ) -> list[RecurringDefinition]:
        """
        Return due definitions for a tenant in processing order.

        Args:
            now: Run timestamp; its date is the due cutoff
            tenant_id: Tenant to select for
        """
        as_of = now.date()
        candidates = await self._storage.find_due_recurrings(tenant_id, as_of)

        due = [
            definition
            for definition in candidates
            if definition.tenant_id == tenant_id and definition.is_due(as_of)
        ]

        dropped = len(candidates) - len(due)
        if dropped:
            logger.warning(
                "selector_dropped_candidates",
                tenant_id=tenant_id,
                dropped=dropped,
            )

        due.sort(key=lambda d: (d.next_occurrence_date, str(d.id)))
        return due
