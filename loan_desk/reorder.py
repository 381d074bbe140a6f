"""
Slot Reorderer

Applies a caller-supplied ordering to loan files: the loan at position i of
the list gets ``order = i``.
"""

from datetime import datetime, timezone
from typing import Any, List
import asyncio
import logging

from .async_storage import AsyncStorageInterface
from .errors import LoanDeskError, TransientStoreError, ValidationError
from .logging_config import log_action
from .schema import LOANS_TABLE
from .storage import format_timestamp


logger = logging.getLogger(__name__)


class SlotReorderer:
    """Writes order keys for a batch of loans"""

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    @staticmethod
    def _validate(ids: Any) -> List[str]:
        if not isinstance(ids, (list, tuple)):
            raise ValidationError("Invalid loan IDs")
        for loan_id in ids:
            if not isinstance(loan_id, str) or not loan_id:
                raise ValidationError("Invalid loan IDs")
        return list(ids)

    async def reorder(self, ids: Any, atomic: bool = False) -> int:
        """
        Set each loan's order to its position in ids.

        By default the per-loan updates are dispatched concurrently and are
        not atomic: if one fails the call raises, and updates that already
        landed stay applied. Unknown ids are skipped silently. With
        atomic=True the updates run in one store transaction instead.

        Returns:
            Number of loans actually updated
        """
        ids = self._validate(ids)
        stamp = format_timestamp(datetime.now(timezone.utc))

        if atomic:
            updated = 0
            async with self.storage.atomic():
                for position, loan_id in enumerate(ids):
                    if await self.storage.update(LOANS_TABLE, loan_id, {"order": position, "updated_at": stamp}):
                        updated += 1
        else:
            results = await asyncio.gather(
                *(self.storage.update(LOANS_TABLE, loan_id, {"order": position, "updated_at": stamp})
                  for position, loan_id in enumerate(ids)),
                return_exceptions=True
            )
            failures = [r for r in results if isinstance(r, BaseException)]
            updated = sum(1 for r in results if r is True)
            if failures:
                log_action(
                    logger, "error", "Reorder partially failed",
                    action="reorder", extra={"requested": len(ids), "updated": updated,
                                             "failed": len(failures)}
                )
                error = failures[0]
                if isinstance(error, LoanDeskError):
                    raise error
                raise TransientStoreError(f"Failed to reorder loans: {error}") from error

        log_action(
            logger, "info", f"Reordered {updated} of {len(ids)} loans",
            action="reorder", extra={"requested": len(ids), "updated": updated, "atomic": atomic}
        )
        return updated
