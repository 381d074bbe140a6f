"""
Slot Index Manager

Loan files sit in a fixed cabinet of numbered slots (1..84 by default). A slot
holds at most one loan. Assigning a loan to an occupied slot displaces the
occupant to unassigned (-1); the occupant does not take over the incoming
loan's previous slot.

The read-evict-write sequence is not isolated from concurrent writers. The
partial unique index on ``index`` makes a racing write fail with
ConflictError, and the whole sequence is then re-run against fresh state.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import itertools
import logging

from .async_storage import AsyncStorageInterface
from .errors import ConflictError, NotFoundError, ValidationError
from .loans import Loan, UNASSIGNED
from .logging_config import log_action
from .retry import retry_on_conflict
from .schema import LOANS_TABLE, FIRST_SLOT
from .storage import format_timestamp


logger = logging.getLogger(__name__)

DEFAULT_SLOT_CAPACITY = 84


def _now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


class SlotIndexManager:
    """Assigns loans to physical slots"""

    def __init__(self, storage: AsyncStorageInterface,
                 capacity: int = DEFAULT_SLOT_CAPACITY,
                 conflict_retry_attempts: int = 3):
        self.storage = storage
        self.capacity = capacity
        self.conflict_retry_attempts = conflict_retry_attempts

    def _validate(self, account_no: Any, index: Any) -> str:
        message = f"Invalid accountNo or index (must be {FIRST_SLOT}-{self.capacity})"
        if account_no is None or not str(account_no).strip():
            raise ValidationError(message)
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValidationError(message)
        if not FIRST_SLOT <= index <= self.capacity:
            raise ValidationError(message)
        return str(account_no).strip()

    async def _require_loan(self, account_no: str) -> Dict[str, Any]:
        loan = await self.storage.find_one(LOANS_TABLE, {"account_no": account_no})
        if loan is None:
            raise NotFoundError("Loan not found")
        return loan

    async def assign_slot(self, account_no: Any, index: Any) -> Optional[str]:
        """
        Put a loan into a slot, displacing any other occupant

        Args:
            account_no: Account number of the loan to place
            index: Slot number within 1..capacity

        Returns:
            Account number of the displaced loan, or None
        """
        account_no = self._validate(account_no, index)

        async def attempt() -> Optional[str]:
            loan = await self._require_loan(account_no)
            occupant = await self.storage.find_one(LOANS_TABLE, {"index": index})

            evicted = None
            if occupant is not None and occupant["account_no"] != account_no:
                await self.storage.update(LOANS_TABLE, occupant["id"], {
                    "index": UNASSIGNED, "updated_at": _now()
                })
                evicted = occupant["account_no"]
                log_action(
                    logger, "info", f"Displaced loan {evicted} from slot {index}",
                    action="evict_slot", resource=occupant["id"],
                    extra={"index": index, "incoming_account_no": account_no}
                )

            if loan.get("index") != index:
                await self.storage.update(LOANS_TABLE, loan["id"], {
                    "index": index, "updated_at": _now()
                })
            return evicted

        evicted = await retry_on_conflict(attempt, self.conflict_retry_attempts, "assign_slot")

        log_action(
            logger, "info", f"Assigned loan {account_no} to slot {index}",
            action="assign_slot", extra={"account_no": account_no, "index": index}
        )
        return evicted

    async def release_slot(self, account_no: Any) -> int:
        """Return a loan to unassigned; gives back the slot it held"""
        if account_no is None or not str(account_no).strip():
            raise ValidationError("accountNo is required")
        loan = await self._require_loan(str(account_no).strip())

        previous = loan.get("index", UNASSIGNED)
        if previous != UNASSIGNED:
            await self.storage.update(LOANS_TABLE, loan["id"], {
                "index": UNASSIGNED, "updated_at": _now()
            })
            log_action(
                logger, "info", f"Released slot {previous}",
                action="release_slot", resource=loan["id"],
                extra={"account_no": loan["account_no"], "index": previous}
            )
        return previous

    async def occupancy(self) -> Dict[int, str]:
        """Occupied slots mapped to the account number in each"""
        slots = {}
        for loan in await self.storage.load_all(LOANS_TABLE):
            index = loan.get("index", UNASSIGNED)
            if isinstance(index, int) and FIRST_SLOT <= index <= self.capacity:
                slots[index] = loan["account_no"]
        return dict(sorted(slots.items()))

    async def backfill(self) -> int:
        """
        Fill free slots, lowest first, with unassigned loans, oldest first.

        Stops when either runs out. A slot taken by a concurrent writer is
        skipped, and so is a loan that was given a slot since the scan.
        Returns the number of loans placed.
        """
        loans = [Loan.from_dict(d) for d in await self.storage.load_all(LOANS_TABLE)]
        occupied = {loan.index for loan in loans if loan.has_slot}
        free_slots: List[int] = [
            slot for slot in range(FIRST_SLOT, self.capacity + 1) if slot not in occupied
        ]
        waiting = sorted((loan for loan in loans if not loan.has_slot),
                         key=lambda loan: loan.created_at)

        assigned = 0
        slot_iter = iter(free_slots)
        for loan in waiting:
            for slot in slot_iter:
                try:
                    placed = await self.storage.update_if(
                        LOANS_TABLE, loan.id, {"index": UNASSIGNED},
                        {"index": slot, "updated_at": _now()}
                    )
                except ConflictError:
                    logger.warning(f"Slot {slot} was taken concurrently, skipping")
                    continue
                if placed:
                    assigned += 1
                else:
                    # Assigned or removed since the scan; the slot stays free
                    slot_iter = itertools.chain([slot], slot_iter)
                break
            else:
                break

        log_action(
            logger, "info", f"Backfilled {assigned} loans into free slots",
            action="backfill_slots", extra={"assigned": assigned}
        )
        return assigned
