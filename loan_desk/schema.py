"""
Schema Initialization

Collections and unique indexes are declared by an ordered list of schema
steps applied once at startup, before any request is served. Applied steps
are recorded in the ``schema_migrations`` collection so persistent backends
skip them on later starts.
"""

from typing import Awaitable, Callable, List
from datetime import datetime, timezone
import logging

from .async_storage import AsyncStorageInterface
from .storage import UniqueIndex


logger = logging.getLogger(__name__)

LOANS_TABLE = "loans"
PAYMENTS_TABLE = "payments"

# Slot values below this are "unassigned" and may repeat freely
FIRST_SLOT = 1


class SchemaStep:
    """Represents a single ordered schema step"""
    
    def __init__(self, version: int, name: str,
                 apply: Callable[[AsyncStorageInterface], Awaitable[None]]):
        self.version = version
        self.name = name
        self.apply = apply
    
    def __str__(self) -> str:
        return f"Schema v{self.version:03d}: {self.name}"
    
    def __repr__(self) -> str:
        return f"SchemaStep(version={self.version}, name='{self.name}')"


async def _create_loans(storage: AsyncStorageInterface) -> None:
    await storage.create_collection(LOANS_TABLE)
    await storage.create_unique_index(LOANS_TABLE, UniqueIndex("account_no"))


async def _create_slot_index(storage: AsyncStorageInterface) -> None:
    await storage.create_unique_index(LOANS_TABLE, UniqueIndex("index", min_value=FIRST_SLOT))


async def _create_payments(storage: AsyncStorageInterface) -> None:
    await storage.create_collection(PAYMENTS_TABLE)


DEFAULT_STEPS = [
    SchemaStep(1, "Create loans collection with unique account numbers", _create_loans),
    SchemaStep(2, "Unique physical slot index for assigned slots", _create_slot_index),
    SchemaStep(3, "Create payments collection", _create_payments),
]


class SchemaManager:
    """Applies schema steps in version order"""
    
    def __init__(self, storage: AsyncStorageInterface, steps: List[SchemaStep] = None):
        self.storage = storage
        self.steps = sorted(steps or DEFAULT_STEPS, key=lambda s: s.version)
        self._migration_table = "schema_migrations"
    
    async def get_current_version(self) -> int:
        """Get the highest applied step version"""
        await self.storage.create_collection(self._migration_table)
        applied = await self.storage.load_all(self._migration_table)
        versions = [m["version"] for m in applied if isinstance(m.get("version"), int)]
        return max(versions) if versions else 0
    
    async def get_pending_steps(self) -> List[SchemaStep]:
        current_version = await self.get_current_version()
        return [step for step in self.steps if step.version > current_version]
    
    async def apply(self) -> List[SchemaStep]:
        """Apply every pending step, in order"""
        pending = await self.get_pending_steps()
        if not pending:
            logger.info("Schema is up to date")
            return []
        
        applied = []
        for step in pending:
            logger.info(f"Applying {step}")
            try:
                await step.apply(self.storage)
            except Exception as e:
                logger.error(f"Failed to apply {step}: {e}")
                raise
            
            await self.storage.save(self._migration_table, f"v{step.version:03d}", {
                "version": step.version,
                "name": step.name,
                "applied_at": datetime.now(timezone.utc).isoformat(),
            })
            applied.append(step)
        
        logger.info(f"Applied {len(applied)} schema steps")
        return applied
    