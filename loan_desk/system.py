"""
Loan desk system

Owns the single store handle and every engine component built on it. The
handle is constructed once, initialized (connections, then schema) before
the first request, and closed at shutdown.
"""

from typing import Optional
import logging

from .async_storage import AsyncStorageInterface, create_async_storage
from .config import LoanDeskConfig, get_config
from .ledger import PaymentLedger
from .loans import LoanRegistry
from .reorder import SlotReorderer
from .schema import SchemaManager
from .sequence import SequenceAllocator
from .slots import SlotIndexManager


logger = logging.getLogger(__name__)


class LoanDeskSystem:
    """Engine components wired to one store"""

    def __init__(self, storage: AsyncStorageInterface, config: Optional[LoanDeskConfig] = None):
        self.config = config or get_config()
        self.storage = storage
        self.schema = SchemaManager(storage)

        self.sequence = SequenceAllocator(storage)
        self.loans = LoanRegistry(
            storage, self.sequence,
            conflict_retry_attempts=self.config.conflict_retry_attempts
        )
        self.slots = SlotIndexManager(
            storage,
            capacity=self.config.slot_capacity,
            conflict_retry_attempts=self.config.conflict_retry_attempts
        )
        self.reorderer = SlotReorderer(storage)
        self.ledger = PaymentLedger(storage)
        self._initialized = False

    @classmethod
    def from_config(cls, config: Optional[LoanDeskConfig] = None) -> 'LoanDeskSystem':
        config = config or get_config()
        return cls(create_async_storage(config), config)

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Open the store and apply schema steps; safe to call twice"""
        if self._initialized:
            return
        await self.storage.initialize()
        await self.schema.apply()
        self._initialized = True
        logger.info(f"Loan desk initialized with {type(self.storage).__name__}")

    async def close(self) -> None:
        await self.storage.close()
        self._initialized = False
        logger.info("Loan desk storage closed")
