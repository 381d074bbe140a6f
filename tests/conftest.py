"""
Shared fixtures: an initialized system on a fresh in-memory store
"""

import pytest_asyncio

from loan_desk.async_storage import AsyncInMemoryStorage
from loan_desk.config import LoanDeskConfig
from loan_desk.system import LoanDeskSystem


@pytest_asyncio.fixture
async def system():
    """Initialized loan desk system backed by in-memory storage"""
    desk = LoanDeskSystem(AsyncInMemoryStorage(), LoanDeskConfig())
    await desk.initialize()
    yield desk
    await desk.close()
