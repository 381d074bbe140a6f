"""
Sequence Allocator

Account numbers are the decimal text of positive integers. The next number is
the smallest positive integer not currently in use, so numbers freed by
deleted accounts are reused before the sequence grows.
"""

from typing import Iterable, Set
import re

from .async_storage import AsyncStorageInterface
from .schema import LOANS_TABLE


_DECIMAL = re.compile(r"[0-9]+")


def parse_account_numbers(values: Iterable[object]) -> Set[int]:
    """Account numbers written as plain decimal digits; anything else is skipped"""
    numbers = set()
    for value in values:
        if isinstance(value, bool):
            continue
        text = str(value).strip()
        if not _DECIMAL.fullmatch(text):
            continue
        number = int(text)
        if number > 0:
            numbers.add(number)
    return numbers


def smallest_unused(numbers: Set[int]) -> int:
    candidate = 1
    while candidate in numbers:
        candidate += 1
    return candidate


class SequenceAllocator:
    """Computes the next free account number.

    Nothing is reserved: two callers reading before either creates an account
    get the same answer. The unique account number index on the loans
    collection is what turns the second creation into a ConflictError.
    """

    def __init__(self, storage: AsyncStorageInterface):
        self.storage = storage

    async def next_account_number(self) -> str:
        loans = await self.storage.load_all(LOANS_TABLE)
        numbers = parse_account_numbers(loan.get("account_no") for loan in loans)
        return str(smallest_unused(numbers))
