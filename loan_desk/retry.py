"""
Conflict retry

Operations guarded by store unique indexes run as attempts. Each attempt
resolves to a tagged outcome: success, a conflict worth retrying against
fresh state, or a fatal error. ``retry_on_conflict`` drives attempts until
success, a fatal outcome, or the attempt budget runs out.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
import logging

from .errors import ConflictError, LoanDeskError
from .logging_config import log_action


logger = logging.getLogger(__name__)


class OutcomeKind(Enum):
    SUCCESS = "success"
    CONFLICT_RETRY = "conflict_retry"
    FATAL = "fatal"


@dataclass
class Outcome:
    """Result of one attempt"""
    kind: OutcomeKind
    value: Any = None
    error: Optional[LoanDeskError] = None
    
    @classmethod
    def success(cls, value: Any = None) -> 'Outcome':
        return cls(OutcomeKind.SUCCESS, value=value)
    
    @classmethod
    def conflict(cls, error: ConflictError) -> 'Outcome':
        return cls(OutcomeKind.CONFLICT_RETRY, error=error)
    
    @classmethod
    def fatal(cls, error: LoanDeskError) -> 'Outcome':
        return cls(OutcomeKind.FATAL, error=error)


async def run_attempt(attempt: Callable[[], Awaitable[Any]]) -> Outcome:
    """Run one attempt and classify how it ended"""
    try:
        return Outcome.success(await attempt())
    except ConflictError as e:
        return Outcome.conflict(e)
    except LoanDeskError as e:
        return Outcome.fatal(e)


async def retry_on_conflict(attempt: Callable[[], Awaitable[Any]],
                            max_attempts: int, operation: str) -> Any:
    """
    Run attempt until it succeeds or fails fatally.
    
    Args:
        attempt: Zero-argument coroutine function; it must re-read any state it
            depends on, since a retry means that state changed underneath it
        max_attempts: Attempt budget, at least one attempt is always made
        operation: Name used in logs and in the final error
        
    Returns:
        The value of the successful attempt
    """
    last_error = None
    for number in range(1, max(1, max_attempts) + 1):
        outcome = await run_attempt(attempt)
        if outcome.kind is OutcomeKind.SUCCESS:
            return outcome.value
        if outcome.kind is OutcomeKind.FATAL:
            raise outcome.error
        
        last_error = outcome.error
        log_action(
            logger, "warning", f"{operation} hit a conflict, retrying",
            action=operation, extra={"attempt": number, "error": str(last_error)}
        )
    
    raise ConflictError(
        f"{operation} still conflicting after {max(1, max_attempts)} attempts: {last_error}"
    )
