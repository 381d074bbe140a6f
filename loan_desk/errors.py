"""
Error taxonomy for the loan desk engine.

Every failure carries a machine-readable ``kind`` alongside its message so the
HTTP layer can map it to a status code without inspecting text.
"""


class LoanDeskError(Exception):
    """Base exception for all engine errors"""
    
    kind = "error"
    
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LoanDeskError):
    """Malformed or out-of-range input; nothing was written"""
    
    kind = "validation_error"


class NotFoundError(LoanDeskError):
    """A referenced loan or payment set does not exist; nothing was written"""
    
    kind = "not_found"


class ConflictError(LoanDeskError):
    """The store rejected a write that would break a uniqueness constraint"""
    
    kind = "conflict"


class TransientStoreError(LoanDeskError):
    """Store I/O failed; the caller may retry"""
    
    kind = "transient_store_error"
