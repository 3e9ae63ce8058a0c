"""
Error Taxonomy

Every failure surfaced by the engine carries a stable ``kind`` so callers can
react without parsing messages.
"""

from typing import Any, Dict, Optional


class EconomyError(Exception):
    """Base class for all engine errors"""
    
    kind = "error"
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
    
    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.kind, "detail": self.message}
        if self.details:
            payload["context"] = self.details
        return payload


class ValidationError(EconomyError, ValueError):
    """Malformed or out-of-range input"""
    kind = "validation_error"


class NotFoundError(EconomyError):
    """Unknown account, loan, parcel, request or user"""
    kind = "not_found"


class ConflictError(EconomyError):
    """Already resolved, already owned, or duplicate pending request"""
    kind = "conflict"


class InsufficientFundsError(EconomyError):
    """Balance too low at the authoritative check"""
    kind = "insufficient_funds"


class InsufficientTreasuryFundsError(InsufficientFundsError):
    """Town treasury cannot cover a batch or withdrawal"""
    kind = "insufficient_treasury_funds"


class AuthorizationError(EconomyError):
    """Wrong role or wrong tenant"""
    kind = "authorization_error"


class InternalError(EconomyError):
    """Unexpected store failure or broken invariant"""
    kind = "internal_error"
