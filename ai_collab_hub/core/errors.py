"""
Error Types for AI Collaboration Hub

Every error surfaced to a caller carries its kind and the identifying
key(s) involved so the caller can correlate it with its own request.
"""

from typing import Any, Dict


class CoordinationError(Exception):
    """Base class for all surfaced coordination errors."""

    kind = "CoordinationError"

    def __init__(self, message: str, **keys: Any):
        super().__init__(message)
        self.message = message
        self.keys: Dict[str, Any] = {k: v for k, v in keys.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "keys": self.keys,
        }

    def __str__(self) -> str:
        if not self.keys:
            return f"{self.kind}: {self.message}"
        detail = ", ".join(f"{k}={v}" for k, v in sorted(self.keys.items()))
        return f"{self.kind}: {self.message} ({detail})"


class NotFound(CoordinationError):
    """Referenced entity, message, proposal or agent is absent."""
    kind = "NotFound"


class DanglingReference(CoordinationError):
    """Relation endpoint does not exist."""
    kind = "DanglingReference"


class Conflict(CoordinationError):
    """Duplicate where uniqueness is required and no merge rule applies."""
    kind = "Conflict"


class ProposalClosed(CoordinationError):
    """Vote cast on a decided or expired proposal."""
    kind = "ProposalClosed"


class BudgetExceeded(CoordinationError):
    """Autonomous action would push an agent over its token budget."""
    kind = "BudgetExceeded"


class BackendUnavailable(CoordinationError):
    """The primary store failed; no backend can serve the request."""
    kind = "BackendUnavailable"


class ProviderUnavailable(CoordinationError):
    """Every AI provider was tried or excluded."""
    kind = "ProviderUnavailable"


class InvalidArgument(CoordinationError):
    """Missing or malformed arguments."""
    kind = "InvalidArgument"
