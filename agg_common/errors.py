"""
Error taxonomy shared by the adapters, the engine and the HTTP layer.

Every failure that crosses a component boundary is one of these types, so
callers can tell an unreachable node from rejected credentials or a missing
object without parsing messages.
"""

from typing import Any


class AggregatorError(Exception):
    """Base class for all aggregator failures."""

    kind = "error"
    retryable = False

    def __init__(self, message: str, node_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.node_id = node_id

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary format (for API responses)."""
        result: dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.node_id is not None:
            result["node_id"] = self.node_id
        return result


class Unreachable(AggregatorError):
    """The node did not respond within the timeout."""

    kind = "unreachable"
    retryable = True


class AuthRejected(AggregatorError):
    """The node rejected the supplied credentials."""

    kind = "auth_rejected"


class NotFound(AggregatorError):
    """A node, view, job or build id is unknown."""

    kind = "not_found"


class RemoteError(AggregatorError):
    """The remote system answered with a domain error."""

    kind = "remote_error"

    def __init__(self, code: int, message: str, node_id: str | None = None):
        super().__init__(message, node_id=node_id)
        self.code = code

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["code"] = self.code
        return result


class DuplicateError(AggregatorError):
    """A registry entry with the same identity already exists."""

    kind = "duplicate"


class ValidationError(AggregatorError):
    """Input rejected before any remote call was made."""

    kind = "invalid"
