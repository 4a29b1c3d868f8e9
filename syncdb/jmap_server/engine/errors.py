"""
Method-level error types.

Each engine operation fails by raising a MethodError. Its ``type`` is the
JMAP error type string that ends up in the ``["error", {...}, callId]``
response entry.

Invariants:
    - All method errors inherit from MethodError
    - ``type`` values are stable wire strings; never rename them
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class MethodError(Exception):
    """Base exception for a failed method call.

    Attributes:
        type: JMAP error type
        description: Optional human-readable detail
    """

    type = "serverFail"

    def __init__(self, description: Optional[str] = None) -> None:
        super().__init__(description or self.type)
        self.description = description

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type}
        if self.description:
            result["description"] = self.description
        return result


class InvalidArgumentsError(MethodError):
    """An argument is missing, of the wrong type, or malformed."""

    type = "invalidArguments"


class CannotCalculateChangesError(MethodError):
    """The since-state is older than the type's retained history."""

    type = "cannotCalculateChanges"


class RequestTooLargeError(MethodError):
    """More objects were requested than the server will return at once."""

    type = "requestTooLarge"


class IdRequiredError(MethodError):
    """A record in a write batch has no id. The whole batch is rejected."""

    type = "idRequired"


class InvalidPropertiesError(MethodError):
    """A record in a write batch violates its type schema.

    Attributes:
        errors: One message per offending field
    """

    type = "invalidProperties"

    def __init__(self, description: Optional[str] = None, errors: Optional[list] = None) -> None:
        super().__init__(description)
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.errors:
            result["properties"] = self.errors
        return result


class UnknownAccountError(MethodError):
    """The call named an account this server does not hold."""

    type = "accountNotFound"


class UnknownMethodError(MethodError):
    """No handler is registered for the method name."""

    type = "unknownMethod"
