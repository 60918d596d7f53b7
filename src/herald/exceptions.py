"""Herald exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from HeraldError for easy catching.

Delivery failures (timeouts, refused connections, non-2xx responses) are
not exceptions from the caller's point of view: they are recorded on the
Delivery and the Subscription's health counters.
"""

from __future__ import annotations


class HeraldError(Exception):
    """Base exception for all Herald errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "herald_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(HeraldError):
    """Invalid subscription configuration.

    Raised synchronously by the registry (empty event set, unknown event
    type, malformed URL, out-of-range retry policy).

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(HeraldError):
    """Resource not found within the caller's tenant.

    Attributes:
        resource_type: "subscription" or "delivery".
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class ConflictError(HeraldError):
    """Operation conflicts with work already in progress.

    Raised when a manual retry targets a delivery whose attempt is in flight.
    """

    code: str = "conflict"


class StorageError(HeraldError):
    """Storage operation failed."""

    code: str = "storage_error"


class ConfigurationError(HeraldError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"
