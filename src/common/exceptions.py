"""
Custom exception types for the eventrelay pipeline.
Maps pipeline error codes (6001-6999) to exception classes.
"""


class EventPipelineError(Exception):
    """Base exception for publish/consume pipeline errors."""

    def __init__(self, error_code: int, message: str, context: dict | None = None):
        """
        Initialize pipeline error.

        Args:
            error_code: Error code in range 6001-6999
            message: Human-readable error message
            context: Additional context dict with details
        """
        self.error_code = error_code
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return formatted error string for logging."""
        context_str = f" | Context: {self.context}" if self.context else ""
        return f"[{self.error_code}] {self.message}{context_str}"


class BrokerConnectionError(EventPipelineError):
    """6001: Broker unreachable, credentials rejected or connection dropped."""

    def __init__(self, message: str = "Broker unavailable", context: dict | None = None):
        super().__init__(6001, message, context)


class EventValidationError(EventPipelineError):
    """6002: Envelope failed schema checks before publish."""

    def __init__(self, message: str = "Invalid event envelope", context: dict | None = None):
        super().__init__(6002, message, context)


class PublishRejectedError(EventPipelineError):
    """6003: Local send failed or the broker nacked the publish."""

    def __init__(self, message: str = "Publish rejected", context: dict | None = None):
        super().__init__(6003, message, context)


class MalformedMessageError(EventPipelineError):
    """6004: Delivered body is not a UTF-8 JSON object."""

    def __init__(self, message: str = "Malformed message", context: dict | None = None):
        super().__init__(6004, message, context)


class ProcessingError(EventPipelineError):
    """6005: One or more processing callbacks raised for a valid message."""

    def __init__(self, message: str = "Message processing failed", context: dict | None = None):
        super().__init__(6005, message, context)


class TopologyConflictError(EventPipelineError):
    """6006: Declaration conflicts with the broker's existing definition."""

    def __init__(self, message: str = "Topology conflict", context: dict | None = None):
        super().__init__(6006, message, context)


class StorageError(EventPipelineError):
    """6007: Log store write failed."""

    def __init__(self, message: str = "Storage failure", context: dict | None = None):
        super().__init__(6007, message, context)
