"""Error types raised by the capture analysis core."""


class CaptureServiceError(Exception):
    """Base class for service errors."""


class NotFoundError(CaptureServiceError):
    """Entity is missing or soft-deleted."""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found")


class ConflictError(CaptureServiceError):
    """Operation conflicts with the current state of an entity."""


class ClaimLostError(CaptureServiceError):
    """A queue entry is no longer held under the caller's claim."""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Claim on analysis queue entry {entry_id} was lost")


class AnalysisError(CaptureServiceError):
    """The vision analyzer failed; `retryable` says whether trying again can help."""

    def __init__(self, message: str, retryable: bool):
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class TransientAnalysisError(AnalysisError):
    """Timeout, outage, or rate limit on the analyzer side."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class PermanentAnalysisError(AnalysisError):
    """Input the analyzer will never accept (bad format, corrupt payload)."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)
