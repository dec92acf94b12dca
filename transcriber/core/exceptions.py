from typing import Optional


class TranscriberError(Exception):
    """Base class for all errors raised by the transcriber package."""


class InvalidInput(TranscriberError):
    """Raise when image bytes are empty, unreadable or not a supported image."""


class StreamFailure(TranscriberError):
    """Raise when the recognition stream fails at open time or mid-stream."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class PreconditionViolation(TranscriberError):
    """Raise when a caller breaks an index or slot-state contract."""


class SlotNotFound(TranscriberError, IndexError):
    """Raise when a result slot is requested for an index that was never allocated."""

    def __init__(self, index: int):
        super().__init__(f"No result slot at index {index}")
        self.index = index


class FetchFailed(TranscriberError):
    """Raise when an intake gateway cannot download an image URL."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Could not fetch {url}: {reason}")
        self.url = url
        self.reason = reason
