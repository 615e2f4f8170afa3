"""
Error types for the click-to-offer pipeline.

Per-event errors are contained by the worker pool; only ArchiveWriteError
is allowed to stop the process.
"""

from typing import Optional


class AdrecError(Exception):
    """Base class for all pipeline errors"""


class ConfigError(AdrecError):
    """Invalid or inconsistent configuration"""


class MalformedEventError(AdrecError):
    """A raw event is missing a required field or cannot be parsed"""

    def __init__(self, message: str, payload: object = None):
        super().__init__(message)
        self.payload = payload


class VocabularyOverCapacityError(AdrecError):
    """A field's vocabulary has no free slots left"""

    def __init__(self, field_name: str, max_size: int):
        super().__init__(f"vocabulary for field '{field_name}' reached {max_size} entries")
        self.field_name = field_name
        self.max_size = max_size


class VocabularyMismatchError(AdrecError):
    """A persisted vocabulary does not match the configured field layout"""


class ScoringError(AdrecError):
    """Base class for scoring endpoint failures"""

    transient = False


class ScoringTimeoutError(ScoringError):
    """The scoring endpoint did not answer within the timeout"""

    transient = True


class ScoringUnavailableError(ScoringError):
    """Connection failure or a 5xx-equivalent response"""

    transient = True

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ScoringResponseError(ScoringError):
    """The endpoint answered, but the answer cannot be used"""


class CircuitOpenError(AdrecError):
    """The circuit breaker is open; the call was not attempted"""

    def __init__(self, endpoint: str, retry_after: float):
        super().__init__(f"circuit open for {endpoint}, retry in {retry_after:.2f}s")
        self.endpoint = endpoint
        self.retry_after = retry_after


class NotificationError(AdrecError):
    """A notification could not be published"""


class ArchiveWriteError(AdrecError):
    """Archive flush failed after exhausting retries; fatal"""


class ArchiveKeyExistsError(AdrecError):
    """Archive batches are write-once; the key is already taken"""
