"""
Data Models for the Click-to-Offer Pipeline
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
import math
import time
import uuid
from enum import Enum

from .errors import MalformedEventError


class ArchiveStatus(Enum):
    """Outcome recorded on every archive record"""
    SCORED = "scored"
    SCORING_FAILED = "scoring_failed"
    CIRCUIT_OPEN = "circuit_open"


class DeadLetterReason(Enum):
    """Why an event landed in the dead-letter path"""
    MALFORMED_EVENT = "malformed_event"
    SCORING_TIMEOUT = "scoring_timeout"
    SCORING_UNAVAILABLE = "scoring_unavailable"
    CIRCUIT_OPEN = "circuit_open"
    PROCESSING_ERROR = "processing_error"
    NOTIFICATION_FAILED = "notification_failed"


REQUIRED_EVENT_FIELDS = ("user_id", "offer_id")


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class ClickEvent:
    """A single clickstream event; immutable once created"""
    event_id: str
    user_id: str
    offer_id: str
    country_code: Optional[str] = None
    category: Optional[str] = None
    merchant: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    label: Optional[float] = None

    @classmethod
    def from_dict(
        cls,
        payload: Any,
        default_event_id: Optional[str] = None
    ) -> "ClickEvent":
        """
        Build an event from a raw log payload

        Args:
            payload: Decoded event payload
            default_event_id: Id to use when the payload carries none

        Returns:
            ClickEvent

        Raises:
            MalformedEventError: if a required field is missing or invalid
        """
        if not isinstance(payload, dict):
            raise MalformedEventError(
                f"event payload must be an object, got {type(payload).__name__}",
                payload
            )

        for name in REQUIRED_EVENT_FIELDS:
            value = payload.get(name)
            if value is None or str(value).strip() == "":
                raise MalformedEventError(f"missing required field '{name}'", payload)

        event_id = payload.get("event_id") or default_event_id or uuid.uuid4().hex

        timestamp = payload.get("timestamp")
        if timestamp is None:
            timestamp = time.time()
        else:
            try:
                timestamp = float(timestamp)
            except (TypeError, ValueError):
                raise MalformedEventError(f"invalid timestamp {timestamp!r}", payload)
            if not math.isfinite(timestamp):
                raise MalformedEventError(f"timestamp must be finite, got {timestamp!r}", payload)

        label = payload.get("label")
        if label is not None:
            try:
                label = float(label)
            except (TypeError, ValueError):
                raise MalformedEventError(f"invalid label {label!r}", payload)
            if not math.isfinite(label):
                raise MalformedEventError(f"label must be finite, got {label!r}", payload)

        return cls(
            event_id=str(event_id),
            user_id=str(payload["user_id"]),
            offer_id=str(payload["offer_id"]),
            country_code=_optional_str(payload.get("country_code")),
            category=_optional_str(payload.get("category")),
            merchant=_optional_str(payload.get("merchant")),
            timestamp=timestamp,
            label=label
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "offer_id": self.offer_id,
            "country_code": self.country_code,
            "category": self.category,
            "merchant": self.merchant,
            "timestamp": self.timestamp,
            "label": self.label
        }


@dataclass(frozen=True)
class FeatureVector:
    """Sparse one-hot encoding of a click event"""
    event_id: str
    indices: Dict[int, float]
    vocabulary_version: int

    def to_payload(self) -> List[List[float]]:
        """Sparse index/weight pairs, ordered by index"""
        return [[index, weight] for index, weight in sorted(self.indices.items())]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "features": self.to_payload(),
            "vocabulary_version": self.vocabulary_version
        }


@dataclass(frozen=True)
class ScoreResult:
    """Score returned by the model endpoint"""
    event_id: str
    score: float
    vocabulary_version: int
    model_vocabulary_version: Optional[int] = None
    scored_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "score": self.score,
            "vocabulary_version": self.vocabulary_version,
            "model_vocabulary_version": self.model_vocabulary_version,
            "scored_at": self.scored_at
        }


@dataclass(frozen=True)
class NotificationMessage:
    """Offer notification delivered to the shopper-facing channel"""
    event_id: str
    user_id: str
    offer_id: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "offer_id": self.offer_id,
            "score": self.score
        }


@dataclass
class ArchiveRecord:
    """Durable unit written to the archive: event plus its outcome"""
    event: ClickEvent
    status: ArchiveStatus
    result: Optional[ScoreResult] = None
    error: Optional[str] = None
    notified: bool = False

    @property
    def event_id(self) -> str:
        return self.event.event_id

    @property
    def timestamp(self) -> float:
        return self.event.timestamp

    def to_dict(self) -> Dict[str, Any]:
        record = self.event.to_dict()
        record.update({
            "score": self.result.score if self.result else None,
            "vocabulary_version": self.result.vocabulary_version if self.result else None,
            "model_vocabulary_version": (
                self.result.model_vocabulary_version if self.result else None
            ),
            "scored_at": self.result.scored_at if self.result else None,
            "status": self.status.value,
            "error": self.error,
            "notified": self.notified
        })
        return record


@dataclass
class DeadLetterRecord:
    """An event that could not be processed, kept for inspection and replay"""
    reason: DeadLetterReason
    error: str
    payload: Any
    event_id: Optional[str] = None
    partition: Optional[int] = None
    offset: Optional[int] = None
    dead_lettered_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "reason": self.reason.value,
            "error": self.error,
            "payload": self.payload,
            "partition": self.partition,
            "offset": self.offset,
            "dead_lettered_at": self.dead_lettered_at
        }


@dataclass(frozen=True)
class PartitionMarker:
    """Created once per durably flushed archive batch"""
    batch_id: str
    key: str
    record_count: int
    min_event_timestamp: Optional[float]
    max_event_timestamp: Optional[float]
    watermark: Optional[float]
    written_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "key": self.key,
            "record_count": self.record_count,
            "min_event_timestamp": self.min_event_timestamp,
            "max_event_timestamp": self.max_event_timestamp,
            "watermark": self.watermark,
            "written_at": self.written_at
        }


@dataclass(frozen=True)
class LogRecord:
    """A raw record read from one partition of the event log"""
    partition: int
    offset: int
    payload: Any


@dataclass(frozen=True)
class RawClickRecord:
    """A log record archived exactly as read, before it is validated"""
    record: LogRecord
    received_at: float = field(default_factory=time.time)

    @property
    def timestamp(self) -> float:
        return self.received_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partition": self.record.partition,
            "offset": self.record.offset,
            "payload": self.record.payload,
            "received_at": self.received_at
        }
