"""
Partition Tracker

Records a marker for every durably written archive batch and keeps the
watermark the retraining scheduler reads: every event with a timestamp at
or before the watermark is in the archive.
"""

import logging
import math
from typing import Any, Dict, List, Optional

import orjson

from ..core import metrics
from ..core.models import PartitionMarker


MARKER_PREFIX = "partitions/"

# Keeps the watermark strictly below the oldest record still buffered
WATERMARK_EPSILON = 1e-6


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


class PartitionTracker:
    """Monotonic archive watermark plus the list of flushed batches"""

    def __init__(self, store=None, marker_prefix: str = MARKER_PREFIX):
        """
        Args:
            store: ArchiveStore to persist markers into; None keeps them in memory only
            marker_prefix: Key prefix for persisted markers
        """
        self.store = store
        self.marker_prefix = marker_prefix
        self._markers: List[PartitionMarker] = []
        self._watermark: Optional[float] = None
        self._max_flushed: Optional[float] = None
        self.logger = logging.getLogger(__name__)

    @property
    def watermark(self) -> Optional[float]:
        return self._watermark

    def next_watermark(
        self,
        max_event_timestamp: Optional[float],
        pending_min_timestamp: Optional[float]
    ) -> Optional[float]:
        """
        Watermark after a batch whose newest event is max_event_timestamp

        Non-finite timestamps are ignored; None means no watermark yet.
        """
        candidate = max_event_timestamp if _finite(max_event_timestamp) else None
        if self._max_flushed is not None:
            candidate = self._max_flushed if candidate is None else max(candidate, self._max_flushed)
        if candidate is None:
            return self._watermark
        if _finite(pending_min_timestamp):
            candidate = min(candidate, pending_min_timestamp - WATERMARK_EPSILON)
        if self._watermark is not None:
            candidate = max(candidate, self._watermark)
        return candidate

    async def record(self, marker: PartitionMarker):
        """
        Record a flushed batch and advance the watermark to marker.watermark

        The marker is persisted before the watermark moves, so a reader never
        sees a watermark without the batches behind it.
        """
        if self.store is not None:
            key = f"{self.marker_prefix}{marker.batch_id}.json"
            await self.store.put_idempotent(key, orjson.dumps(marker.to_dict()))

        self._markers.append(marker)
        if _finite(marker.max_event_timestamp) and (
            self._max_flushed is None or marker.max_event_timestamp > self._max_flushed
        ):
            self._max_flushed = marker.max_event_timestamp
        if _finite(marker.watermark) and (self._watermark is None or marker.watermark > self._watermark):
            self._watermark = marker.watermark
            metrics.WATERMARK.set(marker.watermark)

        self.logger.info(
            f"Recorded batch {marker.batch_id}: {marker.record_count} records, "
            f"watermark={self._watermark}"
        )

    def markers(self) -> List[PartitionMarker]:
        return list(self._markers)

    def markers_since(self, timestamp: float) -> List[PartitionMarker]:
        """Batches holding events newer than timestamp"""
        return [
            marker for marker in self._markers
            if marker.max_event_timestamp is not None and marker.max_event_timestamp > timestamp
        ]

    def records_since(self, timestamp: float) -> int:
        """Archived record count in batches newer than timestamp"""
        return sum(marker.record_count for marker in self.markers_since(timestamp))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "watermark": self._watermark,
            "batches": len(self._markers),
            "records": sum(marker.record_count for marker in self._markers),
        }
