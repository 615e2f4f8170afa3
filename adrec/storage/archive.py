"""
Archive storage and the buffering Archiver

Scored events are buffered in memory and flushed as immutable gzip batches
of JSON lines when a size or time trigger fires, the same buffering hints
the clickstream delivery streams use (5 MiB or 60 seconds). The same
Archiver keeps the raw clickstream under its own prefix.
"""

import asyncio
import gzip
import logging
import math
import os
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiofiles
import orjson
from tenacity import (
    AsyncRetrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core import metrics
from ..core.errors import ArchiveKeyExistsError, ArchiveWriteError
from ..core.models import ArchiveRecord, PartitionMarker, RawClickRecord
from .partitions import PartitionTracker


BufferedRecord = Union[ArchiveRecord, RawClickRecord]


class ArchiveStore(ABC):
    """Write-once store of named batches"""

    @abstractmethod
    async def put(self, key: str, data: bytes):
        """Store data under key; raises ArchiveKeyExistsError if the key is taken"""

    @abstractmethod
    async def get(self, key: str) -> bytes:
        pass

    @abstractmethod
    async def list(self, prefix: str = "") -> List[str]:
        pass

    async def put_idempotent(self, key: str, data: bytes):
        """put() that accepts an existing key holding identical bytes"""
        try:
            await self.put(key, data)
        except ArchiveKeyExistsError:
            if await self.get(key) != data:
                raise

    async def close(self):
        pass


class InMemoryArchiveStore(ArchiveStore):
    """Dict-backed store for tests and the demo"""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    async def put(self, key: str, data: bytes):
        if key in self.objects:
            raise ArchiveKeyExistsError(key)
        self.objects[key] = bytes(data)

    async def get(self, key: str) -> bytes:
        return self.objects[key]

    async def list(self, prefix: str = "") -> List[str]:
        return sorted(key for key in self.objects if key.startswith(prefix))


class LocalArchiveStore(ArchiveStore):
    """Filesystem store; batches are written to a temp file and renamed into place"""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise ValueError(f"archive key escapes the store root: {key}")
        return path

    async def put(self, key: str, data: bytes):
        path = self._path(key)
        if os.path.exists(path):
            raise ArchiveKeyExistsError(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)

        tmp_path = f"{path}.{uuid.uuid4().hex}.tmp"
        async with aiofiles.open(tmp_path, "wb") as fh:
            await fh.write(data)
            await fh.flush()
        if os.path.exists(path):
            os.remove(tmp_path)
            raise ArchiveKeyExistsError(key)
        os.replace(tmp_path, path)

    async def get(self, key: str) -> bytes:
        async with aiofiles.open(self._path(key), "rb") as fh:
            return await fh.read()

    async def list(self, prefix: str = "") -> List[str]:
        keys = []
        for directory, _, filenames in os.walk(self.root):
            for filename in filenames:
                if filename.endswith(".tmp"):
                    continue
                key = os.path.relpath(os.path.join(directory, filename), self.root)
                key = key.replace(os.sep, "/")
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)


def encode_batch(lines: List[bytes]) -> bytes:
    return gzip.compress(b"".join(lines))


def decode_batch(data: bytes) -> List[Dict[str, Any]]:
    """Records of an archive batch, in write order"""
    return [orjson.loads(line) for line in gzip.decompress(data).splitlines() if line]


class Archiver:
    """
    In-memory buffer of ArchiveRecords (or RawClickRecords) flushed to an
    ArchiveStore.

    `add()` never blocks and never drops. When the buffer holds
    `buffer_capacity` records the archiver reports no capacity and
    `wait_for_capacity()` suspends consumers until a flush frees space.
    """

    def __init__(
        self,
        store: ArchiveStore,
        tracker: Optional[PartitionTracker] = None,
        flush_size: int = 500,
        flush_bytes: int = 5 * 1024 * 1024,
        flush_interval: float = 60.0,
        buffer_capacity: int = 5000,
        max_flush_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        prefix: str = "ads/",
        commit_lock: Optional[asyncio.Lock] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the archiver

        Args:
            store: Destination for batches
            tracker: Partition tracker notified after each flush
            flush_size: Record count that triggers a flush
            flush_bytes: Serialized size that triggers a flush
            flush_interval: Seconds a record may wait before a flush
            buffer_capacity: Records held before consumers are paused
            max_flush_attempts: Attempts per batch before the failure is fatal
            backoff_base: First retry delay, doubled per attempt
            backoff_max: Upper bound on a retry delay
            prefix: Key prefix for batches
            commit_lock: Lock shared with checkpoint advance
            clock: Wall clock used for batch keys
        """
        self.store = store
        self.tracker = tracker or PartitionTracker(store)
        self.flush_size = flush_size
        self.flush_bytes = flush_bytes
        self.flush_interval = flush_interval
        self.buffer_capacity = buffer_capacity
        self.max_flush_attempts = max_flush_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.prefix = prefix
        self.commit_lock = commit_lock or asyncio.Lock()
        self.clock = clock

        self._buffer: List[Tuple[BufferedRecord, bytes]] = []
        self._buffer_bytes = 0
        self._first_buffered_at: Optional[float] = None
        self._wakeup = asyncio.Event()
        self._capacity_available = asyncio.Event()
        self._capacity_available.set()
        self._flush_lock = asyncio.Lock()
        self._running = False
        self._sequence = 0

        self.fatal_error: Optional[ArchiveWriteError] = None
        self.records_archived = 0
        self.batches_written = 0
        self.failed_attempts = 0

        self.logger = logging.getLogger(__name__)

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def has_capacity(self) -> bool:
        return len(self._buffer) < self.buffer_capacity

    @property
    def pending_min_timestamp(self) -> Optional[float]:
        return min(
            (record.timestamp for record, _ in self._buffer if math.isfinite(record.timestamp)),
            default=None
        )

    def add(self, record: BufferedRecord):
        """Buffer a record for the next batch"""
        if self.fatal_error is not None:
            raise self.fatal_error

        line = orjson.dumps(record.to_dict(), default=str) + b"\n"
        if not self._buffer:
            self._first_buffered_at = time.monotonic()
            self._wakeup.set()
        self._buffer.append((record, line))
        self._buffer_bytes += len(line)
        metrics.ARCHIVE_BUFFER.set(len(self._buffer))

        if self._size_triggered():
            self._wakeup.set()
        if not self.has_capacity:
            self._capacity_available.clear()

    async def wait_for_capacity(self):
        """Suspend until the buffer is below capacity"""
        while not self.has_capacity:
            if self.fatal_error is not None:
                raise self.fatal_error
            await self._capacity_available.wait()
        if self.fatal_error is not None:
            raise self.fatal_error

    def _size_triggered(self) -> bool:
        return len(self._buffer) >= self.flush_size or self._buffer_bytes >= self.flush_bytes

    def _seconds_until_due(self) -> Optional[float]:
        if self._first_buffered_at is None:
            return None
        return max(0.0, self.flush_interval - (time.monotonic() - self._first_buffered_at))

    def _next_batch_id(self, now: float) -> str:
        self._sequence += 1
        stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"{stamp}-{self._sequence:06d}-{uuid.uuid4().hex[:8]}"

    def _batch_key(self, batch_id: str, now: float) -> str:
        hour = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y/%m/%d/%H")
        return f"{self.prefix}{hour}/{batch_id}.json.gz"

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_flush_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_not_exception_type(ArchiveKeyExistsError),
            reraise=True,
        )

    async def flush(self) -> Optional[PartitionMarker]:
        """
        Write everything buffered so far as one batch

        Records stay buffered until the write succeeds; records added while
        the write is in progress go into the next batch.

        Returns:
            The batch's PartitionMarker, or None if the buffer was empty

        Raises:
            ArchiveWriteError: the batch could not be written
        """
        async with self._flush_lock:
            if self.fatal_error is not None:
                raise self.fatal_error
            if not self._buffer:
                return None

            count = len(self._buffer)
            batch = self._buffer[:count]
            body = encode_batch([line for _, line in batch])
            now = self.clock()
            batch_id = self._next_batch_id(now)
            key = self._batch_key(batch_id, now)
            start_time = time.time()

            try:
                async for attempt in self._retrying():
                    with attempt:
                        if attempt.retry_state.attempt_number > 1:
                            self.logger.warning(
                                f"Retrying archive batch {batch_id} "
                                f"(attempt {attempt.retry_state.attempt_number})"
                            )
                        try:
                            async with self.commit_lock:
                                await self.store.put_idempotent(key, body)
                        except Exception:
                            self.failed_attempts += 1
                            metrics.ARCHIVE_FLUSH_FAILURES.inc()
                            raise
            except Exception as e:
                raise self._fail(f"archive batch {batch_id} not written: {e}")

            timestamps = [record.timestamp for record, _ in batch if math.isfinite(record.timestamp)]
            max_timestamp = max(timestamps, default=None)
            del self._buffer[:count]
            self._buffer_bytes = sum(len(line) for _, line in self._buffer)
            self._first_buffered_at = time.monotonic() if self._buffer else None

            marker = PartitionMarker(
                batch_id=batch_id,
                key=key,
                record_count=count,
                min_event_timestamp=min(timestamps, default=None),
                max_event_timestamp=max_timestamp,
                watermark=self.tracker.next_watermark(max_timestamp, self.pending_min_timestamp),
                written_at=now,
            )
            try:
                async for attempt in self._retrying():
                    with attempt:
                        await self.tracker.record(marker)
            except Exception as e:
                raise self._fail(f"partition marker for {batch_id} not recorded: {e}")

            self.records_archived += count
            self.batches_written += 1
            metrics.ARCHIVE_BATCHES.inc()
            metrics.ARCHIVE_BUFFER.set(len(self._buffer))
            if self.has_capacity:
                self._capacity_available.set()

            self.logger.debug(
                f"Flushed {count} records to {key} in {(time.time() - start_time) * 1000:.2f}ms"
            )
            return marker

    def _fail(self, message: str) -> ArchiveWriteError:
        self.fatal_error = ArchiveWriteError(message)
        self.logger.error(f"Archive write failed permanently: {message}")
        # Wake paused consumers so they observe the failure
        self._capacity_available.set()
        return self.fatal_error

    async def run(self):
        """Background flush loop; exits with ArchiveWriteError on fatal failure"""
        self._running = True
        self.logger.info(
            f"Archiver started (flush_size={self.flush_size}, "
            f"flush_interval={self.flush_interval}s, capacity={self.buffer_capacity})"
        )
        while self._running:
            timeout = self._seconds_until_due()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

            due = self._seconds_until_due()
            if self._buffer and (self._size_triggered() or (due is not None and due <= 0)):
                await self.flush()

    async def close(self):
        """Stop the flush loop and write out what is buffered"""
        self._running = False
        self._wakeup.set()
        if self.fatal_error is None:
            await self.flush()
        self.logger.info(f"Archiver closed ({self.records_archived} records archived)")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "buffered": len(self._buffer),
            "buffered_bytes": self._buffer_bytes,
            "buffer_capacity": self.buffer_capacity,
            "has_capacity": self.has_capacity,
            "records_archived": self.records_archived,
            "batches_written": self.batches_written,
            "failed_attempts": self.failed_attempts,
            "fatal": self.fatal_error is not None,
        }
