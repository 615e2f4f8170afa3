"""
Stream Consumer for the Click-to-Offer Pipeline

Pulls ordered batches of raw click events from the event log, hands them to
the worker pool and advances the checkpoint once every event of a batch has
been dispatched. Every record read, valid or not, is also handed to the raw
clickstream archive. A crash before the checkpoint moves means redelivery,
never loss.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from ..core import metrics
from ..core.errors import ArchiveWriteError, MalformedEventError
from ..core.models import ClickEvent, DeadLetterReason, DeadLetterRecord, LogRecord, RawClickRecord
from ..storage.archive import Archiver
from ..storage.dead_letter import DeadLetterStore
from .event_log import EventLog


@dataclass
class WorkItem:
    """One parsed event waiting for a worker"""
    event: ClickEvent
    record: LogRecord
    done: asyncio.Future


class StreamConsumer:
    """
    Per-partition pull loops feeding the bounded work queue.

    Before each pull the consumer waits for capacity in every archiver it
    feeds, which is how archive backpressure pauses consumption.
    """

    def __init__(
        self,
        log: EventLog,
        queue: asyncio.Queue,
        archiver: Archiver,
        dead_letters: DeadLetterStore,
        batch_size: int = 10,
        poll_interval: float = 0.1,
        commit_lock: Optional[asyncio.Lock] = None,
        click_archiver: Optional[Archiver] = None
    ):
        """
        Initialize the consumer

        Args:
            log: Event log to read
            queue: Bounded queue shared with the worker pool
            archiver: Archiver whose capacity gates consumption
            dead_letters: Destination for malformed events
            batch_size: Maximum records per pull
            poll_interval: Sleep after an empty pull
            commit_lock: Lock serializing checkpoint advance with archive flushes
            click_archiver: Raw clickstream archive; None disables it
        """
        self.log = log
        self.queue = queue
        self.archiver = archiver
        self.dead_letters = dead_letters
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.commit_lock = commit_lock or archiver.commit_lock
        self.click_archiver = click_archiver
        self._archivers = [archiver] if click_archiver is None else [archiver, click_archiver]

        # Performance tracking
        self.processed_events = 0
        self.malformed_events = 0
        self.processing_errors = 0
        self.batches_committed = 0
        self.pause_count = 0
        self.start_time = time.time()

        self.paused: Set[int] = set()
        self.offsets: Dict[int, int] = {}
        self.is_running = False

        self.logger = logging.getLogger(__name__)

    async def run(self):
        """Consume every partition until stopped"""
        self.is_running = True
        self.start_time = time.time()
        partitions = self.log.partitions()
        self.logger.info(f"Starting consumption of partitions {partitions}")

        tasks = [asyncio.create_task(self._consume_partition(p)) for p in partitions]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    def stop(self):
        """Stop pulling; batches already handed out still complete and commit"""
        self.is_running = False

    async def _consume_partition(self, partition: int):
        offset = await self.log.committed(partition)
        self.offsets[partition] = offset
        self.logger.info(f"Partition {partition} resuming at offset {offset}")

        while self.is_running:
            try:
                await self._wait_for_capacity(partition)
                if not self.is_running:
                    break

                records = await self.log.fetch(partition, offset, self.batch_size)
                if not records:
                    await asyncio.sleep(self.poll_interval)
                    continue

                offset = await self._process_batch(partition, records)
                self.offsets[partition] = offset

            except (ArchiveWriteError, asyncio.CancelledError):
                raise
            except Exception as e:
                self.logger.error(f"Error consuming partition {partition}: {e}")
                self.processing_errors += 1
                await asyncio.sleep(self.poll_interval)  # Back off on errors

    def _has_capacity(self) -> bool:
        return all(archiver.has_capacity for archiver in self._archivers)

    async def _wait_for_capacity(self, partition: int):
        if self._has_capacity():
            return

        self.paused.add(partition)
        self.pause_count += 1
        metrics.CONSUMER_PAUSED.labels(partition=str(partition)).set(1)
        self.logger.warning(
            f"Partition {partition} paused: archive buffer full "
            f"({[archiver.buffered for archiver in self._archivers]} records)"
        )
        try:
            while not self._has_capacity():
                for archiver in self._archivers:
                    await archiver.wait_for_capacity()
        finally:
            self.paused.discard(partition)
            metrics.CONSUMER_PAUSED.labels(partition=str(partition)).set(0)
        self.logger.info(f"Partition {partition} resumed")

    def _parse(self, records: List[LogRecord]) -> Tuple[List[Tuple[ClickEvent, LogRecord]], List[DeadLetterRecord]]:
        parsed = []
        rejected = []
        for record in records:
            try:
                event = ClickEvent.from_dict(
                    record.payload,
                    default_event_id=f"{record.partition}:{record.offset}"
                )
                parsed.append((event, record))
            except MalformedEventError as e:
                event_id = None
                if isinstance(record.payload, dict) and record.payload.get("event_id"):
                    event_id = str(record.payload["event_id"])
                rejected.append(DeadLetterRecord(
                    reason=DeadLetterReason.MALFORMED_EVENT,
                    error=str(e),
                    payload=record.payload,
                    event_id=event_id,
                    partition=record.partition,
                    offset=record.offset,
                ))
        return parsed, rejected

    async def _process_batch(self, partition: int, records: List[LogRecord]) -> int:
        """
        Dispatch a batch and advance the checkpoint past it

        Args:
            partition: Partition the records came from
            records: Records in offset order

        Returns:
            The new checkpoint
        """
        start_time = time.time()
        if self.click_archiver is not None:
            for record in records:
                self.click_archiver.add(RawClickRecord(record))

        parsed, rejected = self._parse(records)

        for dead_letter in rejected:
            await self.dead_letters.put(dead_letter)
        self.malformed_events += len(rejected)

        loop = asyncio.get_running_loop()
        futures = []
        for event, record in parsed:
            done = loop.create_future()
            await self.queue.put(WorkItem(event=event, record=record, done=done))
            futures.append(done)

        # Let the whole batch settle before deciding; any failure means redelivery
        results = await asyncio.gather(*futures, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

        next_offset = records[-1].offset + 1
        async with self.commit_lock:
            await self.log.commit(partition, next_offset)

        self.processed_events += len(records)
        self.batches_committed += 1
        self.logger.debug(
            f"Partition {partition}: committed {len(records)} events up to offset {next_offset} "
            f"in {(time.time() - start_time) * 1000:.2f}ms"
        )
        return next_offset

    def get_statistics(self) -> Dict[str, Any]:
        """Get current consumption statistics"""
        uptime = time.time() - self.start_time
        throughput = self.processed_events / max(1, uptime)
        error_rate = self.processing_errors / max(1, self.batches_committed)

        return {
            "uptime_seconds": uptime,
            "processed_events": self.processed_events,
            "malformed_events": self.malformed_events,
            "processing_errors": self.processing_errors,
            "batches_committed": self.batches_committed,
            "throughput_eps": throughput,
            "error_rate": error_rate,
            "pause_count": self.pause_count,
            "paused_partitions": sorted(self.paused),
            "offsets": dict(self.offsets),
            "queue_size": self.queue.qsize(),
            "is_running": self.is_running
        }
