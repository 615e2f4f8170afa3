"""
Pipeline Engine

Wires the click-to-offer pipeline together and runs it: partition consumers
feed a bounded queue, a pool of workers takes each event through
encode -> score -> dispatch, and the archivers (scored outcomes and the raw
clickstream) flush in the background.
"""

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

from . import metrics
from .config import PipelineConfig
from .encoder import FeatureEncoder
from .errors import ArchiveWriteError, CircuitOpenError, ScoringError, ScoringTimeoutError
from .models import ArchiveRecord, ArchiveStatus, ClickEvent, DeadLetterReason, DeadLetterRecord, LogRecord
from ..ml.scoring import CircuitBreaker, CircuitState, ScoringClient
from ..storage.archive import ArchiveStore, Archiver, InMemoryArchiveStore, LocalArchiveStore
from ..storage.cache import IdempotencyCache
from ..storage.dead_letter import DeadLetterStore, InMemoryDeadLetterStore, LocalDeadLetterStore
from ..storage.partitions import MARKER_PREFIX, PartitionTracker
from ..storage.vocabulary import VocabularyStore
from ..streaming.consumer import StreamConsumer, WorkItem
from ..streaming.dispatcher import OutcomeDispatcher
from ..streaming.event_log import EventLog, InMemoryEventLog, KafkaEventLog
from ..streaming.notifications import InMemoryNotificationSink, NotificationSink, WebhookNotificationSink


class PipelineEngine:
    """
    Real-time event-to-offer serving pipeline
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        event_log: Optional[EventLog] = None,
        scoring_client: Optional[ScoringClient] = None,
        notification_sink: Optional[NotificationSink] = None,
        archive_store: Optional[ArchiveStore] = None,
        dead_letters: Optional[DeadLetterStore] = None,
        vocabulary: Optional[VocabularyStore] = None,
        dedup: Optional[IdempotencyCache] = None
    ):
        """
        Initialize the pipeline engine

        Components that are not passed in are built from the configuration.

        Args:
            config: Pipeline configuration
            event_log: Source of raw click events
            scoring_client: Client for the model endpoint
            notification_sink: Shopper-facing channel
            archive_store: Durable batch store
            dead_letters: Dead-letter store
            vocabulary: Shared vocabulary store
            dedup: Notification idempotency cache
        """
        self.config = config or PipelineConfig()
        self.config.validate()
        self.logger = logging.getLogger(__name__)
        config = self.config

        # Core components
        self.vocabulary = vocabulary or self._load_vocabulary()
        self.encoder = FeatureEncoder(self.vocabulary, config.encoded_fields)
        self.scoring_client = scoring_client or ScoringClient(
            endpoint=config.scoring_endpoint,
            model_id=config.scoring_model_id,
            timeout=config.scoring_timeout,
            max_attempts=config.scoring_max_attempts,
            backoff_base=config.scoring_backoff_base,
            backoff_max=config.scoring_backoff_max,
            max_in_flight=config.scoring_max_in_flight,
            breaker=CircuitBreaker(
                config.scoring_endpoint,
                failure_threshold=config.breaker_failure_threshold,
                reset_timeout=config.breaker_reset_timeout
            )
        )

        if archive_store is None:
            archive_store = LocalArchiveStore(config.archive_root) if config.archive_root else InMemoryArchiveStore()
        self.archive_store = archive_store
        if dead_letters is None:
            dead_letters = (
                LocalDeadLetterStore(config.dead_letter_path)
                if config.dead_letter_path else InMemoryDeadLetterStore()
            )
        self.dead_letters = dead_letters

        self.commit_lock = asyncio.Lock()
        self.tracker = PartitionTracker(self.archive_store)
        self.archiver = Archiver(
            self.archive_store,
            self.tracker,
            flush_size=config.archive_flush_size,
            flush_bytes=config.archive_flush_bytes,
            flush_interval=config.archive_flush_interval,
            buffer_capacity=config.archive_buffer_capacity,
            max_flush_attempts=config.archive_max_flush_attempts,
            backoff_base=config.archive_backoff_base,
            backoff_max=config.archive_backoff_max,
            prefix=config.archive_prefix,
            commit_lock=self.commit_lock
        )

        # Raw clickstream, archived as read
        self.click_tracker: Optional[PartitionTracker] = None
        self.click_archiver: Optional[Archiver] = None
        if config.click_archive_prefix:
            self.click_tracker = PartitionTracker(
                self.archive_store, marker_prefix=f"{MARKER_PREFIX}{config.click_archive_prefix}"
            )
            self.click_archiver = Archiver(
                self.archive_store,
                self.click_tracker,
                flush_size=config.archive_flush_size,
                flush_bytes=config.archive_flush_bytes,
                flush_interval=config.archive_flush_interval,
                buffer_capacity=config.archive_buffer_capacity,
                max_flush_attempts=config.archive_max_flush_attempts,
                backoff_base=config.archive_backoff_base,
                backoff_max=config.archive_backoff_max,
                prefix=config.click_archive_prefix,
                commit_lock=self.commit_lock
            )

        self.dedup = dedup or IdempotencyCache.from_url(
            config.redis_url,
            window_seconds=config.dedup_window,
            max_entries=config.dedup_max_entries
        )
        if notification_sink is None:
            notification_sink = (
                WebhookNotificationSink(config.notification_webhook)
                if config.notification_webhook else InMemoryNotificationSink()
            )
        self.notification_sink = notification_sink
        self.dispatcher = OutcomeDispatcher(
            self.notification_sink,
            self.archiver,
            self.dedup,
            threshold=config.notification_threshold,
            max_attempts=config.notification_max_attempts,
            dead_letters=self.dead_letters
        )

        if event_log is None:
            if config.kafka_brokers:
                event_log = KafkaEventLog(
                    config.kafka_brokers, config.kafka_topic, config.kafka_group, config.partitions
                )
            else:
                event_log = InMemoryEventLog(partitions=len(config.partitions))
        self.event_log = event_log

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self.consumer = StreamConsumer(
            self.event_log,
            self.queue,
            self.archiver,
            self.dead_letters,
            batch_size=config.batch_size,
            poll_interval=config.poll_interval,
            commit_lock=self.commit_lock,
            click_archiver=self.click_archiver
        )

        # Performance tracking
        self.event_count = 0
        self.scored_count = 0
        self.failed_count = 0
        self.error_count = 0
        self.total_latency = 0.0
        self.start_time = time.time()

        self.fatal_error: Optional[BaseException] = None
        self.is_running = False
        self._stopping = False
        self._workers: List[asyncio.Task] = []
        self._consumer_task: Optional[asyncio.Task] = None
        self._archiver_task: Optional[asyncio.Task] = None
        self._click_archiver_task: Optional[asyncio.Task] = None

        self.logger.info(f"PipelineEngine initialized with config: {self.config}")

    def _load_vocabulary(self) -> VocabularyStore:
        config = self.config
        kwargs = dict(
            fields=config.encoded_fields,
            max_size=config.max_vocabulary_size,
            hash_buckets=config.hash_buckets,
            hashed_fields=config.hashed_fields
        )
        if config.vocabulary_path and os.path.exists(config.vocabulary_path):
            return VocabularyStore.load(config.vocabulary_path, **kwargs)
        return VocabularyStore(**kwargs)

    async def process_event(self, event: ClickEvent, record: Optional[LogRecord] = None) -> ArchiveRecord:
        """
        Take one event through encode -> score -> dispatch

        Scoring failures are dead-lettered and archived with an error status;
        only ArchiveWriteError escapes.

        Args:
            event: Click event
            record: Log record the event was read from, if any

        Returns:
            The archive record produced for the event
        """
        start_time = time.time()
        self.event_count += 1

        try:
            vector = self.encoder.encode(event)
            result = await self.scoring_client.score(vector)
        except CircuitOpenError as e:
            return await self._fail_event(
                event, record, DeadLetterReason.CIRCUIT_OPEN, ArchiveStatus.CIRCUIT_OPEN, e
            )
        except ScoringTimeoutError as e:
            return await self._fail_event(
                event, record, DeadLetterReason.SCORING_TIMEOUT, ArchiveStatus.SCORING_FAILED, e
            )
        except ScoringError as e:
            return await self._fail_event(
                event, record, DeadLetterReason.SCORING_UNAVAILABLE, ArchiveStatus.SCORING_FAILED, e
            )
        except Exception as e:
            self.error_count += 1
            self.logger.exception(f"Unexpected error processing event {event.event_id}")
            return await self._fail_event(
                event, record, DeadLetterReason.PROCESSING_ERROR, ArchiveStatus.SCORING_FAILED, e
            )

        archive_record = await self.dispatcher.dispatch(event, result)
        self.scored_count += 1
        metrics.EVENTS_PROCESSED.labels(outcome="scored").inc()
        self.total_latency += time.time() - start_time
        return archive_record

    async def _fail_event(
        self,
        event: ClickEvent,
        record: Optional[LogRecord],
        reason: DeadLetterReason,
        status: ArchiveStatus,
        error: Exception
    ) -> ArchiveRecord:
        self.failed_count += 1
        metrics.EVENTS_PROCESSED.labels(outcome=reason.value).inc()
        await self.dead_letters.put(DeadLetterRecord(
            reason=reason,
            error=str(error),
            payload=record.payload if record is not None else event.to_dict(),
            event_id=event.event_id,
            partition=record.partition if record is not None else None,
            offset=record.offset if record is not None else None,
        ))
        return await self.dispatcher.dispatch_failure(event, status, str(error))

    async def _worker(self, worker_id: int):
        """Pull work items until cancelled"""
        while True:
            item: WorkItem = await self.queue.get()
            try:
                await self.process_event(item.event, item.record)
                if not item.done.done():
                    item.done.set_result(True)
            except asyncio.CancelledError:
                if not item.done.done():
                    item.done.cancel()
                raise
            except ArchiveWriteError as e:
                self.fatal_error = e
                if not item.done.done():
                    item.done.set_exception(e)
            except Exception as e:
                # Leaves the batch uncommitted so it is redelivered
                self.error_count += 1
                self.logger.error(f"Worker {worker_id} failed on event {item.event.event_id}: {e}")
                if not item.done.done():
                    item.done.set_exception(e)
            finally:
                self.queue.task_done()

    async def start(self):
        """Start the archiver, the worker pool and the consumers"""
        if self.is_running:
            return
        self.logger.info(f"Starting pipeline with {self.config.worker_count} workers...")
        self.is_running = True
        self._stopping = False
        self.start_time = time.time()

        self._archiver_task = asyncio.create_task(self.archiver.run())
        if self.click_archiver is not None:
            self._click_archiver_task = asyncio.create_task(self.click_archiver.run())
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self.config.worker_count)
        ]
        self._consumer_task = asyncio.create_task(self.consumer.run())

    async def run(self):
        """
        Run until stopped or until a fatal archive failure

        Raises:
            ArchiveWriteError: the archive could not be written
        """
        await self.start()
        try:
            tasks = {self._archiver_task, self._consumer_task}
            if self._click_archiver_task is not None:
                tasks.add(self._click_archiver_task)
            done, _ = await asyncio.wait(
                tasks,
                return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    self.fatal_error = task.exception()
                    self.logger.error(f"Pipeline stopping on fatal error: {self.fatal_error}")
        finally:
            await self.stop()

        if self.fatal_error is not None:
            raise self.fatal_error

    async def stop(self, grace_period: Optional[float] = None):
        """
        Stop consumption and drain in-flight events

        Batches that do not finish within the grace period are abandoned
        uncommitted and will be redelivered on restart.
        """
        if self._stopping or not self.is_running:
            return
        self._stopping = True
        grace_period = self.config.shutdown_grace_period if grace_period is None else grace_period
        self.logger.info(f"Stopping pipeline (grace period {grace_period}s)...")

        self.consumer.stop()
        if self._consumer_task is not None and not self._consumer_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._consumer_task), timeout=grace_period)
            except asyncio.TimeoutError:
                self.logger.warning("Grace period elapsed; abandoning uncommitted batches")
                self._consumer_task.cancel()
            except ArchiveWriteError as e:
                self.fatal_error = e
            except Exception as e:
                self.logger.error(f"Consumer failed during shutdown: {e}")
            await asyncio.gather(self._consumer_task, return_exceptions=True)

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        for archiver in (self.archiver, self.click_archiver):
            if archiver is None or self.fatal_error is not None:
                continue
            try:
                await archiver.close()
            except ArchiveWriteError as e:
                self.fatal_error = e
        for task in (self._archiver_task, self._click_archiver_task):
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        self.is_running = False
        self.logger.info("Pipeline stopped")

    def save_vocabulary(self):
        if self.config.vocabulary_path:
            self.vocabulary.save(self.config.vocabulary_path)

    def get_statistics(self) -> Dict[str, Any]:
        """Get pipeline statistics"""
        uptime = time.time() - self.start_time
        avg_latency = self.total_latency / max(1, self.scored_count) * 1000  # Convert to ms
        throughput = self.event_count / max(1, uptime)

        return {
            "uptime_seconds": uptime,
            "events": self.event_count,
            "scored": self.scored_count,
            "failed": self.failed_count,
            "errors": self.error_count,
            "average_latency_ms": avg_latency,
            "throughput_eps": throughput,
            "dead_letters": self.dead_letters.count,
            "watermark": self.tracker.watermark,
            "consumer": self.consumer.get_statistics(),
            "scoring": self.scoring_client.get_stats(),
            "dispatcher": self.dispatcher.get_statistics(),
            "archiver": self.archiver.get_stats(),
            "click_archiver": self.click_archiver.get_stats() if self.click_archiver else None,
            "partitions": self.tracker.get_stats(),
            "vocabulary": self.vocabulary.get_stats(),
        }

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check"""
        health = {
            "status": "healthy",
            "timestamp": time.time(),
            "components": {}
        }

        if self.fatal_error is not None:
            health["status"] = "failed"
            health["components"]["archiver"] = f"failed: {self.fatal_error}"
        elif not self.is_running:
            health["status"] = "stopped"

        circuit = self.scoring_client.breaker.state
        health["components"]["scoring_circuit"] = circuit.value
        if circuit is not CircuitState.CLOSED and health["status"] == "healthy":
            health["status"] = "degraded"

        if self.consumer.paused:
            health["components"]["consumer"] = f"paused: {sorted(self.consumer.paused)}"
            if health["status"] == "healthy":
                health["status"] = "degraded"
        else:
            health["components"]["consumer"] = "healthy"

        if await self.dedup.ping():
            health["components"]["dedup_cache"] = "healthy"
        else:
            health["components"]["dedup_cache"] = "unhealthy"
            if health["status"] == "healthy":
                health["status"] = "degraded"

        health["components"]["dead_letters"] = self.dead_letters.count
        return health

    async def shutdown(self):
        """Gracefully shutdown the engine and close connections"""
        self.logger.info("Shutting down PipelineEngine...")

        await self.stop()
        self.save_vocabulary()

        await self.scoring_client.close()
        await self.notification_sink.close()
        await self.dedup.close()
        await self.dead_letters.close()
        await self.event_log.close()
        await self.archive_store.close()

        self.logger.info("PipelineEngine shutdown complete")

    def __repr__(self) -> str:
        stats = self.get_statistics()
        return f"""PipelineEngine(
    events={stats['events']},
    scored={stats['scored']},
    dead_letters={stats['dead_letters']},
    avg_latency_ms={stats['average_latency_ms']:.2f}
)"""
