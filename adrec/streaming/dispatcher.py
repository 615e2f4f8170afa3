"""
Outcome Dispatcher

Turns a scored event into its side effects: at most one notification per
event id within the dedup window, and always an archive record. A
notification that cannot be published is dead-lettered for replay.
"""

import logging
from typing import Any, Dict, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core import metrics
from ..core.errors import NotificationError
from ..core.models import (
    ArchiveRecord,
    ArchiveStatus,
    ClickEvent,
    DeadLetterReason,
    DeadLetterRecord,
    NotificationMessage,
    ScoreResult,
)
from ..storage.archive import Archiver
from ..storage.cache import IdempotencyCache
from ..storage.dead_letter import DeadLetterStore, InMemoryDeadLetterStore
from .notifications import NotificationSink


class OutcomeDispatcher:
    """
    Emits notification and archive side effects for each processed event.

    Every dispatch archives a record, including redelivered duplicates;
    readers of the archive deduplicate on event_id.
    """

    def __init__(
        self,
        sink: NotificationSink,
        archiver: Archiver,
        dedup: IdempotencyCache,
        threshold: float = 0.5,
        max_attempts: int = 3,
        backoff_base: float = 0.05,
        backoff_max: float = 1.0,
        dead_letters: Optional[DeadLetterStore] = None
    ):
        """
        Initialize the dispatcher

        Args:
            sink: Notification channel
            archiver: Archive buffer
            dedup: Idempotency cache of notified event ids
            threshold: Minimum score that triggers a notification
            max_attempts: Publish attempts before giving up on a notification
            backoff_base: First publish retry delay
            backoff_max: Upper bound on a publish retry delay
            dead_letters: Where undeliverable notifications are kept for replay
        """
        self.sink = sink
        self.archiver = archiver
        self.dedup = dedup
        self.threshold = threshold
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.dead_letters = dead_letters if dead_letters is not None else InMemoryDeadLetterStore()

        self.notifications_sent = 0
        self.duplicates_suppressed = 0
        self.notification_failures = 0
        self.records_dispatched = 0

        self.logger = logging.getLogger(__name__)

    async def dispatch(self, event: ClickEvent, result: ScoreResult) -> ArchiveRecord:
        """
        Notify if the score crosses the threshold, then archive

        Args:
            event: The click event
            result: Its score

        Returns:
            The archive record handed to the archiver
        """
        notified = False
        if result.score >= self.threshold:
            notified = await self._notify(event, result)

        record = ArchiveRecord(event=event, status=ArchiveStatus.SCORED, result=result, notified=notified)
        self._archive(record)
        return record

    async def dispatch_failure(self, event: ClickEvent, status: ArchiveStatus, error: str) -> ArchiveRecord:
        """Archive an event that could not be scored; never notifies"""
        record = ArchiveRecord(event=event, status=status, error=error)
        self._archive(record)
        return record

    def _archive(self, record: ArchiveRecord):
        self.archiver.add(record)
        self.records_dispatched += 1

    async def _notify(self, event: ClickEvent, result: ScoreResult) -> bool:
        if not await self.dedup.claim(event.event_id):
            self.duplicates_suppressed += 1
            metrics.NOTIFICATIONS.labels(outcome="duplicate").inc()
            self.logger.debug(f"Notification for {event.event_id} already sent")
            return False

        message = NotificationMessage(
            event_id=event.event_id,
            user_id=event.user_id,
            offer_id=event.offer_id,
            score=result.score,
        )
        published = False
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
                retry=retry_if_exception_type(NotificationError),
                reraise=True,
            ):
                with attempt:
                    await self.sink.publish(message)
            published = True
        except NotificationError as e:
            self.notification_failures += 1
            metrics.NOTIFICATIONS.labels(outcome="failed").inc()
            self.logger.error(f"Notification for {event.event_id} failed: {e}")
            await self.dead_letters.put(DeadLetterRecord(
                reason=DeadLetterReason.NOTIFICATION_FAILED,
                error=str(e),
                payload=message.to_dict(),
                event_id=event.event_id,
            ))
            return False
        finally:
            if not published:
                await self.dedup.release(event.event_id)

        await self.dedup.confirm(event.event_id)
        self.notifications_sent += 1
        metrics.NOTIFICATIONS.labels(outcome="sent").inc()
        return True

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "notifications_sent": self.notifications_sent,
            "duplicates_suppressed": self.duplicates_suppressed,
            "notification_failures": self.notification_failures,
            "records_dispatched": self.records_dispatched,
            "dedup": self.dedup.get_stats(),
        }
