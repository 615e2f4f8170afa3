# tests/test_dispatcher.py
import pytest

from adrec.core.errors import NotificationError
from adrec.core.models import ArchiveStatus, DeadLetterReason, ScoreResult
from adrec.storage.archive import Archiver, InMemoryArchiveStore
from adrec.storage.cache import IdempotencyCache
from adrec.storage.dead_letter import InMemoryDeadLetterStore
from adrec.streaming.dispatcher import OutcomeDispatcher
from adrec.streaming.notifications import InMemoryNotificationSink, NotificationSink

from conftest import make_event


class FailingSink(NotificationSink):
    def __init__(self, failures):
        self.failures = failures
        self.attempts = 0
        self.messages = []

    async def publish(self, message):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise NotificationError("channel down")
        self.messages.append(message)


def make_dispatcher(sink=None, threshold=0.5):
    archiver = Archiver(InMemoryArchiveStore(), flush_size=100, buffer_capacity=100)
    dedup = IdempotencyCache(window_seconds=60, max_entries=100)
    dispatcher = OutcomeDispatcher(
        sink or InMemoryNotificationSink(),
        archiver,
        dedup,
        threshold=threshold,
        max_attempts=3,
        backoff_base=0.001,
        backoff_max=0.01,
        dead_letters=InMemoryDeadLetterStore(),
    )
    return dispatcher, archiver, dedup


def scored(event, score):
    return ScoreResult(event_id=event.event_id, score=score, vocabulary_version=1)


@pytest.mark.asyncio
async def test_high_score_notifies_and_archives():
    dispatcher, archiver, _ = make_dispatcher()
    event = make_event("e1")

    record = await dispatcher.dispatch(event, scored(event, 0.92))

    messages = dispatcher.sink.messages
    assert len(messages) == 1
    assert messages[0].event_id == "e1"
    assert messages[0].offer_id == "o1"
    assert messages[0].score == pytest.approx(0.92)
    assert record.notified
    assert record.status is ArchiveStatus.SCORED
    assert archiver.buffered == 1


@pytest.mark.asyncio
async def test_low_score_only_archives():
    dispatcher, archiver, _ = make_dispatcher()
    event = make_event("e1")

    record = await dispatcher.dispatch(event, scored(event, 0.2))

    assert dispatcher.sink.messages == []
    assert not record.notified
    assert archiver.buffered == 1


@pytest.mark.asyncio
async def test_threshold_is_inclusive():
    dispatcher, _, _ = make_dispatcher(threshold=0.5)
    event = make_event("e1")

    await dispatcher.dispatch(event, scored(event, 0.5))

    assert len(dispatcher.sink.messages) == 1


@pytest.mark.asyncio
async def test_duplicate_dispatch_notifies_once_archives_twice():
    dispatcher, archiver, _ = make_dispatcher()
    event = make_event("e1")

    first = await dispatcher.dispatch(event, scored(event, 0.9))
    second = await dispatcher.dispatch(event, scored(event, 0.9))

    assert len(dispatcher.sink.messages) == 1
    assert first.notified and not second.notified
    assert archiver.buffered == 2
    assert dispatcher.duplicates_suppressed == 1


@pytest.mark.asyncio
async def test_publish_retried_until_success():
    sink = FailingSink(failures=2)
    dispatcher, _, dedup = make_dispatcher(sink=sink)
    event = make_event("e1")

    record = await dispatcher.dispatch(event, scored(event, 0.9))

    assert record.notified
    assert sink.attempts == 3
    assert await dedup.seen("e1")


@pytest.mark.asyncio
async def test_failed_publish_releases_claim():
    sink = FailingSink(failures=3)
    dispatcher, archiver, dedup = make_dispatcher(sink=sink)
    event = make_event("e1")

    record = await dispatcher.dispatch(event, scored(event, 0.9))

    assert not record.notified
    assert dispatcher.notification_failures == 1
    assert archiver.buffered == 1
    assert not await dedup.seen("e1")
    assert dispatcher.dead_letters.count_by_reason() == {"notification_failed": 1}

    # A redelivery gets another chance to notify
    retry = await dispatcher.dispatch(event, scored(event, 0.9))
    assert retry.notified
    assert len(sink.messages) == 1


@pytest.mark.asyncio
async def test_failure_outcome_never_notifies():
    dispatcher, archiver, _ = make_dispatcher()
    event = make_event("e2")

    record = await dispatcher.dispatch_failure(event, ArchiveStatus.SCORING_FAILED, "timed out")

    assert dispatcher.sink.messages == []
    assert record.to_dict()["status"] == "scoring_failed"
    assert record.to_dict()["score"] is None
    assert archiver.buffered == 1


@pytest.mark.asyncio
async def test_undeliverable_notification_is_dead_lettered():
    sink = FailingSink(failures=10)
    dispatcher, archiver, _ = make_dispatcher(sink=sink)
    event = make_event("e7", user_id="u7", offer_id="o7")

    record = await dispatcher.dispatch(event, scored(event, 0.8))

    assert not record.notified
    assert sink.attempts == 3
    assert archiver.buffered == 1
    [dead_letter] = dispatcher.dead_letters.records
    assert dead_letter.reason is DeadLetterReason.NOTIFICATION_FAILED
    assert dead_letter.event_id == "e7"
    assert dead_letter.payload == {"event_id": "e7", "user_id": "u7", "offer_id": "o7", "score": 0.8}
    assert "channel down" in dead_letter.error
