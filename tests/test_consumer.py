# tests/test_consumer.py
import asyncio

import pytest

from adrec.core.errors import ArchiveWriteError
from adrec.core.models import DeadLetterReason
from adrec.storage.archive import Archiver, InMemoryArchiveStore, decode_batch
from adrec.storage.dead_letter import InMemoryDeadLetterStore
from adrec.streaming.consumer import StreamConsumer
from adrec.streaming.event_log import InMemoryEventLog

from conftest import make_archive_record, wait_until


def click(i):
    return {"event_id": f"e{i}", "user_id": f"u{i}", "offer_id": "o1", "timestamp": 100.0 + i}


class Workers:
    """Stand-in worker pool that completes items and remembers them"""

    def __init__(self, queue, fail_once=()):
        self.queue = queue
        self.fail_once = set(fail_once)
        self.seen = []
        self.task = None

    async def _run(self):
        while True:
            item = await self.queue.get()
            self.seen.append(item.event.event_id)
            if item.event.event_id in self.fail_once:
                self.fail_once.discard(item.event.event_id)
                item.done.set_exception(RuntimeError("worker crashed"))
            else:
                item.done.set_result(True)
            self.queue.task_done()

    def start(self):
        self.task = asyncio.create_task(self._run())

    async def stop(self):
        self.task.cancel()
        await asyncio.gather(self.task, return_exceptions=True)


def make_consumer(log, archiver=None, batch_size=3, click_archiver=None):
    queue = asyncio.Queue(maxsize=8)
    archiver = archiver or Archiver(InMemoryArchiveStore(), flush_size=100, buffer_capacity=100)
    consumer = StreamConsumer(
        log, queue, archiver, InMemoryDeadLetterStore(), batch_size=batch_size, poll_interval=0.01,
        click_archiver=click_archiver
    )
    return consumer, Workers(queue)


async def run_until(consumer, predicate):
    task = asyncio.create_task(consumer.run())
    try:
        await wait_until(predicate)
    finally:
        consumer.stop()
        await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_checkpoint_advances_per_completed_batch():
    log = InMemoryEventLog()
    log.extend([click(i) for i in range(7)])
    consumer, workers = make_consumer(log, batch_size=3)
    workers.start()

    await run_until(consumer, lambda: log.lag(0) == 0)
    await workers.stop()

    assert log.commit_history == [(0, 3), (0, 6), (0, 7)]
    assert workers.seen == [f"e{i}" for i in range(7)]
    assert consumer.offsets[0] == 7


@pytest.mark.asyncio
async def test_checkpoint_waits_for_every_event_of_the_batch():
    log = InMemoryEventLog()
    log.extend([click(i) for i in range(3)])
    consumer, _ = make_consumer(log, batch_size=3)

    task = asyncio.create_task(consumer.run())
    await wait_until(lambda: consumer.queue.qsize() == 3)
    await asyncio.sleep(0.05)
    assert log.commit_history == []

    items = [consumer.queue.get_nowait() for _ in range(3)]
    for item in items[:2]:
        item.done.set_result(True)
    await asyncio.sleep(0.05)
    assert log.commit_history == []

    items[2].done.set_result(True)
    await wait_until(lambda: log.commit_history == [(0, 3)])
    consumer.stop()
    await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
async def test_failed_batch_is_redelivered():
    log = InMemoryEventLog()
    log.extend([click(i) for i in range(3)])
    consumer, workers = make_consumer(log, batch_size=3)
    workers.fail_once = {"e1"}
    workers.start()

    await run_until(consumer, lambda: log.lag(0) == 0)
    await workers.stop()

    assert log.commit_history == [(0, 3)]
    assert workers.seen.count("e1") == 2
    assert consumer.processing_errors == 1


@pytest.mark.asyncio
async def test_malformed_events_are_dead_lettered_not_enqueued():
    log = InMemoryEventLog()
    log.append(click(0))
    log.append({"event_id": "bad", "user_id": "u1"})
    log.append("not json")
    log.append(click(3))
    consumer, workers = make_consumer(log, batch_size=10)
    workers.start()

    await run_until(consumer, lambda: log.lag(0) == 0)
    await workers.stop()

    assert workers.seen == ["e0", "e3"]
    dead = consumer.dead_letters.records
    assert [d.reason for d in dead] == [DeadLetterReason.MALFORMED_EVENT] * 2
    assert [d.event_id for d in dead] == ["bad", None]
    assert [d.offset for d in dead] == [1, 2]
    assert dead[1].payload == "not json"
    assert consumer.malformed_events == 2


@pytest.mark.asyncio
async def test_consumer_pauses_while_archive_is_full():
    log = InMemoryEventLog()
    log.extend([click(i) for i in range(3)])
    archiver = Archiver(InMemoryArchiveStore(), flush_size=1, buffer_capacity=1)
    consumer, workers = make_consumer(log, archiver=archiver)
    workers.start()

    archiver.add(make_archive_record("buffered"))

    task = asyncio.create_task(consumer.run())
    await wait_until(lambda: consumer.paused == {0})
    await asyncio.sleep(0.05)
    assert log.fetch_count == 0
    assert consumer.get_statistics()["paused_partitions"] == [0]

    await archiver.flush()
    await wait_until(lambda: log.lag(0) == 0)
    assert consumer.paused == set()
    assert consumer.pause_count == 1

    consumer.stop()
    await asyncio.wait_for(task, timeout=2.0)
    await workers.stop()


@pytest.mark.asyncio
async def test_fatal_archive_error_stops_consumption():
    log = InMemoryEventLog()
    log.extend([click(i) for i in range(3)])
    archiver = Archiver(InMemoryArchiveStore(), flush_size=1, buffer_capacity=1)
    consumer, _ = make_consumer(log, archiver=archiver)

    archiver.add(make_archive_record("buffered"))
    task = asyncio.create_task(consumer.run())
    await wait_until(lambda: consumer.paused == {0})

    archiver._fail("disk gone")

    with pytest.raises(ArchiveWriteError):
        await asyncio.wait_for(task, timeout=2.0)
    assert log.commit_history == []


@pytest.mark.asyncio
async def test_partitions_are_consumed_independently():
    log = InMemoryEventLog(partitions=2)
    log.extend([click(i) for i in range(4)], partition=0)
    log.extend([click(i) for i in range(10, 12)], partition=1)
    consumer, workers = make_consumer(log, batch_size=2)
    workers.start()

    await run_until(consumer, lambda: log.lag(0) == 0 and log.lag(1) == 0)
    await workers.stop()

    assert sorted(workers.seen) == sorted([f"e{i}" for i in (0, 1, 2, 3, 10, 11)])
    assert (1, 2) in log.commit_history
    assert consumer.offsets == {0: 4, 1: 2}


@pytest.mark.asyncio
async def test_every_raw_record_reaches_the_click_archive():
    log = InMemoryEventLog()
    log.append(click(0))
    log.append({"event_id": "bad", "user_id": "u1"})
    log.append(click(2))
    store = InMemoryArchiveStore()
    clicks = Archiver(store, flush_size=100, buffer_capacity=100, prefix="clicks/")
    consumer, workers = make_consumer(log, batch_size=10, click_archiver=clicks)
    workers.start()

    await run_until(consumer, lambda: log.lag(0) == 0)
    await workers.stop()

    assert clicks.buffered == 3
    marker = await clicks.flush()
    assert marker.key.startswith("clicks/")
    raw = decode_batch(store.objects[marker.key])
    assert [(r["partition"], r["offset"]) for r in raw] == [(0, 0), (0, 1), (0, 2)]
    assert raw[1]["payload"] == {"event_id": "bad", "user_id": "u1"}
    assert workers.seen == ["e0", "e2"]


@pytest.mark.asyncio
async def test_consumer_pauses_while_click_archive_is_full():
    log = InMemoryEventLog()
    log.extend([click(i) for i in range(3)])
    clicks = Archiver(InMemoryArchiveStore(), flush_size=100, buffer_capacity=2, prefix="clicks/")
    consumer, workers = make_consumer(log, batch_size=2, click_archiver=clicks)
    workers.start()

    task = asyncio.create_task(consumer.run())
    await wait_until(lambda: consumer.paused == {0})
    assert log.commit_history == [(0, 2)]

    await clicks.flush()
    await wait_until(lambda: log.lag(0) == 0)
    assert consumer.pause_count == 1

    consumer.stop()
    await asyncio.wait_for(task, timeout=2.0)
    await workers.stop()
