# tests/conftest.py
import asyncio
import time

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from adrec.core.config import PipelineConfig
from adrec.core.engine import PipelineEngine
from adrec.core.models import ArchiveRecord, ArchiveStatus, ClickEvent, ScoreResult
from adrec.ml.scoring import CircuitBreaker, ScoringClient
from adrec.storage.archive import InMemoryArchiveStore
from adrec.storage.cache import IdempotencyCache
from adrec.storage.dead_letter import InMemoryDeadLetterStore
from adrec.storage.vocabulary import VocabularyStore
from adrec.streaming.event_log import InMemoryEventLog
from adrec.streaming.notifications import InMemoryNotificationSink


FIELDS = ["user_id", "offer_id", "country_code", "category", "merchant"]


class FakeClock:
    """Manually advanced clock for breaker and cache tests"""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_event(event_id="e1", **overrides) -> ClickEvent:
    values = dict(
        event_id=event_id,
        user_id="u1",
        offer_id="o1",
        country_code="US",
        category="c1",
        merchant="m1",
        timestamp=time.time(),
    )
    values.update(overrides)
    return ClickEvent(**values)


def make_archive_record(event_id, timestamp=None, score=0.7) -> ArchiveRecord:
    event = make_event(event_id, timestamp=timestamp or time.time())
    result = ScoreResult(event_id=event_id, score=score, vocabulary_version=1)
    return ArchiveRecord(event=event, status=ArchiveStatus.SCORED, result=result)


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vocabulary():
    return VocabularyStore(FIELDS, max_size=16, hash_buckets=8)


@pytest_asyncio.fixture
async def scoring_server():
    """
    Factory for local scoring endpoints.

    `await scoring_server(handler)` starts an aiohttp app serving POST /score
    and returns its URL; all servers are closed at teardown.
    """
    servers = []

    async def start(handler):
        app = web.Application()
        app.router.add_post("/score", handler)
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return str(server.make_url("/score"))

    yield start

    for server in servers:
        await server.close()


def fixed_score(score: float, requests: list = None):
    """Handler that answers every request with the same score"""

    async def handler(request):
        body = await request.json()
        if requests is not None:
            requests.append(body)
        return web.json_response({"score": score, "vocabulary_version": body["vocabulary_version"]})

    return handler


def make_engine(endpoint: str, archive_store=None, event_log=None, **overrides) -> PipelineEngine:
    """Engine wired to in-memory collaborators and a fast-retrying scoring client"""
    values = dict(
        scoring_endpoint=endpoint,
        scoring_timeout=0.5,
        scoring_max_attempts=3,
        scoring_backoff_base=0.001,
        scoring_backoff_max=0.01,
        max_vocabulary_size=64,
        hash_buckets=16,
        archive_flush_size=10,
        archive_flush_interval=0.05,
        archive_buffer_capacity=100,
        worker_count=4,
        poll_interval=0.01,
        shutdown_grace_period=2.0,
    )
    values.update(overrides)
    config = PipelineConfig(**values)
    client = ScoringClient(
        endpoint,
        model_id="offer-ranker",
        timeout=config.scoring_timeout,
        max_attempts=config.scoring_max_attempts,
        backoff_base=config.scoring_backoff_base,
        backoff_max=config.scoring_backoff_max,
        breaker=CircuitBreaker(
            endpoint,
            failure_threshold=config.breaker_failure_threshold,
            reset_timeout=config.breaker_reset_timeout,
        ),
    )
    return PipelineEngine(
        config,
        event_log=event_log or InMemoryEventLog(partitions=len(config.partitions)),
        scoring_client=client,
        notification_sink=InMemoryNotificationSink(),
        archive_store=archive_store or InMemoryArchiveStore(),
        dead_letters=InMemoryDeadLetterStore(),
        dedup=IdempotencyCache(window_seconds=60, max_entries=1000),
    )
