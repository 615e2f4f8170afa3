#!/usr/bin/env python3
"""
Click-to-Offer Pipeline - Demo

Runs the whole pipeline in-process: synthetic clicks go into an in-memory
event log, a local aiohttp app plays the model endpoint, and scored events
come out as notifications and gzip archive batches.
"""

import asyncio
import hashlib
import logging
import random
import time
from typing import Any, Dict, List

from aiohttp import web

from adrec.core.config import PipelineConfig
from adrec.core.engine import PipelineEngine
from adrec.storage.archive import decode_batch

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SCORING_PORT = 8765


def print_header(title: str, char: str = "="):
    """Print a formatted header"""
    print()
    print(char * 70)
    print(f" {title}")
    print(char * 70)
    print()


def print_section(title: str):
    """Print a section header"""
    print(f"\n{title}")
    print("-" * len(title))


async def score_handler(request: web.Request) -> web.Response:
    """Deterministic stand-in for the model: score derived from the feature indices"""
    body = await request.json()
    key = ",".join(str(index) for index, _ in body["features"])
    digest = hashlib.md5(key.encode("utf-8")).digest()
    score = int.from_bytes(digest[:4], "big") / 0xFFFFFFFF
    await asyncio.sleep(random.uniform(0.001, 0.01))
    return web.json_response({"score": score, "vocabulary_version": body["vocabulary_version"]})


async def start_scoring_stub() -> web.AppRunner:
    app = web.Application()
    app.router.add_post("/invocations", score_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "127.0.0.1", SCORING_PORT).start()
    return runner


def generate_clicks(num_events: int) -> List[Dict[str, Any]]:
    """Synthetic clickstream, with a few malformed events mixed in"""
    categories = ["electronics", "books", "fashion", "home", "sports"]
    countries = ["US", "DE", "FR", "JP", "BR"]
    events = []
    for i in range(num_events):
        event = {
            "event_id": f"click_{i}",
            "user_id": f"user_{random.randint(0, 200)}",
            "offer_id": f"offer_{random.randint(0, 50)}",
            "country_code": random.choice(countries),
            "category": random.choice(categories),
            "merchant": f"merchant_{random.randint(0, 20)}",
            "timestamp": time.time() - random.uniform(0, 5),
        }
        if i % 97 == 0:
            del event["offer_id"]
        events.append(event)
    return events


async def run_demo(num_events: int = 500):
    print_header("Click-to-Offer Pipeline Demo")

    runner = await start_scoring_stub()
    config = PipelineConfig(
        scoring_endpoint=f"http://127.0.0.1:{SCORING_PORT}/invocations",
        notification_threshold=0.8,
        archive_flush_size=100,
        archive_flush_interval=1.0,
        worker_count=8,
        partitions=[0, 1],
    )
    engine = PipelineEngine(config)

    clicks = generate_clicks(num_events)
    for i, click in enumerate(clicks):
        engine.event_log.append(click, partition=i % 2)

    print_section("Processing")
    run_task = asyncio.create_task(engine.run())
    while engine.event_log.lag(0) or engine.event_log.lag(1):
        await asyncio.sleep(0.1)
    await engine.shutdown()
    await run_task
    await runner.cleanup()

    print_section("Outcome")
    stats = engine.get_statistics()
    print(f"  Events scored:        {stats['scored']}")
    print(f"  Dead letters:         {engine.dead_letters.count_by_reason()}")
    print(f"  Notifications sent:   {len(engine.notification_sink.messages)}")
    print(f"  Archive batches:      {stats['archiver']['batches_written']}")
    print(f"  Raw clicks archived:  {stats['click_archiver']['records_archived']}")
    print(f"  Watermark:            {engine.tracker.watermark}")
    print(f"  Vocabulary sizes:     {stats['vocabulary']['field_sizes']}")
    print(f"  Average latency:      {stats['average_latency_ms']:.2f}ms")

    keys = await engine.archive_store.list(config.archive_prefix)
    if keys:
        records = decode_batch(await engine.archive_store.get(keys[0]))
        print_section(f"First archive batch ({keys[0]})")
        for record in records[:3]:
            print(f"  {record['event_id']}: score={record['score']} status={record['status']}")


def main():
    """Main entry point"""
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        print("\nDemo interrupted.")


if __name__ == "__main__":
    main()
