"""
Event log adapters

An event log is a restartable, per-partition ordered sequence of raw click
payloads. The checkpoint of a partition is the offset of the next record to
read; records before it are never redelivered.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

import orjson
from confluent_kafka import Consumer, KafkaException, TopicPartition

from ..core.models import LogRecord


class EventLog(ABC):
    """Ordered, checkpointed source of raw events"""

    @abstractmethod
    def partitions(self) -> List[int]:
        pass

    @abstractmethod
    async def fetch(self, partition: int, offset: int, max_records: int) -> List[LogRecord]:
        """Up to max_records records of a partition starting at offset"""

    @abstractmethod
    async def committed(self, partition: int) -> int:
        """Checkpoint of a partition"""

    @abstractmethod
    async def commit(self, partition: int, offset: int):
        """Advance the checkpoint of a partition to offset"""

    async def close(self):
        pass


class InMemoryEventLog(EventLog):
    """Event log held in process memory; used by tests, the demo and HTTP ingest"""

    def __init__(self, partitions: int = 1):
        self._records: Dict[int, List[Any]] = {p: [] for p in range(partitions)}
        self._committed: Dict[int, int] = {p: 0 for p in range(partitions)}
        self.fetch_count = 0
        self.commit_history: List[tuple] = []

    def partitions(self) -> List[int]:
        return sorted(self._records)

    def append(self, payload: Any, partition: int = 0) -> int:
        """Append a payload; returns its offset"""
        records = self._records[partition]
        records.append(payload)
        return len(records) - 1

    def extend(self, payloads: List[Any], partition: int = 0):
        for payload in payloads:
            self.append(payload, partition)

    def size(self, partition: int = 0) -> int:
        return len(self._records[partition])

    async def fetch(self, partition: int, offset: int, max_records: int) -> List[LogRecord]:
        self.fetch_count += 1
        records = self._records[partition][offset:offset + max_records]
        return [
            LogRecord(partition=partition, offset=offset + i, payload=payload)
            for i, payload in enumerate(records)
        ]

    async def committed(self, partition: int) -> int:
        return self._committed[partition]

    async def commit(self, partition: int, offset: int):
        if offset < self._committed[partition]:
            raise ValueError(
                f"checkpoint for partition {partition} cannot move back "
                f"from {self._committed[partition]} to {offset}"
            )
        self._committed[partition] = offset
        self.commit_history.append((partition, offset))

    def lag(self, partition: int = 0) -> int:
        return len(self._records[partition]) - self._committed[partition]


def decode_payload(value: Optional[bytes]) -> Any:
    """JSON payload, or the raw text when it is not JSON"""
    if value is None:
        return None
    try:
        return orjson.loads(value)
    except orjson.JSONDecodeError:
        return value.decode("utf-8", errors="replace")


class KafkaEventLog(EventLog):
    """
    Kafka topic as an event log.

    Each configured partition gets its own Consumer, assigned once at its
    checkpoint, and its own executor thread for the blocking client calls.
    A slow poll on an idle partition therefore never delays the others.
    Offsets are committed explicitly, so the checkpoint only advances after
    a batch has been fully dispatched. Re-reading from an earlier offset
    seeks the partition back.
    """

    def __init__(
        self,
        brokers: List[str],
        topic: str,
        group_id: str,
        partitions: List[int],
        poll_timeout: float = 1.0,
        consumer_factory: Optional[Callable[[int], Any]] = None
    ):
        """
        Args:
            brokers: Bootstrap servers
            topic: Clickstream topic
            group_id: Consumer group that owns the committed offsets
            partitions: Partitions read by this process
            poll_timeout: Seconds a fetch waits for messages
            consumer_factory: Builds the client for one partition; a
                confluent_kafka.Consumer by default
        """
        self.topic = topic
        self._partitions = list(partitions)
        self.poll_timeout = poll_timeout
        self.logger = logging.getLogger(__name__)

        if consumer_factory is None:
            config = {
                "bootstrap.servers": ",".join(brokers),
                "group.id": group_id,
                "enable.auto.commit": False,
                "auto.offset.reset": "earliest",
                "session.timeout.ms": 10000,
                "fetch.min.bytes": 1,
                "fetch.wait.max.ms": 100,
            }
            consumer_factory = lambda partition: Consumer(config)

        self.consumers: Dict[int, Any] = {p: consumer_factory(p) for p in self._partitions}
        self.executors: Dict[int, ThreadPoolExecutor] = {
            p: ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"kafka-log-{p}")
            for p in self._partitions
        }
        self._positions: Dict[int, int] = {}

        self.logger.info(f"Kafka event log on {topic} partitions {self._partitions}")

    def partitions(self) -> List[int]:
        return list(self._partitions)

    async def _run(self, partition: int, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executors[partition], fn, *args)

    def _fetch_blocking(self, partition: int, offset: int, max_records: int) -> List[LogRecord]:
        consumer = self.consumers[partition]
        position = self._positions.get(partition)
        if position is None:
            consumer.assign([TopicPartition(self.topic, partition, offset)])
        elif position != offset:
            consumer.seek(TopicPartition(self.topic, partition, offset))
        self._positions[partition] = offset

        records = []
        try:
            messages = consumer.consume(num_messages=max_records, timeout=self.poll_timeout)
            for msg in messages:
                if msg.error():
                    raise KafkaException(msg.error())
                records.append(LogRecord(
                    partition=partition,
                    offset=msg.offset(),
                    payload=decode_payload(msg.value())
                ))
        except KafkaException:
            # Position is unknown after a failed read; the next fetch seeks
            self._positions[partition] = -1
            raise
        if records:
            self._positions[partition] = records[-1].offset + 1
        return records

    async def fetch(self, partition: int, offset: int, max_records: int) -> List[LogRecord]:
        return await self._run(partition, self._fetch_blocking, partition, offset, max_records)

    def _committed_blocking(self, partition: int) -> int:
        committed = self.consumers[partition].committed(
            [TopicPartition(self.topic, partition)], timeout=10
        )
        offset = committed[0].offset
        # No commit yet: start from the beginning of the partition
        return offset if offset >= 0 else 0

    async def committed(self, partition: int) -> int:
        return await self._run(partition, self._committed_blocking, partition)

    async def commit(self, partition: int, offset: int):
        await self._run(
            partition,
            lambda: self.consumers[partition].commit(
                offsets=[TopicPartition(self.topic, partition, offset)],
                asynchronous=False
            )
        )

    async def close(self):
        for partition in self._partitions:
            await self._run(partition, self.consumers[partition].close)
            self.executors[partition].shutdown(wait=True)
        self.logger.info("Kafka event log closed")
