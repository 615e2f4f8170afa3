"""
Dead-letter stores for events that could not be processed
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections import Counter
from typing import Dict, List

import aiofiles
import orjson

from ..core import metrics
from ..core.models import DeadLetterRecord


class DeadLetterStore(ABC):
    """Durable sink for unprocessable events"""

    def __init__(self):
        self.count = 0
        self.logger = logging.getLogger(__name__)

    async def put(self, record: DeadLetterRecord):
        await self._write(record)
        self.count += 1
        metrics.DEAD_LETTERS.labels(reason=record.reason.value).inc()
        self.logger.warning(
            f"Dead-lettered event {record.event_id} ({record.reason.value}): {record.error}"
        )

    @abstractmethod
    async def _write(self, record: DeadLetterRecord):
        pass

    async def close(self):
        pass


class InMemoryDeadLetterStore(DeadLetterStore):
    """Keeps dead letters in a list; used by tests and the demo"""

    def __init__(self):
        super().__init__()
        self.records: List[DeadLetterRecord] = []

    async def _write(self, record: DeadLetterRecord):
        self.records.append(record)

    def count_by_reason(self) -> Dict[str, int]:
        return dict(Counter(record.reason.value for record in self.records))

    def event_ids(self) -> List[str]:
        return [record.event_id for record in self.records]


class LocalDeadLetterStore(DeadLetterStore):
    """Appends dead letters as JSON lines to a local file"""

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self._lock = asyncio.Lock()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    async def _write(self, record: DeadLetterRecord):
        line = orjson.dumps(record.to_dict(), default=str) + b"\n"
        async with self._lock:
            async with aiofiles.open(self.path, "ab") as fh:
                await fh.write(line)
                await fh.flush()
