"""
Notification sinks for the shopper-facing channel
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import aiohttp

from ..core.errors import NotificationError
from ..core.models import NotificationMessage


class NotificationSink(ABC):
    """Publish-only channel; at-least-once from the pipeline's side"""

    @abstractmethod
    async def publish(self, message: NotificationMessage):
        """Deliver a message; raises NotificationError on failure"""

    async def close(self):
        pass


class InMemoryNotificationSink(NotificationSink):
    """Collects published messages; used by tests and the demo"""

    def __init__(self):
        self.messages: List[NotificationMessage] = []

    async def publish(self, message: NotificationMessage):
        self.messages.append(message)


class WebhookNotificationSink(NotificationSink):
    """Posts each message as JSON to an HTTP endpoint"""

    def __init__(self, url: str, timeout: float = 2.0, session: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None
        self.logger = logging.getLogger(__name__)

    async def publish(self, message: NotificationMessage):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        try:
            async with self._session.post(
                self.url,
                json=message.to_dict(),
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status >= 300:
                    raise NotificationError(f"webhook returned HTTP {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NotificationError(f"webhook publish failed: {e}")

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
