"""
Notification capability: push a payload to a device's channel.

Usage:
    notifier = InboxNotifier()
    await notifier.push(device.push_channel, {"type": "task_completed", ...})

    async for message in notifier.subscribe(device.push_channel):
        handle(message)
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncGenerator, Optional
from uuid import uuid4

import httpx

from ..core.clock import utcnow
from ..core.config import settings
from ..core.errors import CapabilityError

logger = logging.getLogger(__name__)


@dataclass
class PushMessage:
    """A payload delivered to one push channel."""
    channel: str
    payload: dict
    message_id: str = field(default_factory=lambda: str(uuid4())[:8])
    sent_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "message_id": self.message_id,
            "channel": self.channel,
            "payload": self.payload,
            "sent_at": self.sent_at.isoformat(),
        }


class Notifier(ABC):
    """Fire-and-forget delivery to a device push channel."""

    @abstractmethod
    async def push(self, channel: str, payload: dict) -> None:
        """Deliver a payload. Raises CapabilityError on failure."""


class InboxNotifier(Notifier):
    """
    In-process notifier.

    Keeps a bounded history per channel and streams new messages to
    subscribers, for clients connected to this process (or tests).
    """

    def __init__(self, history_size: int = 100):
        self._history: dict[str, deque] = defaultdict(lambda: deque(maxlen=history_size))
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)

    async def push(self, channel: str, payload: dict) -> None:
        message = PushMessage(channel=channel, payload=payload)
        self._history[channel].append(message)

        for subscriber_queue in self._subscribers.get(channel, []):
            await subscriber_queue.put(message)

        logger.debug(f"Pushed {payload.get('type', 'message')} to {channel}")

    async def subscribe(self, channel: str) -> AsyncGenerator[PushMessage, None]:
        """
        Subscribe to messages pushed to a channel.

        Yields:
            PushMessage objects as they are pushed
        """
        subscriber_queue: asyncio.Queue = asyncio.Queue()
        self._subscribers[channel].append(subscriber_queue)

        try:
            while True:
                message = await subscriber_queue.get()
                yield message
        finally:
            self._subscribers[channel].remove(subscriber_queue)

    def history(self, channel: str) -> list[PushMessage]:
        """Messages pushed to a channel, oldest first."""
        return list(self._history.get(channel, ()))


class HttpPushNotifier(Notifier):
    """Forwards pushes to an HTTP push gateway."""

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the notifier.

        Args:
            gateway_url: Push gateway base URL (defaults to settings.push_gateway_url)
            timeout: HTTP timeout in seconds
            transport: Custom httpx transport (optional, used in tests)
        """
        self.gateway_url = gateway_url or settings.push_gateway_url
        if not self.gateway_url:
            raise ValueError("HttpPushNotifier needs a gateway URL")
        self.timeout = timeout or settings.notify_timeout_seconds
        self._transport = transport

    async def push(self, channel: str, payload: dict) -> None:
        message = PushMessage(channel=channel, payload=payload)
        try:
            async with httpx.AsyncClient(
                base_url=self.gateway_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post("/push", json=message.to_dict())
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise CapabilityError(f"Push to {channel} failed: {e}") from e
