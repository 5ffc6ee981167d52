"""Hand signal records from file watchers to tool calls blocked in wait_for_pr_comments.

Each watched signal file is one channel, keyed by its path. A record is only
a hint that the database is worth re-checking.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from pr_review_relay.models import SignalRecord


@dataclass
class _Channel:
    version: int = 0
    latest: SignalRecord | None = None
    changed: asyncio.Condition = field(default_factory=asyncio.Condition)


class NotificationBus:
    def __init__(self) -> None:
        self._channels: dict[str, _Channel] = {}

    def _channel(self, topic: str) -> _Channel:
        channel = self._channels.get(topic)
        if channel is None:
            channel = self._channels[topic] = _Channel()
        return channel

    def version(self, topic: str) -> int:
        channel = self._channels.get(topic)
        return channel.version if channel is not None else 0

    def latest(self, topic: str) -> SignalRecord | None:
        channel = self._channels.get(topic)
        return channel.latest if channel is not None else None

    async def publish(self, topic: str, record: SignalRecord) -> None:
        channel = self._channel(topic)
        async with channel.changed:
            channel.version += 1
            channel.latest = record
            channel.changed.notify_all()

    async def wait(self, topic: str, since_version: int, timeout: float) -> SignalRecord | None:
        """Wait until ``topic`` moves past ``since_version``.

        Returns the newest record, or None on timeout. A publish that landed
        after ``since_version`` was read returns immediately.
        """
        channel = self._channel(topic)
        async with channel.changed:
            try:
                await asyncio.wait_for(
                    channel.changed.wait_for(lambda: channel.version != since_version),
                    timeout=max(timeout, 0.0),
                )
            except TimeoutError:
                return None
            return channel.latest

    def forget(self, topic: str) -> None:
        self._channels.pop(topic, None)
