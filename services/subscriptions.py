"""
Topic ownership for live subscriptions.

Only one live handle may exist per topic (messages, profiles, chat_rooms,
presence). Each handle has an explicit owner, and handles are released
through the registry so a re-subscribe can never leave a duplicate behind.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from core.exceptions import SubscriptionError

logger = logging.getLogger(__name__)

Opener = Callable[[], Awaitable[Any]]
Closer = Callable[[Any], Awaitable[None]]


@dataclass
class _Entry:
    owner: str
    handle: Any
    closer: Closer


class SubscriptionRegistry:
    """At most one live handle per topic, each with a named owner"""

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}

    async def acquire(self, topic: str, owner: str, opener: Opener, closer: Closer) -> Any:
        entry = self._entries.get(topic)
        if entry is not None:
            if entry.owner != owner:
                raise SubscriptionError(topic, f"already held by {entry.owner}")
            await self.release(topic, owner)

        handle = await opener()
        self._entries[topic] = _Entry(owner, handle, closer)
        logger.debug(f"{owner} acquired {topic}")
        return handle

    async def release(self, topic: str, owner: str) -> bool:
        entry = self._entries.get(topic)
        if entry is None or entry.owner != owner:
            return False

        del self._entries[topic]
        try:
            await entry.closer(entry.handle)
        except Exception as e:
            logger.warning(f"Closing {topic} handle for {owner} failed: {e}")
        logger.debug(f"{owner} released {topic}")
        return True

    async def release_all(self, owner: str) -> int:
        topics = [t for t, e in self._entries.items() if e.owner == owner]
        for topic in topics:
            await self.release(topic, owner)
        return len(topics)

    def holder(self, topic: str) -> Optional[str]:
        entry = self._entries.get(topic)
        return entry.owner if entry else None

    def handle(self, topic: str) -> Any:
        entry = self._entries.get(topic)
        return entry.handle if entry else None

    def topics(self) -> Dict[str, str]:
        return {topic: entry.owner for topic, entry in self._entries.items()}
