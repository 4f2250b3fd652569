"""Unseen-count and preview derivation over a room's message log."""

from typing import Iterable, Optional

from core.models import MEDIA_PREVIEWS, Message


class UnseenCounter:
    """Pure functions; nothing here touches state"""

    @staticmethod
    def is_unseen_by(message: Message, viewer_id: str) -> bool:
        return message.sender_id != viewer_id and not message.seen

    @staticmethod
    def count(messages: Iterable[Message], viewer_id: str) -> int:
        return sum(1 for m in messages if UnseenCounter.is_unseen_by(m, viewer_id))

    @staticmethod
    def delta(before: Optional[Message], after: Optional[Message], viewer_id: str) -> int:
        """Change in the unseen count when `before` becomes `after`"""
        was = before is not None and UnseenCounter.is_unseen_by(before, viewer_id)
        now = after is not None and UnseenCounter.is_unseen_by(after, viewer_id)
        return int(now) - int(was)

    @staticmethod
    def preview(message: Message) -> str:
        if message.text:
            return message.text
        return MEDIA_PREVIEWS.get(message.type, "")
