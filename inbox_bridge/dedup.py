"""
Duplicate suppression for at-least-once webhook delivery.

Two independent checks run before a message is reconciled:
- by primary key: the normalized provider message id is already stored
- by content: the same chat already holds a message with byte-identical
  canonical content, which catches provider-side id churn across retries

The content check ignores sender and timestamp, so two genuinely distinct
messages with identical content in one chat collapse into one.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from inbox_bridge.models import Message

logger = logging.getLogger(__name__)


class DeduplicationGuard:
    """Answers "was this event already stored?" for one tenant session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def message_exists(self, message_id: uuid.UUID) -> bool:
        result = await self.db.execute(select(Message.id).where(Message.id == message_id))
        return result.first() is not None

    async def content_exists(self, chat_id: uuid.UUID, content_json: str) -> bool:
        result = await self.db.execute(
            select(Message.id)
            .where(Message.chat_id == chat_id, Message.content == content_json)
            .limit(1)
        )
        found = result.first() is not None
        if found:
            logger.debug(f"Identical content already stored in chat {chat_id}")
        return found
