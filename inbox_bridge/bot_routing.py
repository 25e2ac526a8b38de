"""
Hand-off between automated responders and human staff.

For every freshly stored inbound message the coordinator checks who owns
the client's conversation. When that is a bot with a callback hook, the
message text is posted to the hook; a successful reply is relayed back into
the chat through the messaging provider. An error reply, a failed or timed
out call, or a failed relay moves the client to a randomly chosen human.

Nothing raised in here reaches the ingestion pipeline.
"""

import logging
import random
import uuid
from typing import Optional

import httpx
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from inbox_bridge.content import MessageContent
from inbox_bridge.errors import AppError, ExternalCallError, NotFoundError
from inbox_bridge.messaging import MessagingClient
from inbox_bridge.metrics import record_bot_routing
from inbox_bridge.models import Channel, Chat, Company, Message, Responsibility, Role, User, utcnow
from inbox_bridge.schemas import BotCallbackRequest, BotCallbackResponse, SendMessageRequest

logger = logging.getLogger(__name__)


class BotCallbackClient:
    """POSTs inbound messages to a bot's hook URL under a bounded timeout."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def call(self, hook_url: str, request: BotCallbackRequest) -> BotCallbackResponse:
        """
        Raises:
            ExternalCallError: unreachable hook, timeout, non-2xx or malformed body
        """
        try:
            response = await self._client.post(hook_url, json=request.model_dump())
        except httpx.TimeoutException as e:
            raise ExternalCallError(f"Bot hook timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ExternalCallError(f"Bot hook request failed: {e}") from e

        if response.is_error:
            raise ExternalCallError(f"Bot hook returned error status: {response.status_code}")

        try:
            return BotCallbackResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ExternalCallError(f"Failed to parse bot response: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class BotRoutingCoordinator:
    def __init__(
        self,
        callback_client: BotCallbackClient,
        messaging: MessagingClient,
        rng: Optional[random.Random] = None,
    ):
        self.callback_client = callback_client
        self.messaging = messaging
        self.rng = rng or random.Random()

    async def route_inbound(self, db: AsyncSession, company: Company, message: Message) -> str:
        """
        Route a stored inbound message. Never raises.

        Returns:
            outcome label: replied, fallback, fallback_failed, not_bot,
            no_client, no_assignee or failed
        """
        try:
            outcome = await self._route(db, company, message)
        except Exception:
            logger.exception(f"Bot routing failed for message {message.id}")
            outcome = "failed"
        record_bot_routing(outcome)
        return outcome

    async def _route(self, db: AsyncSession, company: Company, message: Message) -> str:
        chat = await db.get(Chat, message.chat_id)
        if chat is None or chat.client_id is None:
            logger.debug(f"No client linked to chat {message.chat_id}, skipping bot routing")
            return "no_client"

        assignment = await db.get(Responsibility, chat.client_id)
        if assignment is None:
            logger.debug(f"Client {chat.client_id} has no responsible assignee")
            return "no_assignee"

        assignee = await db.get(User, assignment.user_id)
        if assignee is None or assignee.role != Role.BOT or not assignee.hook:
            return "not_bot"

        text = MessageContent.from_json(message.content).plain_text()
        request = BotCallbackRequest(message=text, client=str(chat.client_id), company=str(company.id))

        try:
            reply = await self.callback_client.call(assignee.hook, request)
        except ExternalCallError as e:
            logger.warning(f"Bot {assignee.id} callback failed for client {chat.client_id}: {e}")
            return await self._fallback(db, chat.client_id)

        if not reply.is_success:
            logger.warning(f"Bot {assignee.id} reported error for client {chat.client_id}: {reply.message}")
            return await self._fallback(db, chat.client_id)

        try:
            await self._relay(db, company, chat, assignee, reply.message)
        except AppError as e:
            logger.error(f"Failed to relay bot reply to chat {chat.id}: {e}")
            return await self._fallback(db, chat.client_id)

        logger.info(f"Bot {assignee.id} replied to client {chat.client_id}")
        return "replied"

    async def _relay(self, db: AsyncSession, company: Company, chat: Chat, bot: User, text: str) -> None:
        channel = await db.get(Channel, chat.channel_id)
        if channel is None:
            raise NotFoundError(f"Channel {chat.channel_id} not found")
        await self.messaging.send_message(
            company.api_key,
            SendMessageRequest(
                chat_id=chat.external_id,
                channel_id=str(chat.channel_id),
                chat_type=channel.type,
                sender_id=str(bot.id),
                text=text,
            ),
        )

    async def _fallback(self, db: AsyncSession, client_id: uuid.UUID) -> str:
        try:
            manager = await self.select_fallback_assignee(db)
        except NotFoundError:
            logger.error(f"No human staff available to take over client {client_id}")
            return "fallback_failed"
        await self.transfer(db, client_id, manager.id)
        logger.info(f"Client {client_id} transferred to {manager.id} after bot failure")
        return "fallback"

    async def select_fallback_assignee(self, db: AsyncSession) -> User:
        """
        Pick a random active human who can take chats (not a bot, not quality control).

        Raises:
            NotFoundError: nobody is available
        """
        result = await db.execute(
            select(User)
            .where(User.is_active.is_(True), User.role.notin_([Role.BOT, Role.QUALITY_CONTROL]))
            .order_by(User.id)
        )
        candidates = [user for user in result.scalars().all() if user.role.takes_fallback_chats]
        if not candidates:
            raise NotFoundError("No managers available")
        return self.rng.choice(candidates)

    async def transfer(self, db: AsyncSession, client_id: uuid.UUID, user_id: uuid.UUID) -> Responsibility:
        """Make user_id the responsible assignee of client_id."""
        assignment = await db.get(Responsibility, client_id)
        if assignment is None:
            assignment = Responsibility(client_id=client_id, user_id=user_id)
            db.add(assignment)
        else:
            assignment.user_id = user_id
            assignment.assigned_at = utcnow()
        await db.commit()
        return assignment
