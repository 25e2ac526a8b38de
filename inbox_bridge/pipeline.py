"""
Webhook ingestion pipeline.

Drives one webhook batch for one company:

1. resolve the company (unknown -> NotFoundError, inactive -> dropped)
2. short-circuit connectivity test batches
3. reject batches above the contact/message ceilings
4. acquire the tenant engine once
5. reconcile contact events, then message events, strictly in order

Items are processed one after another because later events may depend on
entities created by earlier ones. A failing item is logged and recorded in
the batch outcome; it never fails the batch.
"""

import logging
import uuid
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inbox_bridge.bot_routing import BotRoutingCoordinator
from inbox_bridge.content import build_message_content
from inbox_bridge.dedup import DeduplicationGuard
from inbox_bridge.errors import InvalidInputError, NotFoundError
from inbox_bridge.identifiers import normalize_id, parse_uuid
from inbox_bridge.metrics import record_batch_outcome, record_item_outcome
from inbox_bridge.models import Company, Message, MessageDirection
from inbox_bridge.pool import TenantConnectionPool
from inbox_bridge.reconciliation import (
    determine_direction,
    ensure_channel,
    ensure_chat,
    ensure_client_for_chat,
    parse_date_time,
    process_contact,
)
from inbox_bridge.schemas import WebhookContactEvent, WebhookMessage, WebhookRequest
from inbox_bridge.storage import get_company, tenant_session
from inbox_bridge.validation import is_safe_identifier

logger = logging.getLogger(__name__)


class ItemOutcome(BaseModel):
    kind: str  # contact | message
    external_id: str
    result: str  # created, duplicate, duplicate_content, invalid, failed
    error: Optional[str] = None


class BatchOutcome(BaseModel):
    company_id: uuid.UUID
    status: str  # accepted, test, inactive
    items: List[ItemOutcome] = Field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for item in self.items:
            key = f"{item.kind}_{item.result}"
            totals[key] = totals.get(key, 0) + 1
        return totals


class WebhookIngestionPipeline:
    def __init__(
        self,
        pool: TenantConnectionPool,
        bot_router: BotRoutingCoordinator,
        *,
        max_contacts: int = 100,
        max_messages: int = 100,
        email_domain: str = "wazzup.local",
    ):
        self.pool = pool
        self.bot_router = bot_router
        self.max_contacts = max_contacts
        self.max_messages = max_messages
        self.email_domain = email_domain

    async def handle(self, db: AsyncSession, company_id: uuid.UUID, webhook: WebhookRequest) -> BatchOutcome:
        """
        Process one webhook batch.

        Args:
            db: main database session (companies registry)
            company_id: tenant the webhook was addressed to
            webhook: parsed payload

        Raises:
            NotFoundError: unknown company
            InvalidInputError: batch above the configured ceilings
            StorageError / InvalidInputError: tenant database unreachable or misnamed
        """
        company = await get_company(db, company_id)
        if company is None:
            record_batch_outcome("rejected")
            raise NotFoundError("Company not found")

        if company.is_active is False:
            logger.warning(f"Webhook received for inactive company {company_id}")
            record_batch_outcome("inactive")
            return BatchOutcome(company_id=company_id, status="inactive")

        if webhook.test:
            logger.info(f"Test webhook received for company {company_id}")
            record_batch_outcome("test")
            return BatchOutcome(company_id=company_id, status="test")

        contacts = webhook.contacts or []
        messages = webhook.messages or []
        if len(contacts) > self.max_contacts:
            record_batch_outcome("rejected")
            raise InvalidInputError(f"Too many contacts in one webhook: {len(contacts)} > {self.max_contacts}")
        if len(messages) > self.max_messages:
            record_batch_outcome("rejected")
            raise InvalidInputError(f"Too many messages in one webhook: {len(messages)} > {self.max_messages}")

        tenant_engine = await self.pool.get_connection(company.database_name)
        outcome = BatchOutcome(company_id=company_id, status="accepted")

        if contacts:
            logger.info(f"Processing {len(contacts)} contact(s) for company {company_id}")
        for idx, contact in enumerate(contacts, start=1):
            async with tenant_session(tenant_engine) as tenant_db:
                item = await self._contact_item(tenant_db, contact, idx)
            outcome.items.append(item)

        if messages:
            logger.info(f"Processing {len(messages)} message(s) for company {company_id}")
        for idx, message in enumerate(messages, start=1):
            async with tenant_session(tenant_engine) as tenant_db:
                item = await self._message_item(tenant_db, company, message, idx)
            outcome.items.append(item)

        record_batch_outcome("accepted")
        logger.info(
            f"Webhook batch processed for company {company_id}",
            extra={"company_id": str(company_id), "outcomes": outcome.counts()},
        )
        return outcome

    async def _contact_item(self, db: AsyncSession, contact: WebhookContactEvent, idx: int) -> ItemOutcome:
        try:
            if not is_safe_identifier(contact.contact_id):
                logger.warning(f"Skipping contact #{idx} with invalid id {contact.contact_id!r}")
                result = "invalid"
            else:
                result = await process_contact(db, contact, self.email_domain)
            item = ItemOutcome(kind="contact", external_id=contact.contact_id, result=result)
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to process contact #{idx} (id={contact.contact_id}): {e}")
            item = ItemOutcome(kind="contact", external_id=contact.contact_id, result="failed", error=str(e))
        record_item_outcome(item.kind, item.result)
        return item

    async def _message_item(self, db: AsyncSession, company: Company, message: WebhookMessage, idx: int) -> ItemOutcome:
        try:
            result = await self.process_message(db, company, message)
            item = ItemOutcome(kind="message", external_id=message.message_id, result=result)
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to process message #{idx} (id={message.message_id}) for company {company.id}: {e}")
            item = ItemOutcome(kind="message", external_id=message.message_id, result="failed", error=str(e))
        record_item_outcome(item.kind, item.result)
        return item

    async def process_message(self, db: AsyncSession, company: Company, message: WebhookMessage) -> str:
        """
        Reconcile and store one message event.

        Returns:
            "created", "duplicate", "duplicate_content" or "invalid"
        """
        for field_name in ("message_id", "channel_id", "chat_id"):
            if not is_safe_identifier(getattr(message, field_name)):
                logger.warning(f"Rejecting message with invalid {field_name}: {getattr(message, field_name)!r}")
                return "invalid"

        message_id = normalize_id(message.message_id)
        channel_id = normalize_id(message.channel_id)
        chat_id = normalize_id(message.chat_id)
        logger.debug(f"Message {message.message_id} -> {message_id}, chat {message.chat_id} -> {chat_id}")

        guard = DeduplicationGuard(db)
        if await guard.message_exists(message_id):
            logger.debug(f"Message {message.message_id} already stored")
            return "duplicate"

        content = build_message_content(message)
        content_json = content.to_json()
        if await guard.content_exists(chat_id, content_json):
            logger.info(f"Message {message.message_id} duplicates stored content in chat {chat_id}")
            return "duplicate_content"

        await ensure_channel(db, channel_id, message.chat_type)
        client = await ensure_client_for_chat(db, chat_id, message, self.email_domain)
        await ensure_chat(
            db,
            chat_id,
            external_id=message.chat_id,
            channel_id=channel_id,
            name_hint=message.client_name_hint,
            client_id=client.id,
        )

        direction = determine_direction(message)
        record = Message(
            id=message_id,
            external_id=message.message_id,
            chat_id=chat_id,
            type=message.type,
            content=content_json,
            direction=direction.value,
            is_echo=message.is_echo,
            author_user_id=parse_uuid(message.author_id),
            author_name=message.author_name,
            created_at=parse_date_time(message.date_time),
        )
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            # Stored by a concurrent delivery of the same event
            await db.rollback()
            return "duplicate"
        logger.info(f"Stored {direction.value} message {message_id} in chat {chat_id}")

        if direction is MessageDirection.INBOUND:
            await self.bot_router.route_inbound(db, company, record)

        return "created"
