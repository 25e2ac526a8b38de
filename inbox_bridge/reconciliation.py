"""
Reconciliation of provider events into the tenant data model.

Upserts the Channel, Chat and Client rows implied by an event. Every step
commits on its own: a failure late in a message leaves the entities created
before it in place, and a replay of the same event finds them.
"""

import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inbox_bridge.identifiers import normalize_id
from inbox_bridge.models import Channel, Chat, Client, MessageDirection, Responsibility, Role, User
from inbox_bridge.schemas import WebhookContactEvent, WebhookMessage
from inbox_bridge.validation import is_valid_email, sanitize_phone

logger = logging.getLogger(__name__)

GENERIC_CONTACT_NAME = "Unnamed contact"

_FRACTION_RE = re.compile(r"\.(\d+)")

TRANSPORT_LABELS = {
    "whatsapp": "WhatsApp",
    "whatsgroup": "WhatsApp group",
    "telegram": "Telegram",
    "telegroup": "Telegram group",
    "instagram": "Instagram",
    "vk": "VK",
    "avito": "Avito",
    "viber": "Viber",
}


def transport_label(chat_type: Optional[str]) -> Optional[str]:
    if not chat_type or not chat_type.strip():
        return None
    chat_type = chat_type.strip()
    return TRANSPORT_LABELS.get(chat_type.lower(), chat_type)


def placeholder_name(chat_type: Optional[str], chat_ref: Optional[str]) -> str:
    """Name for a client we know nothing about, e.g. "WhatsApp 55512345"."""
    label = transport_label(chat_type)
    if label and chat_ref:
        return f"{label} {chat_ref}"
    if label:
        return f"{label} contact"
    return GENERIC_CONTACT_NAME


def placeholder_email(seed: uuid.UUID, domain: str) -> str:
    """Unique stand-in for a missing email; the timestamp avoids collisions on re-creation."""
    return f"{seed.hex}.{int(time.time() * 1000)}@{domain}"


def determine_direction(message: WebhookMessage) -> MessageDirection:
    """
    Infer the direction of a message.

    isEcho wins when present. Otherwise a literal "inbound" status means
    inbound and any other status outbound. With neither the direction is
    unknown; the message is still stored.
    """
    if message.is_echo is not None:
        return MessageDirection.OUTBOUND if message.is_echo else MessageDirection.INBOUND
    if message.status is not None:
        return MessageDirection.INBOUND if message.status == "inbound" else MessageDirection.OUTBOUND
    return MessageDirection.UNKNOWN


def parse_date_time(value: Optional[str]) -> datetime:
    """Parse an RFC3339 timestamp, falling back to now."""
    if value:
        try:
            # fromisoformat before 3.11 only takes 3 or 6 fractional digits
            normalized = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
            parsed = datetime.fromisoformat(normalized.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except ValueError:
            logger.debug(f"Unparseable dateTime {value!r}, using current time")
    return datetime.now(timezone.utc)


# =============================================================================
# Entity Upserts
# =============================================================================

async def ensure_channel(db: AsyncSession, channel_id: uuid.UUID, chat_type: str) -> Channel:
    """Create the channel if absent, correct its transport type if it changed."""
    channel = await db.get(Channel, channel_id)
    if channel is not None:
        if channel.type != chat_type:
            logger.info(f"Channel {channel_id} type changed: {channel.type} -> {chat_type}")
            channel.type = chat_type
            await db.commit()
        return channel

    channel = Channel(id=channel_id, type=chat_type)
    db.add(channel)
    try:
        await db.commit()
    except IntegrityError:
        # Created by a concurrent delivery
        await db.rollback()
        channel = await db.get(Channel, channel_id)
        if channel is None:
            raise
        return channel
    logger.info(f"Created channel: {channel_id} ({chat_type})")
    return channel


async def ensure_chat(
    db: AsyncSession,
    chat_id: uuid.UUID,
    external_id: str,
    channel_id: uuid.UUID,
    name_hint: Optional[str] = None,
    client_id: Optional[uuid.UUID] = None,
) -> Chat:
    """
    Create the chat if absent.

    For an existing chat the display name and client link are updated when a
    value is available and differs from the stored one.
    """
    name_hint = name_hint.strip() if name_hint and name_hint.strip() else None

    chat = await db.get(Chat, chat_id)
    if chat is not None:
        changed = False
        if name_hint is not None and chat.name != name_hint:
            chat.name = name_hint
            changed = True
        if client_id is not None and chat.client_id != client_id:
            chat.client_id = client_id
            changed = True
        if changed:
            await db.commit()
        return chat

    chat = Chat(
        id=chat_id,
        channel_id=channel_id,
        client_id=client_id,
        name=name_hint or external_id,
        external_id=external_id,
    )
    logger.debug(f"Creating new chat: id={chat_id}, name={chat.name}, has_client={client_id is not None}")
    db.add(chat)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        chat = await db.get(Chat, chat_id)
        if chat is None:
            raise
        return chat
    logger.info(f"Created chat: {chat_id}")
    return chat


async def select_initial_assignee(db: AsyncSession) -> Optional[User]:
    """Any active automated responder, so new clients are answered by a bot first."""
    result = await db.execute(
        select(User)
        .where(User.role == Role.BOT, User.is_active.is_(True))
        .order_by(User.name)
        .limit(1)
    )
    return result.scalars().first()


async def create_client(
    db: AsyncSession,
    full_name: str,
    email: str,
    phone: Optional[str],
    chat_ref: Optional[str] = None,
    external_id: Optional[str] = None,
) -> Client:
    """Insert a client and give it an initial responsible assignee when one exists."""
    client = Client(
        id=uuid.uuid4(),
        full_name=full_name,
        email=email,
        phone=phone,
        chat_ref=chat_ref,
        external_id=external_id,
    )
    db.add(client)
    await db.flush()

    assignee = await select_initial_assignee(db)
    if assignee is not None:
        db.add(Responsibility(client_id=client.id, user_id=assignee.id))
    else:
        logger.warning(f"No bot account available, client {client.id} created without assignee")

    await db.commit()
    logger.info(f"Created client: id={client.id}, name={full_name}")
    return client


async def find_client(db: AsyncSession, **filters) -> Optional[Client]:
    conditions = [getattr(Client, column) == value for column, value in filters.items()]
    result = await db.execute(select(Client).where(*conditions).limit(1))
    return result.scalars().first()


# =============================================================================
# Contact Events
# =============================================================================

async def process_contact(db: AsyncSession, contact: WebhookContactEvent, email_domain: str) -> str:
    """
    Create a client for a contact event unless one already exists.

    First write wins: an existing match is never updated.

    Returns:
        "created" or "duplicate"
    """
    email = contact.email.strip() if contact.email else None
    if email and not is_valid_email(email):
        logger.warning(f"Ignoring invalid email for contact {contact.contact_id}")
        email = None

    chat_ref = contact.chat_id.strip() if contact.chat_id and contact.chat_id.strip() else None

    if email and await find_client(db, email=email):
        logger.debug(f"Contact {contact.contact_id} already known by email")
        return "duplicate"
    if chat_ref and await find_client(db, chat_ref=chat_ref):
        logger.debug(f"Contact {contact.contact_id} already known by chat id")
        return "duplicate"
    if await find_client(db, external_id=contact.contact_id):
        logger.debug(f"Contact {contact.contact_id} already known by contact id")
        return "duplicate"

    phone = sanitize_phone(contact.phone)
    if contact.phone and phone is None:
        logger.warning(f"Invalid phone format for contact {contact.contact_id}")

    chat_type = None
    if contact.channel_id:
        channel = await db.get(Channel, normalize_id(contact.channel_id))
        chat_type = channel.type if channel is not None else None

    name = contact.name.strip() if contact.name and contact.name.strip() else None
    full_name = name or phone or placeholder_name(chat_type, chat_ref)

    await create_client(
        db,
        full_name=full_name,
        email=email or placeholder_email(normalize_id(contact.contact_id), email_domain),
        phone=phone,
        chat_ref=chat_ref,
        external_id=contact.contact_id,
    )
    return "created"


# =============================================================================
# Message Events
# =============================================================================

async def ensure_client_for_chat(
    db: AsyncSession,
    chat_id: uuid.UUID,
    message: WebhookMessage,
    email_domain: str,
) -> Client:
    """
    Resolve the client a message's chat belongs to.

    A client with the message's phone wins over whatever the chat is linked
    to now, then the linked client, then a client created for the same chat
    id. Otherwise one is created from the message's name/phone hints. The
    caller links the chat to the returned client.
    """
    phone = sanitize_phone(message.client_phone_hint)
    if phone:
        client = await find_client(db, phone=phone)
        if client is not None:
            return client

    chat = await db.get(Chat, chat_id)
    if chat is not None and chat.client_id is not None:
        client = await db.get(Client, chat.client_id)
        if client is not None:
            return client
        logger.warning(f"Chat {chat_id} references missing client {chat.client_id}")

    client = await find_client(db, chat_ref=message.chat_id)
    if client is not None:
        return client

    full_name = (
        message.client_name_hint
        or phone
        or placeholder_name(message.chat_type, message.chat_id)
    )
    return await create_client(
        db,
        full_name=full_name,
        email=placeholder_email(chat_id, email_domain),
        phone=phone,
        chat_ref=message.chat_id,
    )
