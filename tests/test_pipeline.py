"""
Tests for the webhook ingestion pipeline.

Tests cover:
- First delivery of a message creating channel, chat, client and message
- Idempotent replays (same id) and content duplicates (new id, same content)
- Batch-level outcomes: unknown company, inactive company, test batch, ceilings
- Per-item failure isolation
"""

import json
import uuid

import pytest
from sqlalchemy import select

from inbox_bridge.errors import InvalidInputError, NotFoundError
from inbox_bridge.identifiers import normalize_id
from inbox_bridge.models import Channel, Chat, Client, Message
from inbox_bridge.schemas import WebhookRequest
from inbox_bridge.storage import create_company, tenant_session

from tests.helpers import CHANNEL_ID, count_rows, message_event, unique_tenant_name


def batch(messages=None, contacts=None, test=None) -> WebhookRequest:
    payload = {}
    if messages is not None:
        payload["messages"] = messages
    if contacts is not None:
        payload["contacts"] = contacts
    if test is not None:
        payload["test"] = test
    return WebhookRequest.model_validate(payload)


async def all_counts(tenant_engine) -> dict:
    return {
        model.__name__: await count_rows(tenant_engine, model)
        for model in (Channel, Chat, Client, Message)
    }


class TestFirstDelivery:
    @pytest.mark.asyncio
    async def test_message_creates_all_entities(self, pipeline, main_db, company, tenant_engine):
        outcome = await pipeline.handle(main_db, company.id, batch(messages=[message_event()]))

        assert outcome.status == "accepted"
        assert [item.result for item in outcome.items] == ["created"]
        assert await all_counts(tenant_engine) == {"Channel": 1, "Chat": 1, "Client": 1, "Message": 1}

        chat_id = uuid.uuid5(uuid.NAMESPACE_DNS, "55512345")
        async with tenant_session(tenant_engine) as db:
            channel = await db.get(Channel, uuid.UUID(CHANNEL_ID))
            chat = await db.get(Chat, chat_id)
            client = await db.get(Client, chat.client_id)
            message = (await db.execute(select(Message))).scalars().one()

        assert channel.type == "whatsapp"
        assert chat.channel_id == channel.id
        assert chat.external_id == "55512345"
        assert client.full_name == "WhatsApp 55512345"
        assert message.id == normalize_id("m1")
        assert message.chat_id == chat_id
        assert message.direction == "inbound"
        assert json.loads(message.content) == [{"type": "text", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_client_hints_used_for_name_and_phone(self, pipeline, main_db, company, tenant_engine):
        event = message_event(clientName="Ivan Petrov", clientPhone="+7 999 123 45 67")
        await pipeline.handle(main_db, company.id, batch(messages=[event]))

        async with tenant_session(tenant_engine) as db:
            chat = await db.get(Chat, normalize_id("55512345"))
            client = await db.get(Client, chat.client_id)
        assert chat.name == "Ivan Petrov"
        assert client.full_name == "Ivan Petrov"
        assert client.phone == "+79991234567"

    @pytest.mark.asyncio
    async def test_unknown_direction_still_stored(self, pipeline, main_db, company, tenant_engine, bot_transport):
        await pipeline.handle(main_db, company.id, batch(messages=[message_event(isEcho=None)]))

        async with tenant_session(tenant_engine) as db:
            message = (await db.execute(select(Message))).scalars().one()
        assert message.direction == "unknown"
        assert message.is_echo is None
        assert bot_transport.requests == []

    @pytest.mark.asyncio
    async def test_message_metadata(self, pipeline, main_db, company, tenant_engine):
        author_id = str(uuid.uuid4())
        event = message_event(
            isEcho=True,
            dateTime="2025-01-15T10:00:00Z",
            authorId=author_id,
            authorName="Operator",
        )
        await pipeline.handle(main_db, company.id, batch(messages=[event]))

        async with tenant_session(tenant_engine) as db:
            message = (await db.execute(select(Message))).scalars().one()
        assert message.direction == "outbound"
        assert message.is_echo is True
        assert message.author_user_id == uuid.UUID(author_id)
        assert message.author_name == "Operator"
        assert message.created_at.year == 2025


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_replay_is_a_no_op(self, pipeline, main_db, company, tenant_engine):
        request = batch(messages=[message_event()])
        await pipeline.handle(main_db, company.id, request)
        before = await all_counts(tenant_engine)

        for _ in range(3):
            outcome = await pipeline.handle(main_db, company.id, request)
            assert [item.result for item in outcome.items] == ["duplicate"]

        assert await all_counts(tenant_engine) == before

    @pytest.mark.asyncio
    async def test_same_content_with_new_id_collapses(self, pipeline, main_db, company, tenant_engine):
        outcome = await pipeline.handle(
            main_db,
            company.id,
            batch(messages=[message_event(messageId="m1"), message_event(messageId="m2")]),
        )

        assert [item.result for item in outcome.items] == ["created", "duplicate_content"]
        assert await count_rows(tenant_engine, Message) == 1

    @pytest.mark.asyncio
    async def test_same_content_in_other_chat_is_kept(self, pipeline, main_db, company, tenant_engine):
        await pipeline.handle(
            main_db,
            company.id,
            batch(messages=[
                message_event(messageId="m1", chatId="111"),
                message_event(messageId="m2", chatId="222"),
            ]),
        )
        assert await count_rows(tenant_engine, Message) == 2
        assert await count_rows(tenant_engine, Chat) == 2


class TestBatchHandling:
    @pytest.mark.asyncio
    async def test_unknown_company(self, pipeline, main_db):
        with pytest.raises(NotFoundError):
            await pipeline.handle(main_db, uuid.uuid4(), batch(messages=[message_event()]))

    @pytest.mark.asyncio
    async def test_inactive_company_is_dropped(self, pipeline, main_db, pool):
        name = unique_tenant_name()
        company = await create_company(main_db, "Dormant", name, "key", is_active=False)

        outcome = await pipeline.handle(main_db, company.id, batch(messages=[message_event()]))

        assert outcome.status == "inactive"
        assert outcome.items == []
        assert pool.count() == 0

    @pytest.mark.asyncio
    async def test_test_batch_has_no_side_effects(self, pipeline, main_db, company, pool):
        outcome = await pipeline.handle(main_db, company.id, batch(messages=[message_event()], test=True))

        assert outcome.status == "test"
        assert pool.count() == 0

    @pytest.mark.asyncio
    async def test_too_many_messages_rejects_whole_batch(self, pipeline, main_db, company, tenant_engine):
        messages = [message_event(messageId=f"m{i}", text=f"text {i}") for i in range(101)]

        with pytest.raises(InvalidInputError):
            await pipeline.handle(main_db, company.id, batch(messages=messages))

        assert await all_counts(tenant_engine) == {"Channel": 0, "Chat": 0, "Client": 0, "Message": 0}

    @pytest.mark.asyncio
    async def test_too_many_contacts_rejects_whole_batch(self, pipeline, main_db, company, tenant_engine):
        contacts = [{"contactId": f"c{i}", "name": f"Contact {i}"} for i in range(101)]

        with pytest.raises(InvalidInputError):
            await pipeline.handle(main_db, company.id, batch(contacts=contacts))

        assert await count_rows(tenant_engine, Client) == 0

    @pytest.mark.asyncio
    async def test_exactly_at_ceiling_is_accepted(self, pipeline, main_db, company, tenant_engine):
        messages = [message_event(messageId=f"m{i}", text=f"text {i}") for i in range(100)]

        outcome = await pipeline.handle(main_db, company.id, batch(messages=messages))

        assert outcome.status == "accepted"
        assert await count_rows(tenant_engine, Message) == 100

    @pytest.mark.asyncio
    async def test_contacts_processed_before_messages(self, pipeline, main_db, company, tenant_engine):
        request = batch(
            contacts=[{"contactId": "c-1", "name": "Ivan", "chatId": "55512345"}],
            messages=[message_event()],
        )
        await pipeline.handle(main_db, company.id, request)

        async with tenant_session(tenant_engine) as db:
            chat = await db.get(Chat, normalize_id("55512345"))
            client = await db.get(Client, chat.client_id)
        assert client.full_name == "Ivan"
        assert await count_rows(tenant_engine, Client) == 1


class TestItemIsolation:
    @pytest.mark.asyncio
    async def test_invalid_item_does_not_stop_batch(self, pipeline, main_db, company, tenant_engine):
        request = batch(messages=[
            message_event(messageId="bad id; drop"),
            message_event(messageId="m2", chatId=""),
            message_event(messageId="m3"),
        ])

        outcome = await pipeline.handle(main_db, company.id, request)

        assert [item.result for item in outcome.items] == ["invalid", "invalid", "created"]
        assert outcome.counts() == {"message_invalid": 2, "message_created": 1}
        assert await count_rows(tenant_engine, Message) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_is_recorded_and_batch_continues(
        self, pipeline, main_db, company, tenant_engine, monkeypatch
    ):
        from inbox_bridge import pipeline as pipeline_module

        original = pipeline_module.ensure_channel
        calls = {"n": 0}

        async def flaky(db, channel_id, chat_type):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("disk on fire")
            return await original(db, channel_id, chat_type)

        monkeypatch.setattr(pipeline_module, "ensure_channel", flaky)

        outcome = await pipeline.handle(
            main_db,
            company.id,
            batch(messages=[message_event(messageId="m1", text="a"), message_event(messageId="m2", text="b")]),
        )

        assert [item.result for item in outcome.items] == ["failed", "created"]
        assert outcome.items[0].error == "disk on fire"
        assert await count_rows(tenant_engine, Message) == 1

    @pytest.mark.asyncio
    async def test_failed_event_is_processed_on_redelivery(
        self, pipeline, main_db, company, tenant_engine, monkeypatch
    ):
        from inbox_bridge import pipeline as pipeline_module

        original = pipeline_module.ensure_channel

        async def broken(db, channel_id, chat_type):
            raise RuntimeError("transient")

        monkeypatch.setattr(pipeline_module, "ensure_channel", broken)
        await pipeline.handle(main_db, company.id, batch(messages=[message_event()]))
        assert await count_rows(tenant_engine, Message) == 0

        monkeypatch.setattr(pipeline_module, "ensure_channel", original)
        outcome = await pipeline.handle(main_db, company.id, batch(messages=[message_event()]))
        assert [item.result for item in outcome.items] == ["created"]


class TestClientLinking:
    @pytest.mark.asyncio
    async def test_chat_relinked_to_client_matching_phone(self, pipeline, main_db, company, tenant_engine):
        await pipeline.handle(main_db, company.id, batch(messages=[message_event(messageId="m1")]))
        await pipeline.handle(
            main_db,
            company.id,
            batch(contacts=[{"contactId": "c-1", "name": "Ivan", "phone": "+79991234567"}]),
        )

        await pipeline.handle(
            main_db,
            company.id,
            batch(messages=[message_event(messageId="m2", text="again", clientPhone="+79991234567")]),
        )

        async with tenant_session(tenant_engine) as db:
            chat = await db.get(Chat, normalize_id("55512345"))
            client = await db.get(Client, chat.client_id)
        assert client.full_name == "Ivan"
        assert await count_rows(tenant_engine, Client) == 2

    @pytest.mark.asyncio
    async def test_phone_formatting_does_not_split_clients(self, pipeline, main_db, company, tenant_engine):
        request = batch(
            contacts=[{"contactId": "c-1", "name": "Ivan", "phone": "+7 (999) 123-45-67"}],
            messages=[message_event(clientPhone="+79991234567")],
        )

        await pipeline.handle(main_db, company.id, request)

        async with tenant_session(tenant_engine) as db:
            chat = await db.get(Chat, normalize_id("55512345"))
            client = await db.get(Client, chat.client_id)
        assert client.full_name == "Ivan"
        assert await count_rows(tenant_engine, Client) == 1

    @pytest.mark.asyncio
    async def test_linked_client_kept_without_phone(self, pipeline, main_db, company, tenant_engine):
        await pipeline.handle(main_db, company.id, batch(messages=[message_event(messageId="m1")]))
        async with tenant_session(tenant_engine) as db:
            first = (await db.get(Chat, normalize_id("55512345"))).client_id

        await pipeline.handle(main_db, company.id, batch(messages=[message_event(messageId="m2", text="more")]))

        async with tenant_session(tenant_engine) as db:
            chat = await db.get(Chat, normalize_id("55512345"))
        assert chat.client_id == first
        assert await count_rows(tenant_engine, Client) == 1
