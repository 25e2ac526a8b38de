"""
Shared test helpers: wire-format builders, row counting, fake HTTP peers.
"""

import json
import uuid

import httpx
from sqlalchemy import func, select

from inbox_bridge.models import Role, User
from inbox_bridge.storage import tenant_session

CHANNEL_ID = "3f0c1a52-8a1b-4a4e-9a52-5f3b1c2d4e6f"
BOT_HOOK = "http://bot.test/hook"


def unique_tenant_name() -> str:
    return f"tenant_{uuid.uuid4().hex[:12]}"


def message_event(**overrides) -> dict:
    """A provider message event in wire format. Pass None to drop a field."""
    event = {
        "messageId": "m1",
        "channelId": CHANNEL_ID,
        "chatType": "whatsapp",
        "chatId": "55512345",
        "type": "text",
        "text": "hi",
        "isEcho": False,
    }
    event.update(overrides)
    return {key: value for key, value in event.items() if value is not None}


async def count_rows(tenant_engine, model) -> int:
    async with tenant_session(tenant_engine) as db:
        result = await db.execute(select(func.count()).select_from(model))
        return result.scalar_one()


async def add_user(tenant_engine, name: str, role: Role, hook: str = None, is_active: bool = True) -> User:
    async with tenant_session(tenant_engine) as db:
        user = User(
            id=uuid.uuid4(),
            name=name,
            email=f"{name.lower().replace(' ', '.')}@example.com",
            role=role,
            hook=hook,
            is_active=is_active,
        )
        db.add(user)
        await db.commit()
        return user


class RecordingTransport:
    """httpx.MockTransport wrapper that remembers every request it received."""

    def __init__(self, handler):
        self.requests = []
        self._handler = handler
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    @property
    def bodies(self):
        return [json.loads(request.content) for request in self.requests]


def bot_replies(status: str = "success", message: str = "Hello from bot", http_status: int = 200) -> RecordingTransport:
    return RecordingTransport(
        lambda request: httpx.Response(http_status, json={"status": status, "message": message})
    )


def bot_times_out() -> RecordingTransport:
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)
    return RecordingTransport(handler)


def provider_accepts() -> RecordingTransport:
    return RecordingTransport(lambda request: httpx.Response(201, json={"messageId": "out-1"}))


def provider_fails() -> RecordingTransport:
    return RecordingTransport(lambda request: httpx.Response(500, json={"error": "boom"}))
