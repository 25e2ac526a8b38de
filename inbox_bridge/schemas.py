"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook payload models (provider JSON uses camelCase)
- Outbound payloads for the bot callback and the messaging provider
- Response models for API responses
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Webhook Payload Models
# =============================================================================

class WebhookContactEvent(BaseModel):
    """A contact created or updated on the provider side."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    contact_id: str = Field(..., alias="contactId")
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    chat_id: Optional[str] = Field(None, alias="chatId")
    channel_id: Optional[str] = Field(None, alias="channelId")


class WebhookMessageContact(BaseModel):
    """Contact card the provider may embed in a message."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    avatar_uri: Optional[str] = Field(None, alias="avatarUri")
    username: Optional[str] = None
    phone: Optional[str] = None


class WebhookMessage(BaseModel):
    """
    A message event.

    chat_id and message_id are opaque provider strings (often numeric);
    channel_id is normally a UUID.
    """
    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "examples": [
                {
                    "messageId": "m1",
                    "channelId": "3f0c1a52-8a1b-4a4e-9a52-5f3b1c2d4e6f",
                    "chatType": "whatsapp",
                    "chatId": "55512345",
                    "type": "text",
                    "text": "hi",
                    "isEcho": False,
                }
            ]
        },
    )

    message_id: str = Field(..., alias="messageId")
    channel_id: str = Field(..., alias="channelId")
    chat_type: str = Field(..., alias="chatType")
    chat_id: str = Field(..., alias="chatId")
    type: str = Field(..., description="text, image, video, docs, audio, missed_call, ...")
    text: Optional[str] = None
    content_uri: Optional[str] = Field(None, alias="contentUri")
    client_name: Optional[str] = Field(None, alias="clientName")
    client_phone: Optional[str] = Field(None, alias="clientPhone")
    date_time: Optional[str] = Field(None, alias="dateTime", description="RFC3339 timestamp")
    is_echo: Optional[bool] = Field(None, alias="isEcho")
    status: Optional[str] = None
    contact: Optional[WebhookMessageContact] = None
    author_name: Optional[str] = Field(None, alias="authorName")
    author_id: Optional[str] = Field(None, alias="authorId")

    @property
    def client_name_hint(self) -> Optional[str]:
        if self.client_name and self.client_name.strip():
            return self.client_name.strip()
        if self.contact and self.contact.name and self.contact.name.strip():
            return self.contact.name.strip()
        return None

    @property
    def client_phone_hint(self) -> Optional[str]:
        if self.client_phone and self.client_phone.strip():
            return self.client_phone
        if self.contact and self.contact.phone:
            return self.contact.phone
        return None


class WebhookRequest(BaseModel):
    """A webhook delivery: a batch of contact and message events."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    test: Optional[bool] = None
    contacts: Optional[List[WebhookContactEvent]] = None
    messages: Optional[List[WebhookMessage]] = None


# =============================================================================
# Outbound Payloads
# =============================================================================

class BotCallbackRequest(BaseModel):
    message: str
    client: str
    company: str


class BotCallbackResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str
    message: str = ""

    @property
    def is_success(self) -> bool:
        return self.status == "success"


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId")
    channel_id: str = Field(..., alias="channelId")
    chat_type: str = Field(..., alias="chatType")
    sender_id: Optional[str] = Field(None, alias="crmUserId")
    text: Optional[str] = None
    content_uri: Optional[str] = Field(None, alias="contentUri")


class SendMessageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message_id: Optional[str] = Field(None, alias="messageId")
    status: Optional[str] = None


class WebhookSubscriptions(BaseModel):
    """Event groups the provider pushes to the webhook URI."""
    model_config = ConfigDict(populate_by_name=True)

    messages_and_statuses: bool = Field(True, alias="messagesAndStatuses")
    contacts_and_deals_creation: bool = Field(True, alias="contactsAndDealsCreation")
    channels_updates: bool = Field(True, alias="channelsUpdates")
    template_status: bool = Field(True, alias="templateStatus")


class WebhookSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    webhooks_uri: str = Field(..., alias="webhooksUri")
    subscriptions: WebhookSubscriptions = Field(default_factory=WebhookSubscriptions)


class WebhookSubscriptionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ok: bool = False


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Uniform acknowledgement; the provider only looks at the status code."""
    status: str = Field(default="ok", description="Operation status")


class WebhookValidationResponse(BaseModel):
    status: str = "ok"
    message: str = "Webhook endpoint is valid"


class ConnectWebhooksResponse(BaseModel):
    """Result of registering a company's webhook URI with the provider."""
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    webhooks_uri: str = Field(..., alias="webhooksUri")
    subscriptions: WebhookSubscriptions


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    code: str = Field(..., description="Machine-readable error code")
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class PoolStatusResponse(BaseModel):
    count: int = Field(..., ge=0, description="Cached tenant engines")
    databases: List[str] = Field(default_factory=list)
