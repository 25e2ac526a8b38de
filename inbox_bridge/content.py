"""
Structured message content.

A message body is an ordered list of typed parts. The same canonical JSON
string is written to the messages table and compared for content-based
deduplication, so serialization must stay stable: keys sorted, no
whitespace, non-ASCII kept as-is.
"""

import json
from typing import List, Optional

from pydantic import BaseModel

from inbox_bridge.schemas import WebhookMessage

TEXT = "text"
ATTACHMENT = "attachment"


class ContentPart(BaseModel):
    """
    One part of a message body.

    type is "text" for text parts; attachment and placeholder parts carry the
    message's declared type (image, video, audio, docs, ...).
    """
    type: str
    content: str = ""

    @classmethod
    def text(cls, value: str) -> "ContentPart":
        return cls(type=TEXT, content=value)

    @classmethod
    def attachment(cls, kind: str, uri: str) -> "ContentPart":
        return cls(type=kind if kind and kind != TEXT else ATTACHMENT, content=uri)

    @classmethod
    def placeholder(cls, kind: str) -> "ContentPart":
        return cls(type=kind or TEXT, content="")


class MessageContent(BaseModel):
    parts: List[ContentPart]

    def to_json(self) -> str:
        return json.dumps(
            [part.model_dump() for part in self.parts],
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: str) -> "MessageContent":
        data = json.loads(raw) if raw else []
        return cls(parts=[ContentPart.model_validate(item) for item in data])

    def plain_text(self) -> str:
        """Content of the first text part, or an empty string."""
        for part in self.parts:
            if part.type == TEXT:
                return part.content
        return ""


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def build_message_content(message: WebhookMessage) -> MessageContent:
    """
    Build the canonical content for a message event.

    Never returns an empty list: with neither text nor attachment a single
    placeholder part tagged with the message type is produced.
    """
    parts: List[ContentPart] = []

    text = _clean(message.text)
    if text is not None:
        parts.append(ContentPart.text(text))

    uri = _clean(message.content_uri)
    if uri is not None:
        parts.append(ContentPart.attachment(message.type, uri))

    if not parts:
        parts.append(ContentPart.placeholder(message.type))

    return MessageContent(parts=parts)
