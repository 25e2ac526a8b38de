"""
Identifier normalization.

The messaging provider mixes UUIDs (channels, contacts) with opaque numeric
or string identifiers (WhatsApp chat ids, message ids). Everything is stored
as a fixed-width 128-bit key, so external ids are coerced into UUID space
without a lookup table:

- a canonical UUID string is returned as that UUID
- any other string becomes a name-based UUID (v5) under a fixed namespace
- the empty string becomes the nil UUID
"""

import re
import uuid
from typing import Optional


# Namespace for name-based ids. Changing it re-keys every stored chat and message.
ID_NAMESPACE = uuid.NAMESPACE_DNS

NIL_UUID = uuid.UUID(int=0)

_CANONICAL_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)


def parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    """Parse a canonical hyphenated UUID string, or return None."""
    if not value or not _CANONICAL_UUID_RE.match(value):
        return None
    return uuid.UUID(value)


def normalize_id(external_id: str) -> uuid.UUID:
    """
    Map an external identifier into internal UUID space.

    Total and deterministic: never raises, and the same input always yields
    the same UUID.
    """
    if not external_id:
        return NIL_UUID

    parsed = parse_uuid(external_id)
    if parsed is not None:
        return parsed

    return uuid.uuid5(ID_NAMESPACE, external_id)


def uuid_to_bytes(value: uuid.UUID) -> bytes:
    """Binary (16 byte) form used for storage."""
    return value.bytes


def uuid_from_bytes(raw: Optional[bytes]) -> uuid.UUID:
    """
    Decode a stored identifier.

    Accepts the regular 16-byte form, legacy 8-byte keys (right-aligned into
    the low half) and empty values (nil UUID).

    Raises:
        ValueError: for any other length
    """
    if raw is None or len(raw) == 0:
        return NIL_UUID
    if len(raw) == 16:
        return uuid.UUID(bytes=bytes(raw))
    if len(raw) == 8:
        return uuid.UUID(bytes=b"\x00" * 8 + bytes(raw))
    raise ValueError(f"Invalid UUID length: expected 16 or 8 bytes, found {len(raw)}")
