"""Normalize polymorphic WhatsApp message payloads to text + media metadata.

``normalize_message`` never raises: every message type, including payloads
with missing sub-fields, maps to a non-empty text. Only caption/name strings
are copied into the text; binary fields (thumbnails, base64 bodies) are never
read.
"""

import math
import re
from dataclasses import replace
from typing import Any, Callable

from konver.observability.logging import get_logger
from konver.observability.redaction import safe_log_context

from .errors import UnsupportedPayload
from .models import MediaDescriptor, NormalizedMessage

logger = get_logger(__name__)

IMAGE_PLACEHOLDER = "[Image]"
AUDIO_PLACEHOLDER = "[Audio]"
VIDEO_PLACEHOLDER = "[Video]"
DOCUMENT_PLACEHOLDER = "[Document]"
LOCATION_PLACEHOLDER = "[Location]"
CONTACT_PLACEHOLDER = "[Contact]"
EMPTY_PLACEHOLDER = "[Empty message]"
UNSUPPORTED_PLACEHOLDER = "[Unsupported message]"

_VCARD_TEL = re.compile(r"^TEL[^:\r\n]*:([^\r\n]+)", re.MULTILINE)


def _sub(message: dict[str, Any], key: str) -> dict[str, Any]:
    value = message.get(key)
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    # protobuf Long serialized as {"low": .., "high": .., "unsigned": ..}
    if isinstance(value, dict) and isinstance(value.get("low"), int):
        high = value.get("high") if isinstance(value.get("high"), int) else 0
        return (high << 32) + (value["low"] & 0xFFFFFFFF)
    return None


def _float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, str)):
        try:
            number = float(value)
        except (ValueError, OverflowError):
            return None
        return number if math.isfinite(number) else None
    return None


def extract_phone_from_vcard(vcard: Any) -> str | None:
    """Return the first ``TEL`` value of a vCard string, if any."""
    if not isinstance(vcard, str):
        return None
    match = _VCARD_TEL.search(vcard)
    if match is None:
        return None
    return match.group(1).strip() or None


def _file_media(kind: str, body: dict[str, Any]) -> MediaDescriptor:
    return MediaDescriptor(
        kind=kind,  # type: ignore[arg-type]
        url=_text(body.get("url")),
        mime_type=_text(body.get("mimetype")),
        file_size=_int(body.get("fileLength", body.get("fileSize"))),
    )


def _conversation(message: dict[str, Any]) -> NormalizedMessage:
    return NormalizedMessage(text=_text(message.get("conversation")) or EMPTY_PLACEHOLDER)


def _extended_text(message: dict[str, Any]) -> NormalizedMessage:
    body = _sub(message, "extendedTextMessage")
    return NormalizedMessage(text=_text(body.get("text")) or EMPTY_PLACEHOLDER)


def _image(message: dict[str, Any]) -> NormalizedMessage:
    body = _sub(message, "imageMessage")
    return NormalizedMessage(
        text=_text(body.get("caption")) or IMAGE_PLACEHOLDER,
        media=_file_media("image", body),
    )


def _audio(message: dict[str, Any]) -> NormalizedMessage:
    body = _sub(message, "audioMessage")
    return NormalizedMessage(text=AUDIO_PLACEHOLDER, media=_file_media("audio", body))


def _video(message: dict[str, Any]) -> NormalizedMessage:
    body = _sub(message, "videoMessage")
    return NormalizedMessage(
        text=_text(body.get("caption")) or VIDEO_PLACEHOLDER,
        media=_file_media("video", body),
    )


def _document(message: dict[str, Any]) -> NormalizedMessage:
    body = _sub(message, "documentMessage")
    filename = _text(body.get("fileName")) or _text(body.get("filename"))
    return NormalizedMessage(
        text=f"[Document: {filename}]" if filename else DOCUMENT_PLACEHOLDER,
        media=replace(_file_media("document", body), filename=filename),
    )


def _location(message: dict[str, Any]) -> NormalizedMessage:
    body = _sub(message, "locationMessage")
    name = _text(body.get("name"))
    return NormalizedMessage(
        text=f"[Location: {name}]" if name else LOCATION_PLACEHOLDER,
        media=MediaDescriptor(
            kind="location",
            latitude=_float(body.get("degreesLatitude", body.get("latitude"))),
            longitude=_float(body.get("degreesLongitude", body.get("longitude"))),
            location_name=name,
        ),
    )


def _contact(message: dict[str, Any]) -> NormalizedMessage:
    body = _sub(message, "contactMessage")
    name = _text(body.get("displayName"))
    return NormalizedMessage(
        text=f"[Contact: {name}]" if name else CONTACT_PLACEHOLDER,
        media=MediaDescriptor(
            kind="contact",
            contact_name=name,
            contact_phone=extract_phone_from_vcard(body.get("vcard")),
        ),
    )


_HANDLERS: dict[str, Callable[[dict[str, Any]], NormalizedMessage]] = {
    "conversation": _conversation,
    "extendedTextMessage": _extended_text,
    "imageMessage": _image,
    "audioMessage": _audio,
    "videoMessage": _video,
    "documentMessage": _document,
    "locationMessage": _location,
    "contactMessage": _contact,
}

SUPPORTED_MESSAGE_TYPES = frozenset(_HANDLERS)


def normalize_message(message_type: str, message: Any) -> NormalizedMessage:
    """Convert a provider message of ``message_type`` into a NormalizedMessage.

    Args:
        message_type: Evolution ``messageType`` discriminator.
        message: The ``message`` object of the webhook payload.

    Returns:
        NormalizedMessage with non-empty text and optional media descriptor.
    """
    handler = _HANDLERS.get(message_type)
    if handler is None:
        unsupported = UnsupportedPayload(str(message_type))
        logger.info(
            "unsupported message type",
            extra={
                "extra_fields": safe_log_context(
                    message_type=unsupported.message_type,
                    reason=unsupported.reason,
                )
            },
        )
        return NormalizedMessage(text=UNSUPPORTED_PLACEHOLDER)

    return handler(message if isinstance(message, dict) else {})
