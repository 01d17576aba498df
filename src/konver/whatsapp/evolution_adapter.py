"""Evolution API adapter - parse webhook payloads and phone/JID formats."""

import math
import os
import re
from typing import Any

from .errors import InvalidPayloadError
from .models import InboundMessage, ProviderConnectionState, WebhookEnvelope

EVENT_MESSAGES_UPSERT = "messages.upsert"
EVENT_CONNECTION_UPDATE = "connection.update"
EVENT_QRCODE_UPDATED = "qrcode.updated"

_NON_DIGITS = re.compile(r"\D")


def normalize_event_name(event: str) -> str:
    """Evolution emits either "messages.upsert" or "MESSAGES_UPSERT"."""
    return event.strip().lower().replace("_", ".")


def parse_envelope(payload: Any) -> WebhookEnvelope:
    """Validate the outer webhook shape.

    Only the envelope is checked here; event-specific fields are validated by
    the handler for that event so unknown event kinds still get logged.

    Raises:
        InvalidPayloadError: If payload is not a JSON object.
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError("webhook body must be a JSON object")

    event = payload.get("event")
    instance = payload.get("instance")
    data = payload.get("data")

    return WebhookEnvelope(
        event=normalize_event_name(event) if isinstance(event, str) and event else "unknown",
        instance=instance if isinstance(instance, str) else "",
        data=data if isinstance(data, dict) else {},
        raw=payload,
    )


def extract_phone_number(jid: str) -> str:
    """"5511999999999@s.whatsapp.net" -> "5511999999999" (device suffix dropped)."""
    user = jid.split("@", 1)[0]
    return user.split(":", 1)[0]


def is_group_or_broadcast(jid: str) -> bool:
    return jid.endswith("@g.us") or jid.endswith("@broadcast") or jid.endswith("@newsletter")


def format_phone_number(
    phone: str,
    *,
    country_code: str | None = None,
    area_code: str | None = None,
) -> str:
    """Normalize a phone number to the international digits-only form.

    Numbers that already carry a country code are returned as digits. Local
    numbers are completed with the defaults from
    WHATSAPP_DEFAULT_COUNTRY_CODE / WHATSAPP_DEFAULT_AREA_CODE:
    - 11 digits starting with the area code -> country code prepended
    - 10 digits -> country code and area code prepended
    """
    if country_code is None:
        country_code = os.environ.get("WHATSAPP_DEFAULT_COUNTRY_CODE", "55")
    if area_code is None:
        area_code = os.environ.get("WHATSAPP_DEFAULT_AREA_CODE", "11")

    cleaned = _NON_DIGITS.sub("", phone)

    if len(cleaned) == 11 and cleaned.startswith(area_code):
        return f"{country_code}{cleaned}"
    if len(cleaned) == 10:
        return f"{country_code}{area_code}{cleaned}"

    return cleaned


def extract_inbound_message(data: dict[str, Any]) -> InboundMessage:
    """Extract the message fields from a ``messages.upsert`` data object.

    Raises:
        InvalidPayloadError: If key.id or key.remoteJid is missing.
    """
    key = data.get("key")
    if not isinstance(key, dict):
        raise InvalidPayloadError("missing message key")

    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    remote_jid = key.get("remoteJid")
    if not remote_jid or not isinstance(remote_jid, str):
        raise InvalidPayloadError("missing remoteJid")

    push_name = data.get("pushName")
    if not isinstance(push_name, str) or not push_name.strip():
        push_name = None
    message = data.get("message")
    timestamp = data.get("messageTimestamp")

    return InboundMessage(
        message_id=message_id,
        remote_jid=remote_jid,
        phone_number=extract_phone_number(remote_jid),
        from_me=bool(key.get("fromMe", False)),
        push_name=push_name.strip() if push_name else None,
        message_type=str(data.get("messageType") or "unknown"),
        message=message if isinstance(message, dict) else {},
        timestamp=_parse_timestamp(timestamp),
    )


def _parse_timestamp(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.isascii() and value.isdecimal():
        try:
            return int(value)
        except ValueError:
            return None
    return None


def extract_connection_update(data: dict[str, Any]) -> ProviderConnectionState:
    """Extract state and, when open, the paired account from ``connection.update``.

    Evolution v2 sends ``wuid``/``profileName``; older gateways send
    ``user: {id, name}``.

    Raises:
        InvalidPayloadError: If no state is present.
    """
    state = data.get("state")
    if not state or not isinstance(state, str):
        raise InvalidPayloadError("missing connection state")

    owner_jid = data.get("wuid")
    profile_name = data.get("profileName")
    user = data.get("user")
    if isinstance(user, dict):
        owner_jid = owner_jid or user.get("id")
        profile_name = profile_name or user.get("name")

    return ProviderConnectionState(
        state=state,
        phone_number=extract_phone_number(owner_jid) if isinstance(owner_jid, str) and owner_jid else None,
        profile_name=profile_name if isinstance(profile_name, str) and profile_name else None,
    )


def extract_qr_code(data: dict[str, Any]) -> str | None:
    """Return the base64 QR image from a ``qrcode.updated`` data object."""
    qrcode = data.get("qrcode")
    if isinstance(qrcode, dict):
        data = qrcode
    value = data.get("base64")
    return value if isinstance(value, str) and value else None
