"""WhatsApp bridge models."""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

ConnectionStatus = Literal["disconnected", "connecting", "connected"]
ConversationStatus = Literal["active", "archived", "blocked"]
SenderKind = Literal["user", "bot"]

# Evolution "connectionState" values -> local status
PROVIDER_STATE_MAP: dict[str, ConnectionStatus] = {
    "connecting": "connecting",
    "open": "connected",
    "close": "disconnected",
}


@dataclass(frozen=True)
class BotInstance:
    """One bot's WhatsApp pairing.

    Transitions go through the methods below, which keep the invariants:
    - qr_code is set only while connecting
    - phone_number and profile_name are set only while connected
    """

    bot_id: str
    instance_name: str | None = None
    status: ConnectionStatus = "disconnected"
    qr_code: str | None = None
    phone_number: str | None = None
    profile_name: str | None = None
    connected_at: datetime | None = None

    def __post_init__(self) -> None:
        if (self.status == "connecting") != bool(self.qr_code):
            raise ValueError("qr_code must be set if and only if status is 'connecting'")
        paired = bool(self.phone_number) and bool(self.profile_name)
        if self.status == "connected" and not paired:
            raise ValueError("connected bots need phone_number and profile_name")
        if self.status != "connected" and (self.phone_number or self.profile_name):
            raise ValueError("phone_number/profile_name are only kept while connected")
        if self.status != "disconnected" and not self.instance_name:
            raise ValueError("an instance name is required once pairing started")

    def start_pairing(self, instance_name: str, qr_code: str) -> "BotInstance":
        return replace(
            self,
            instance_name=instance_name,
            status="connecting",
            qr_code=qr_code,
            phone_number=None,
            profile_name=None,
            connected_at=None,
        )

    def refresh_qr(self, qr_code: str) -> "BotInstance":
        return replace(self, status="connecting", qr_code=qr_code,
                       phone_number=None, profile_name=None, connected_at=None)

    def mark_connected(
        self, phone_number: str, profile_name: str | None, at: datetime
    ) -> "BotInstance":
        return replace(
            self,
            status="connected",
            qr_code=None,
            phone_number=phone_number,
            profile_name=profile_name or phone_number,
            connected_at=at,
        )

    def mark_disconnected(self) -> "BotInstance":
        """Drop the session but keep the instance name for reuse."""
        return replace(
            self,
            status="disconnected",
            qr_code=None,
            phone_number=None,
            profile_name=None,
            connected_at=None,
        )

    def wipe(self) -> "BotInstance":
        return BotInstance(bot_id=self.bot_id)


@dataclass(frozen=True)
class ProviderConnectionState:
    """Authoritative connection state as reported by the provider."""

    state: str
    phone_number: str | None = None
    profile_name: str | None = None

    @property
    def status(self) -> ConnectionStatus:
        return PROVIDER_STATE_MAP.get(self.state, "disconnected")


@dataclass(frozen=True)
class MediaDescriptor:
    """Structured media/location/contact details of an inbound message."""

    kind: Literal["image", "audio", "video", "document", "location", "contact"]
    url: str | None = None
    mime_type: str | None = None
    file_size: int | None = None
    filename: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_name: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class NormalizedMessage:
    text: str
    media: MediaDescriptor | None = None


@dataclass(frozen=True)
class WebhookEnvelope:
    """One provider callback: ``{event, instance, data}``."""

    event: str
    instance: str
    data: dict[str, Any]
    raw: dict[str, Any]

    @property
    def event_key(self) -> str | None:
        """Stable identity of the event, when the provider supplies one."""
        key = self.data.get("key")
        if isinstance(key, dict):
            message_id = key.get("id")
            if isinstance(message_id, str) and message_id:
                return f"{self.event}:{self.instance}:{message_id}"
        return None


@dataclass(frozen=True)
class InboundMessage:
    """A ``messages.upsert`` payload reduced to the fields the bridge uses.

    remote_jid, phone_number, push_name and message are personal data and
    must not be logged.
    """

    message_id: str
    remote_jid: str
    phone_number: str
    from_me: bool
    push_name: str | None
    message_type: str
    message: dict[str, Any]
    timestamp: int | None


@dataclass(frozen=True)
class Conversation:
    id: str
    bot_id: str
    user_name: str
    phone_number: str
    status: ConversationStatus = "active"
    last_message_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    message_type: SenderKind
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class WebhookEventRecord:
    """Result of logging a webhook delivery."""

    id: str
    duplicate: bool = False


# ---------------------------------------------------------------------------
# Results returned to callers of user-initiated operations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PairingResult:
    success: bool
    instance_name: str = ""
    qr_code: str = ""
    reason: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ConnectionStatusReport:
    status: ConnectionStatus
    instance_name: str | None = None
    phone_number: str | None = None
    profile_name: str | None = None
    qr_code: str | None = None


@dataclass(frozen=True)
class ActionResult:
    success: bool
    reason: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    reason: str | None = None
    error: str | None = None
