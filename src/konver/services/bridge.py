"""WhatsApp bridge service - wires the domain components to a store and provider.

Built once when the application starts (see ``konver.api.factory``) and passed
around explicitly; nothing here is module-level state.
"""

from __future__ import annotations

import threading

from konver.domain.connection import ConnectionManager
from konver.domain.conversations import ConversationResolver
from konver.domain.ingestion import IngestOutcome, MessageCallback, WebhookIngestor
from konver.domain.outbound import OutboundSender
from konver.infra.store import BridgeStore, PostgresStore
from konver.whatsapp.evolution_client import EvolutionClient
from konver.whatsapp.models import (
    ActionResult,
    ConnectionStatusReport,
    PairingResult,
    SendResult,
    WebhookEnvelope,
)
from konver.whatsapp.provider import ProviderClient


class WhatsAppBridge:
    """Entry point for everything WhatsApp: pairing, status, webhooks, sending."""

    def __init__(
        self,
        store: BridgeStore,
        provider: ProviderClient,
        *,
        on_message: MessageCallback | None = None,
    ) -> None:
        self.store = store
        self.provider = provider
        self.connections = ConnectionManager(store, provider)
        self.conversations = ConversationResolver(store)
        self.ingestor = WebhookIngestor(
            store, self.connections, self.conversations, on_message=on_message
        )
        self.sender = OutboundSender(store, provider, self.conversations)

    @classmethod
    def from_env(cls, *, on_message: MessageCallback | None = None) -> WhatsAppBridge:
        """Production wiring: PostgreSQL store + Evolution API client."""
        return cls(PostgresStore(), EvolutionClient.from_env(), on_message=on_message)

    def connect(self, bot_id: str, *, cancel: threading.Event | None = None) -> PairingResult:
        return self.connections.request_pairing(bot_id, cancel=cancel)

    def status(
        self, bot_id: str, *, cancel: threading.Event | None = None
    ) -> ConnectionStatusReport:
        return self.connections.get_status(bot_id, cancel=cancel)

    def disconnect(self, bot_id: str) -> ActionResult:
        return self.connections.disconnect(bot_id)

    def delete(self, bot_id: str) -> ActionResult:
        return self.connections.delete(bot_id)

    def handle_webhook(self, envelope: WebhookEnvelope) -> IngestOutcome:
        return self.ingestor.ingest(envelope)

    def send(self, bot_id: str, phone_number: str, text: str) -> SendResult:
        return self.sender.send(bot_id, phone_number, text)
