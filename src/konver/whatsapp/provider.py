"""Capability surface of a WhatsApp provider (implemented by EvolutionClient)."""

from typing import Protocol

from .models import ProviderConnectionState


class ProviderClient(Protocol):
    """Instance pairing and messaging operations.

    Implementations raise TransientProviderError or ProviderRejected on failure
    and must bound every call with a timeout.
    """

    def create_instance(self, name: str) -> str:
        """Create an instance, returning its QR code."""
        ...

    def connect_instance(self, name: str) -> str:
        """Return a fresh QR code for an existing instance."""
        ...

    def get_connection_state(self, name: str) -> ProviderConnectionState: ...

    def send_text(self, name: str, phone_number: str, text: str) -> str:
        """Send text, returning the provider message id."""
        ...

    def logout(self, name: str) -> None: ...

    def delete_instance(self, name: str) -> None: ...
