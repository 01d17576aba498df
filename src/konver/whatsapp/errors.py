"""Exceptions raised by the WhatsApp bridge."""


class WhatsAppError(Exception):
    """Base class for bridge errors."""

    reason = "whatsapp_error"


class ProviderError(WhatsAppError):
    """Any failed call to the WhatsApp provider."""

    reason = "provider_error"

    def __init__(self, message: str, *, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Network error, timeout or 5xx. Safe to retry later."""

    reason = "provider_unavailable"


class ProviderRejected(ProviderError):
    """Provider answered but refused the call (unknown instance, invalid state)."""

    reason = "provider_rejected"


class NotPaired(WhatsAppError):
    """Send attempted while the bot is not connected."""

    reason = "not_paired"

    def __init__(self, bot_id: str, status: str):
        self.bot_id = bot_id
        self.status = status
        super().__init__(f"WhatsApp is not connected for this bot (status: {status})")


class BotNotFound(WhatsAppError):
    reason = "bot_not_found"

    def __init__(self, bot_id: str):
        self.bot_id = bot_id
        super().__init__("Bot not found")


class UnknownBotForInstance(WhatsAppError):
    """Webhook received for an instance no bot owns (usually a deleted bot)."""

    reason = "unknown_instance"

    def __init__(self, instance_name: str):
        self.instance_name = instance_name
        super().__init__(f"No bot owns instance '{instance_name}'")


class UnsupportedPayload(WhatsAppError):
    """Message type the normalizer has no handler for."""

    reason = "unsupported_payload"

    def __init__(self, message_type: str):
        self.message_type = message_type
        super().__init__(f"Unsupported message type '{message_type}'")


class InvalidPayloadError(WhatsAppError):
    """Webhook payload is missing fields required by its event kind."""

    reason = "invalid_payload"


class OperationCancelled(WhatsAppError):
    """The caller abandoned the request; provider results are discarded."""

    reason = "cancelled"
