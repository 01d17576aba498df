"""Request-scoped dependencies."""

from fastapi import Request

from konver.services.bridge import WhatsAppBridge


def get_bridge(request: Request) -> WhatsAppBridge:
    """Bridge service built at startup (``create_app``)."""
    return request.app.state.bridge
