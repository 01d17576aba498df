"""Shared pytest fixtures for the WhatsApp bridge tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from konver.services.bridge import WhatsAppBridge  # noqa: E402

from .helpers import FakeProvider, InMemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Run every test without webhook secret / production mode from the host."""
    for name in (
        "EVOLUTION_WEBHOOK_SECRET",
        "APP_ENV",
        "WHATSAPP_DEFAULT_COUNTRY_CODE",
        "WHATSAPP_DEFAULT_AREA_CODE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def bridge(store, provider):
    return WhatsAppBridge(store, provider)
