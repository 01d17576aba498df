"""ASGI entry point: ``uvicorn konver.api.app:app``."""

from .factory import create_app

app = create_app()
