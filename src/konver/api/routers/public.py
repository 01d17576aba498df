"""Unauthenticated service routes."""

from fastapi import APIRouter

router = APIRouter()

SERVICE_NAME = "konver-whatsapp-bridge"


@router.get("/health")
def health() -> dict:
    """Liveness probe. Does not touch the database or the provider."""
    return {"status": "ok", "service": SERVICE_NAME}
