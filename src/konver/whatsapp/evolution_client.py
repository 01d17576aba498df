"""Evolution API client - instance pairing, connection state and text sending.

Every call has an HTTP timeout. Failures are raised as:
- TransientProviderError: network error, timeout, 429 or 5xx
- ProviderRejected: any other 4xx (unknown instance, invalid state)

Security: NEVER log phone numbers, JIDs or message text. Only hashes and lengths.
"""

import json
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from konver.observability.logging import get_logger
from konver.observability.redaction import safe_log_context, short_hash

from .errors import ProviderRejected, TransientProviderError
from .evolution_adapter import extract_phone_number
from .models import ProviderConnectionState

logger = get_logger(__name__)

DEFAULT_HTTP_TIMEOUT = 10.0

# Read-only calls are retried once on transient failure
MAX_READ_RETRIES = 1
RETRY_DELAY = 0.2

WEBHOOK_EVENTS = ["MESSAGES_UPSERT", "CONNECTION_UPDATE", "QRCODE_UPDATED"]


@dataclass(frozen=True)
class EvolutionConfig:
    base_url: str
    api_key: str
    webhook_url: str | None = None
    webhook_secret: str | None = None
    timeout: float = DEFAULT_HTTP_TIMEOUT

    @classmethod
    def from_env(cls) -> "EvolutionConfig":
        """Load config from environment.

        Required env vars:
        - EVOLUTION_BASE_URL: Base URL (e.g., http://localhost:8080)
        - EVOLUTION_API_KEY: Global API key

        Optional:
        - EVOLUTION_WEBHOOK_URL: Webhook registered on new instances
        - EVOLUTION_WEBHOOK_SECRET: Sent back as X-Webhook-Secret header
        - EVOLUTION_HTTP_TIMEOUT: Per-request timeout in seconds (default: 10)
        """
        base_url = os.environ.get("EVOLUTION_BASE_URL", "")
        api_key = os.environ.get("EVOLUTION_API_KEY", "")

        if not base_url or not api_key:
            raise RuntimeError("Missing Evolution config: EVOLUTION_BASE_URL, EVOLUTION_API_KEY")

        return cls(
            base_url=base_url.rstrip("/"),
            api_key=api_key,
            webhook_url=os.environ.get("EVOLUTION_WEBHOOK_URL") or None,
            webhook_secret=os.environ.get("EVOLUTION_WEBHOOK_SECRET") or None,
            timeout=float(os.environ.get("EVOLUTION_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)),
        )


def _error_detail(err: urllib.error.HTTPError) -> str:
    """Best-effort human-readable message from an Evolution error body."""
    try:
        body = json.loads(err.read().decode() or "{}")
    except (ValueError, OSError):
        return err.reason if isinstance(err.reason, str) else "request failed"

    response = body.get("response") if isinstance(body, dict) else None
    if isinstance(response, dict):
        message = response.get("message")
        if isinstance(message, list) and message:
            return str(message[0])
        if isinstance(message, str):
            return message
    if isinstance(body, dict):
        for key in ("message", "error"):
            if isinstance(body.get(key), str):
                return body[key]
    return "request failed"


def _qr_from(body: Any) -> str:
    """Pull the base64 QR image from a create/connect response."""
    if isinstance(body, dict):
        qrcode = body.get("qrcode")
        if isinstance(qrcode, dict) and isinstance(qrcode.get("base64"), str):
            return qrcode["base64"]
        if isinstance(body.get("base64"), str):
            return body["base64"]
    return ""


class EvolutionClient:
    """Provider client for one Evolution API server."""

    def __init__(self, config: EvolutionConfig) -> None:
        self._config = config

    @classmethod
    def from_env(cls) -> "EvolutionClient":
        return cls(EvolutionConfig.from_env())

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _do_request(
        self, method: str, path: str, body: dict[str, Any] | None = None
    ) -> Any:
        """Execute one HTTP request and decode the JSON response."""
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(
            f"{self._config.base_url}{path}",
            data=data,
            headers={"Content-Type": "application/json", "apikey": self._config.api_key},
            method=method,
        )
        with urllib.request.urlopen(req, timeout=self._config.timeout) as resp:
            raw = resp.read().decode()
        return json.loads(raw) if raw.strip() else {}

    def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        operation: str,
        instance_name: str,
    ) -> Any:
        retries = MAX_READ_RETRIES if method == "GET" else 0
        log_ctx = safe_log_context(operation=operation, instance=instance_name)

        for attempt in range(retries + 1):
            try:
                return self._do_request(method, path, body)
            except urllib.error.HTTPError as e:
                transient = e.code == 429 or e.code >= 500
                detail = _error_detail(e)
                if transient and attempt < retries:
                    logger.warning(
                        "evolution call failed, retrying",
                        extra={"extra_fields": {**log_ctx, "status_code": str(e.code)}},
                    )
                    time.sleep(RETRY_DELAY)
                    continue
                logger.warning(
                    "evolution call failed",
                    extra={"extra_fields": {**log_ctx, "status_code": str(e.code)}},
                )
                error_cls = TransientProviderError if transient else ProviderRejected
                raise error_cls(
                    f"Evolution API error ({e.code}): {detail}", status_code=e.code
                ) from e
            except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
                if attempt < retries:
                    logger.warning(
                        "evolution call failed, retrying",
                        extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
                    )
                    time.sleep(RETRY_DELAY)
                    continue
                logger.warning(
                    "evolution unreachable",
                    extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
                )
                raise TransientProviderError(
                    f"WhatsApp provider unreachable ({type(e).__name__})"
                ) from e
            except ValueError as e:
                raise TransientProviderError("WhatsApp provider returned invalid JSON") from e

        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def create_instance(self, name: str) -> str:
        """Create an instance and return its pairing QR code (base64 image)."""
        body: dict[str, Any] = {
            "instanceName": name,
            "qrcode": True,
            "integration": "WHATSAPP-BAILEYS",
            "groupsIgnore": True,
            "alwaysOnline": True,
            "readMessages": False,
            "syncFullHistory": False,
        }
        if self._config.webhook_url:
            webhook: dict[str, Any] = {
                "url": self._config.webhook_url,
                "byEvents": False,
                "base64": False,
                "events": WEBHOOK_EVENTS,
            }
            if self._config.webhook_secret:
                webhook["headers"] = {"X-Webhook-Secret": self._config.webhook_secret}
            body["webhook"] = webhook

        response = self._request(
            "POST", "/instance/create", body, operation="create_instance", instance_name=name
        )
        qr = _qr_from(response)
        if not qr:
            raise ProviderRejected("Provider created the instance without a QR code")
        logger.info(
            "evolution instance created",
            extra={"extra_fields": safe_log_context(instance=name)},
        )
        return qr

    def connect_instance(self, name: str) -> str:
        """Request a fresh QR code for an existing instance."""
        response = self._request(
            "GET",
            f"/instance/connect/{urllib.parse.quote(name)}",
            operation="connect_instance",
            instance_name=name,
        )
        qr = _qr_from(response)
        if not qr:
            # Already-open sessions answer without a code
            raise ProviderRejected("Provider returned no QR code for the instance")
        return qr

    def get_connection_state(self, name: str) -> ProviderConnectionState:
        """Return the provider's state for the instance.

        When the session is open, the paired account is looked up as well so
        the caller can record phone and profile name.
        """
        quoted = urllib.parse.quote(name)
        response = self._request(
            "GET",
            f"/instance/connectionState/{quoted}",
            operation="connection_state",
            instance_name=name,
        )
        instance = response.get("instance", {}) if isinstance(response, dict) else {}
        state = instance.get("state") if isinstance(instance, dict) else None
        if not isinstance(state, str):
            raise TransientProviderError("Provider returned no connection state")

        if state != "open":
            return ProviderConnectionState(state=state)

        try:
            owner_jid, profile_name = self._fetch_owner(name)
        except (TransientProviderError, ProviderRejected):
            # State is known; the owner arrives with the connection.update webhook
            owner_jid, profile_name = None, None
        return ProviderConnectionState(
            state=state,
            phone_number=extract_phone_number(owner_jid) if owner_jid else None,
            profile_name=profile_name,
        )

    def _fetch_owner(self, name: str) -> tuple[str | None, str | None]:
        response = self._request(
            "GET",
            f"/instance/fetchInstances?instanceName={urllib.parse.quote(name)}",
            operation="fetch_instance",
            instance_name=name,
        )
        items = response if isinstance(response, list) else [response]
        for item in items:
            if not isinstance(item, dict):
                continue
            # v1 wraps the record in "instance"
            record = item.get("instance") if isinstance(item.get("instance"), dict) else item
            owner = record.get("ownerJid") or record.get("owner")
            profile = record.get("profileName")
            return (
                owner if isinstance(owner, str) and owner else None,
                profile if isinstance(profile, str) and profile else None,
            )
        return None, None

    def send_text(self, name: str, phone_number: str, text: str) -> str:
        """Send a text message. Returns the provider message id."""
        log_ctx = safe_log_context(
            instance=name, to_hash=short_hash(phone_number), text_len=len(text)
        )
        logger.info("sending outbound message", extra={"extra_fields": log_ctx})

        response = self._request(
            "POST",
            f"/message/sendText/{urllib.parse.quote(name)}",
            {"number": phone_number, "text": text},
            operation="send_text",
            instance_name=name,
        )
        key = response.get("key") if isinstance(response, dict) else None
        message_id = key.get("id") if isinstance(key, dict) else None
        if not isinstance(message_id, str) or not message_id:
            raise TransientProviderError("Provider accepted the message without an id")

        logger.info("outbound message sent", extra={"extra_fields": log_ctx})
        return message_id

    def logout(self, name: str) -> None:
        self._request(
            "DELETE",
            f"/instance/logout/{urllib.parse.quote(name)}",
            operation="logout",
            instance_name=name,
        )

    def delete_instance(self, name: str) -> None:
        self._request(
            "DELETE",
            f"/instance/delete/{urllib.parse.quote(name)}",
            operation="delete_instance",
            instance_name=name,
        )
