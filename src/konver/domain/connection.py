"""WhatsApp connection lifecycle - pairing, reconciliation, disconnect.

State machine per bot:

    disconnected --pair--> connecting --provider "open"--> connected
         ^                     |                               |
         +----- logout / delete / provider "close" ------------+

Every operation runs inside ``store.bot_session(bot_id)``, which holds the bot
row locked, so pairing and reconciliation for one bot never interleave. A
provider result that arrives after the caller cancelled is discarded and the
session rolls back without writing.
"""

import secrets
import string
import threading
from datetime import datetime
from typing import Callable

from konver.infra.store import BotSession, BridgeStore
from konver.infra.time import utc_now
from konver.observability.logging import get_logger
from konver.observability.redaction import safe_log_context
from konver.whatsapp.errors import (
    BotNotFound,
    OperationCancelled,
    ProviderError,
    ProviderRejected,
    TransientProviderError,
)
from konver.whatsapp.models import (
    ActionResult,
    BotInstance,
    ConnectionStatusReport,
    PairingResult,
    ProviderConnectionState,
)
from konver.whatsapp.provider import ProviderClient

logger = get_logger(__name__)

INSTANCE_PREFIX = "bot_"
_INSTANCE_ALPHABET = string.ascii_letters + string.digits + "_-"


def generate_instance_name(length: int = 10) -> str:
    """Random, collision-resistant provider instance name (e.g. "bot_V1StGXR8_Z")."""
    return INSTANCE_PREFIX + "".join(secrets.choice(_INSTANCE_ALPHABET) for _ in range(length))


def _raise_if_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("request abandoned by caller")


def _report(bot: BotInstance) -> ConnectionStatusReport:
    return ConnectionStatusReport(
        status=bot.status,
        instance_name=bot.instance_name,
        phone_number=bot.phone_number,
        profile_name=bot.profile_name,
        qr_code=bot.qr_code,
    )


class ConnectionManager:
    """Owns the per-bot WhatsApp connection state machine."""

    def __init__(
        self,
        store: BridgeStore,
        provider: ProviderClient,
        *,
        instance_name_factory: Callable[[], str] = generate_instance_name,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._provider = provider
        self._new_instance_name = instance_name_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------

    def request_pairing(
        self, bot_id: str, *, cancel: threading.Event | None = None
    ) -> PairingResult:
        """Start (or restart) pairing and return the QR code to display.

        An existing instance is reused first; if the provider refuses or fails
        for any reason, a brand-new instance is created instead.

        Raises:
            BotNotFound: If the bot does not exist.
            OperationCancelled: If ``cancel`` was set before the result was stored.
        """
        log_ctx = safe_log_context(bot_id=bot_id)

        with self._store.bot_session(bot_id) as session:
            bot = session.bot

            if bot.status == "connected":
                return PairingResult(
                    success=False,
                    instance_name=bot.instance_name or "",
                    reason="already_connected",
                    error="WhatsApp is already connected for this bot",
                )

            if bot.instance_name:
                try:
                    qr_code = self._provider.connect_instance(bot.instance_name)
                except ProviderError as exc:
                    logger.warning(
                        "reconnect of existing instance failed, creating new one",
                        extra={"extra_fields": {**log_ctx, "error_reason": exc.reason}},
                    )
                else:
                    _raise_if_cancelled(cancel)
                    session.save(bot.start_pairing(bot.instance_name, qr_code))
                    logger.info(
                        "pairing restarted on existing instance",
                        extra={"extra_fields": log_ctx},
                    )
                    return PairingResult(
                        success=True, instance_name=bot.instance_name, qr_code=qr_code
                    )

            instance_name = self._new_instance_name()
            try:
                qr_code = self._provider.create_instance(instance_name)
            except ProviderError as exc:
                logger.error(
                    "instance creation failed",
                    extra={"extra_fields": {**log_ctx, "error_reason": exc.reason}},
                )
                return PairingResult(success=False, reason=exc.reason, error=str(exc))

            _raise_if_cancelled(cancel)
            session.save(bot.start_pairing(instance_name, qr_code))

        logger.info(
            "pairing started on new instance",
            extra={"extra_fields": safe_log_context(bot_id=bot_id, instance=instance_name)},
        )
        return PairingResult(success=True, instance_name=instance_name, qr_code=qr_code)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def get_status(
        self, bot_id: str, *, cancel: threading.Event | None = None
    ) -> ConnectionStatusReport:
        """Reconcile the cached status with the provider and report it.

        Never raises for provider trouble: an unreachable provider is reported
        as ``disconnected`` and the record is left for the next successful
        reconciliation. A provider that no longer knows the instance moves the
        bot to ``disconnected``.
        """
        try:
            with self._store.bot_session(bot_id) as session:
                bot = session.bot
                if not bot.instance_name:
                    return ConnectionStatusReport(status="disconnected")

                try:
                    reported = self._provider.get_connection_state(bot.instance_name)
                except TransientProviderError as exc:
                    logger.warning(
                        "connection state unavailable",
                        extra={
                            "extra_fields": safe_log_context(
                                bot_id=bot_id, cached_status=bot.status, error_reason=exc.reason
                            )
                        },
                    )
                    return ConnectionStatusReport(
                        status="disconnected", instance_name=bot.instance_name
                    )
                except ProviderRejected as exc:
                    logger.warning(
                        "instance rejected by provider, marking disconnected",
                        extra={
                            "extra_fields": safe_log_context(
                                bot_id=bot_id, error_reason=exc.reason
                            )
                        },
                    )
                    _raise_if_cancelled(cancel)
                    if bot.status != "disconnected":
                        session.save(bot.mark_disconnected())
                    return ConnectionStatusReport(
                        status="disconnected", instance_name=bot.instance_name
                    )

                _raise_if_cancelled(cancel)
                updated = self._apply(session, reported, cancel=cancel)
        except BotNotFound:
            return ConnectionStatusReport(status="disconnected")

        # Reports the record, which may lag the provider (no QR / no owner phone yet)
        return _report(updated)

    def apply_reported_state(
        self, bot_id: str, reported: ProviderConnectionState
    ) -> BotInstance:
        """Feed a state pushed by the provider (webhook) into the state machine."""
        with self._store.bot_session(bot_id) as session:
            if not session.bot.instance_name:
                return session.bot
            return self._apply(session, reported)

    def apply_qr_update(self, bot_id: str, qr_code: str) -> BotInstance:
        """Cache a QR code pushed by the provider while pairing is pending."""
        with self._store.bot_session(bot_id) as session:
            bot = session.bot
            if not bot.instance_name or bot.status == "connected" or bot.qr_code == qr_code:
                return bot
            updated = bot.refresh_qr(qr_code)
            session.save(updated)
            return updated

    def _apply(
        self,
        session: BotSession,
        reported: ProviderConnectionState,
        *,
        cancel: threading.Event | None = None,
    ) -> BotInstance:
        """Move the locked bot to the provider's state. Writes only on change."""
        bot = session.bot
        log_ctx = safe_log_context(bot_id=bot.bot_id, from_status=bot.status)

        if reported.status == "connected":
            phone = reported.phone_number
            if not phone:
                logger.warning(
                    "provider reports open session without owner, waiting for update",
                    extra={"extra_fields": log_ctx},
                )
                return bot
            profile = reported.profile_name
            if profile is None and bot.phone_number == phone:
                profile = bot.profile_name
            if bot.status == "connected" and bot.phone_number == phone and (
                profile is None or profile == bot.profile_name
            ):
                return bot
            same_session = bot.status == "connected" and bot.phone_number == phone
            connected_at = bot.connected_at if same_session else self._clock()
            updated = bot.mark_connected(phone, profile, connected_at or self._clock())

        elif reported.status == "connecting":
            if bot.status == "connecting" and bot.qr_code:
                return bot
            # Pending on the provider but no code to show: fetch one
            try:
                qr_code = self._provider.connect_instance(bot.instance_name or "")
            except ProviderError as exc:
                logger.warning(
                    "could not fetch QR for pending instance",
                    extra={"extra_fields": {**log_ctx, "error_reason": exc.reason}},
                )
                return bot
            _raise_if_cancelled(cancel)
            updated = bot.refresh_qr(qr_code)

        else:
            if bot.status == "disconnected":
                return bot
            updated = bot.mark_disconnected()

        session.save(updated)
        logger.info(
            "connection status changed",
            extra={"extra_fields": {**log_ctx, "to_status": updated.status}},
        )
        return updated

    # ------------------------------------------------------------------
    # Disconnect / delete
    # ------------------------------------------------------------------

    def disconnect(self, bot_id: str) -> ActionResult:
        """Log the WhatsApp session out, keeping the instance for re-pairing."""
        return self._tear_down(bot_id, delete=False)

    def delete(self, bot_id: str) -> ActionResult:
        """Delete the provider instance and wipe the bot's WhatsApp data."""
        return self._tear_down(bot_id, delete=True)

    def _tear_down(self, bot_id: str, *, delete: bool) -> ActionResult:
        operation = "delete" if delete else "logout"
        log_ctx = safe_log_context(bot_id=bot_id, operation=operation)

        with self._store.bot_session(bot_id) as session:
            bot = session.bot
            if not bot.instance_name:
                return ActionResult(
                    success=False,
                    reason="not_configured",
                    error="WhatsApp is not configured for this bot",
                )

            try:
                if delete:
                    self._provider.delete_instance(bot.instance_name)
                else:
                    self._provider.logout(bot.instance_name)
            except ProviderRejected as exc:
                # Already logged out / gone on the provider side
                logger.info(
                    "provider rejected teardown, clearing local state",
                    extra={"extra_fields": {**log_ctx, "error_reason": exc.reason}},
                )
            except TransientProviderError as exc:
                logger.warning(
                    "teardown failed", extra={"extra_fields": {**log_ctx, "error_reason": exc.reason}}
                )
                return ActionResult(success=False, reason=exc.reason, error=str(exc))

            session.save(bot.wipe() if delete else bot.mark_disconnected())

        logger.info("whatsapp teardown completed", extra={"extra_fields": log_ctx})
        return ActionResult(success=True)
