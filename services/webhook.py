"""Inbound WhatsApp webhook: subscription handshake, signature check, reply routing.

Once a delivery's signature checks out the platform always gets a 200, even
when routing the reply fails internally; a non-2xx would make the platform
redeliver the same event over and over. Internal failures go to the log.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from order_desk.config import WebhookSettings
from order_desk.logging import request_context
from services.conversation_log import ConversationLog, IncomingMessage
from services.correlator import OrderCorrelator
from services.metrics import record_correlation, record_status_receipt, record_webhook_delivery
from services.orders import utc_now_iso

logger = logging.getLogger(__name__)

PLATFORM_OBJECT = "whatsapp_business_account"
SUBSCRIBE_MODE = "subscribe"
SIGNATURE_PREFIX = "sha256="


# ---- decoded events ----


@dataclass(frozen=True)
class TextMessage:
    sender: str
    body: str
    message_id: Optional[str]
    timestamp: str


@dataclass(frozen=True)
class StatusUpdate:
    message_id: Optional[str]
    status: str
    recipient: Optional[str]
    timestamp: str


@dataclass(frozen=True)
class IgnoredMessage:
    message_type: str


WebhookEvent = Union[TextMessage, StatusUpdate, IgnoredMessage]


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: Union[str, Dict[str, Any]] = field(default_factory=dict)


def _platform_time(value: Any) -> str:
    """Unix seconds (sent as a string) -> UTC ISO-8601; garbage -> now."""
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return utc_now_iso()


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _decode_message(raw: Any) -> Optional[WebhookEvent]:
    if not isinstance(raw, dict):
        return None
    message_type = raw.get("type")
    if message_type != "text":
        return IgnoredMessage(message_type=str(message_type or "unknown"))

    text = raw.get("text")
    body = text.get("body") if isinstance(text, dict) else None
    sender = raw.get("from")
    if not isinstance(body, str) or not isinstance(sender, str) or not sender:
        logger.debug("Skipping malformed text message: %r", raw)
        return None
    message_id = raw.get("id")
    return TextMessage(
        sender=sender,
        body=body,
        message_id=str(message_id) if message_id else None,
        timestamp=_platform_time(raw.get("timestamp")),
    )


def _decode_status(raw: Any) -> Optional[StatusUpdate]:
    if not isinstance(raw, dict):
        return None
    message_id = raw.get("id")
    recipient = raw.get("recipient_id")
    return StatusUpdate(
        message_id=str(message_id) if message_id else None,
        status=str(raw.get("status") or "unknown"),
        recipient=str(recipient) if recipient else None,
        timestamp=_platform_time(raw.get("timestamp")),
    )


def decode_payload(payload: Any) -> List[WebhookEvent]:
    """
    Walk ``entry[].changes[].value`` and return the message and status events.

    Anything that is not shaped as expected is skipped rather than raised, so
    one odd entry cannot stop the rest of the delivery from being processed.
    """
    if not isinstance(payload, dict) or payload.get("object") != PLATFORM_OBJECT:
        return []

    events: List[WebhookEvent] = []
    for entry in _as_list(payload.get("entry")):
        if not isinstance(entry, dict):
            continue
        for change in _as_list(entry.get("changes")):
            if not isinstance(change, dict) or change.get("field") != "messages":
                continue
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            for raw in _as_list(value.get("messages")):
                event = _decode_message(raw)
                if event is not None:
                    events.append(event)
            for raw in _as_list(value.get("statuses")):
                status = _decode_status(raw)
                if status is not None:
                    events.append(status)
    return events


def compute_signature(secret: str, raw_body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


class InboundWebhookHandler:
    def __init__(
        self,
        settings: WebhookSettings,
        correlator: OrderCorrelator,
        conversation_log: ConversationLog,
    ):
        self.settings = settings
        self.correlator = correlator
        self.conversation_log = conversation_log

    def verify_subscription(
        self, mode: Optional[str], verify_token: Optional[str], challenge: Optional[str]
    ) -> WebhookResponse:
        expected = self.settings.verify_token
        token_ok = bool(expected) and hmac.compare_digest(
            str(verify_token or "").encode("utf-8"), expected.encode("utf-8")
        )
        if mode == SUBSCRIBE_MODE and token_ok:
            logger.info("Webhook subscription verified")
            return WebhookResponse(200, challenge or "")
        logger.warning("Webhook subscription rejected (mode=%r)", mode)
        return WebhookResponse(403, "Forbidden")

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        secret = self.settings.app_secret
        if not secret:
            if self.settings.require_signature:
                logger.error("Webhook app secret not configured and signatures are required")
                return False
            logger.warning("Webhook app secret not configured; skipping signature verification")
            return True

        provided = (signature or "").strip()
        if not provided.startswith(SIGNATURE_PREFIX):
            return False
        provided = SIGNATURE_PREFIX + provided[len(SIGNATURE_PREFIX):].lower()
        expected = compute_signature(secret, raw_body)
        return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))

    def handle_delivery(self, raw_body: bytes, signature: Optional[str]) -> WebhookResponse:
        with request_context():
            if not self.verify_signature(raw_body, signature):
                logger.error("Webhook delivery rejected: invalid signature")
                record_webhook_delivery("rejected")
                return WebhookResponse(401, {"success": False, "error": "invalid signature"})

            try:
                self._process(raw_body)
            except Exception:
                logger.exception("Webhook delivery processing failed")
                record_webhook_delivery("error")
                return WebhookResponse(200, {"success": False})

            record_webhook_delivery("accepted")
            return WebhookResponse(200, {"success": True})

    def _process(self, raw_body: bytes) -> None:
        try:
            payload = json.loads(raw_body or b"null")
        except ValueError:
            logger.warning("Webhook body is not JSON; ignoring (%d bytes)", len(raw_body or b""))
            return

        for event in decode_payload(payload):
            if isinstance(event, TextMessage):
                self._route_reply(event)
            elif isinstance(event, StatusUpdate):
                # Delivery/read receipts are not reconciled onto outgoing events yet.
                logger.info("Message %s status %s", event.message_id, event.status)
                record_status_receipt(event.status)
            else:
                logger.info("Ignoring inbound %s message", event.message_type)

    def _route_reply(self, message: TextMessage) -> None:
        try:
            order = self.correlator.find_open_order_by_phone(message.sender)
            record_correlation(order is not None)
            if order is None:
                logger.info("Dropping reply %s: no open order for sender", message.message_id)
                return
            self.conversation_log.append_incoming(
                order.id,
                IncomingMessage(
                    sender=message.sender,
                    body=message.body,
                    external_message_id=message.message_id,
                    timestamp=message.timestamp,
                ),
            )
        except Exception:
            logger.exception("Failed to route reply %s", message.message_id)
