"""WhatsApp Cloud API delivery notifications.

``NotificationSender.notify`` never raises for expected conditions: it returns
a ``NotificationResult`` whose ``kind`` is ``sent``, ``failed`` or ``skipped``.
Nothing here retries; a failed send is left for a human to follow up.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from order_desk.config import MessagingSettings
from services.orders import Direction, NotificationEvent, NotificationKind, Order, utc_now_iso

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "not configured"
MISSING_CLIENT_OR_PHONE = "missing client or phone"
INVALID_PHONE = "invalid phone"

_NON_DIGITS = re.compile(r"\D")


def digits_only(phone: Optional[str]) -> str:
    return _NON_DIGITS.sub("", str(phone or ""))


def normalize_phone(phone: Optional[str], country_code: str = "52") -> str:
    """Digits only; a bare 10-digit local number gets ``country_code`` prefixed."""
    cleaned = digits_only(phone)
    if len(cleaned) == 10:
        return f"{digits_only(country_code)}{cleaned}"
    return cleaned


def format_services_list(order: Order) -> str:
    names = order.active_service_names
    if not names:
        return "Tu pedido"
    # Single line so the same text fits a template parameter.
    return ", ".join(names)


def build_tracking_url(tracking_token: Optional[str], settings: MessagingSettings) -> str:
    if not settings.tracking_url or not tracking_token:
        return "Solicita el enlace de rastreo a tu vendedor"
    base = settings.tracking_url if settings.tracking_url.endswith("/") else f"{settings.tracking_url}/"
    return f"{base}{tracking_token}"


def build_delivery_message(order: Order, settings: MessagingSettings) -> str:
    order_ref = order.order_number or order.id
    address = f"\n\nTe esperamos en:\n{settings.business_address}" if settings.business_address else ""
    return (
        f"¡Hola {order.client}! 👋\n\n"
        f"Tu orden #{order_ref} está lista para entrega. 🎉\n\n"
        f"Servicios: {format_services_list(order)}{address}\n\n"
        f"¡Gracias por tu preferencia!\n\n"
        f"- {settings.business_name}"
    )


def template_parameters(order: Order, settings: MessagingSettings) -> List[str]:
    # Order matters: the approved template references {{1}}..{{5}}.
    return [
        order.client,
        str(order.order_number or order.id),
        format_services_list(order),
        settings.business_address or "Ubicación no configurada",
        build_tracking_url(order.tracking_token, settings),
    ]


def render_template_message(order: Order, settings: MessagingSettings) -> str:
    """Text equivalent of the approved template, stored in the conversation log."""
    client, number, services, address, tracking = template_parameters(order, settings)
    return (
        f"¡Hola {client}! 👋\n\n"
        f"Tu orden #{number} está lista para recoger 🎉\n\n"
        f"📦 Servicios: {services}\n\n"
        f"📍 Te esperamos en: {address}\n\n"
        f"🔍 Rastrea tu orden aquí: {tracking}\n\n"
        f"¡Gracias por tu confianza!\n"
        f"- {settings.business_name}"
    )


def whatsapp_web_link(order: Order, settings: MessagingSettings) -> str:
    """wa.me link with the delivery message, for manual follow-up after a failed send."""
    phone = normalize_phone(order.phone, settings.default_country_code)
    return f"https://wa.me/{phone}?text={quote(build_delivery_message(order, settings))}"


@dataclass(frozen=True)
class SendResponse:
    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    http_status: Optional[int] = None


@dataclass(frozen=True)
class NotificationResult:
    kind: NotificationKind
    timestamp: str
    body: str = ""
    reason: Optional[str] = None
    message_id: Optional[str] = None
    error_code: Optional[str] = None
    phone: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.kind is NotificationKind.SENT

    def to_event(self) -> NotificationEvent:
        return NotificationEvent(
            direction=Direction.OUTGOING,
            kind=self.kind,
            body=self.body,
            timestamp=self.timestamp,
            external_message_id=self.message_id if self.sent else None,
            error=self.reason if self.kind is NotificationKind.FAILED else None,
            error_code=self.error_code,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "body": self.body,
            "reason": self.reason,
            "message_id": self.message_id,
            "error_code": self.error_code,
        }


class WhatsAppClient:
    """Thin synchronous client for the Cloud API ``/messages`` endpoint."""

    def __init__(self, settings: MessagingSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def send_text(self, to: str, body: str) -> SendResponse:
        return self._post(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": "text",
                "text": {"preview_url": False, "body": body},
            }
        )

    def send_template(self, to: str, name: str, parameters: List[str]) -> SendResponse:
        return self._post(
            {
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": to,
                "type": "template",
                "template": {
                    "name": name,
                    "language": {"code": self.settings.template_language},
                    "components": [
                        {
                            "type": "body",
                            "parameters": [{"type": "text", "text": p} for p in parameters],
                        }
                    ],
                },
            }
        )

    def _post(self, payload: Dict[str, Any]) -> SendResponse:
        headers = {
            "Authorization": f"Bearer {self.settings.access_token}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.post(
                self.settings.messages_url,
                json=payload,
                headers=headers,
                timeout=self.settings.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning("WhatsApp transport error to=%s: %s", payload.get("to"), e)
            return SendResponse(ok=False, error=str(e))

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.ok:
            messages = data.get("messages") or []
            message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
            if message_id:
                return SendResponse(ok=True, message_id=str(message_id), http_status=resp.status_code)
            return SendResponse(
                ok=False,
                error="response did not include a message id",
                http_status=resp.status_code,
            )

        error = data.get("error") if isinstance(data.get("error"), dict) else {}
        reason = error.get("message") or resp.text or f"HTTP {resp.status_code}"
        code = error.get("code")
        logger.warning(
            "WhatsApp API error status=%s code=%s type=%s: %s",
            resp.status_code,
            code,
            error.get("type"),
            reason,
        )
        return SendResponse(
            ok=False,
            error=str(reason),
            error_code=str(code) if code is not None else None,
            http_status=resp.status_code,
        )


class NotificationSender:
    def __init__(self, settings: MessagingSettings, client: Optional[WhatsAppClient] = None):
        self.settings = settings
        self.client = client or WhatsAppClient(settings)

    def notify(self, order: Order) -> NotificationResult:
        """Tell the customer their order is out for delivery."""
        if not self.settings.is_configured:
            logger.info("WhatsApp not configured; skipping notification for order %s", order.id)
            return NotificationResult(
                kind=NotificationKind.SKIPPED, timestamp=utc_now_iso(), reason=NOT_CONFIGURED
            )

        if not order.client or not order.phone:
            logger.error(
                "Order %s missing client or phone (client=%s phone=%s)",
                order.id,
                bool(order.client),
                bool(order.phone),
            )
            return NotificationResult(
                kind=NotificationKind.FAILED, timestamp=utc_now_iso(), reason=MISSING_CLIENT_OR_PHONE
            )

        to = normalize_phone(order.phone, self.settings.default_country_code)
        if not to:
            return NotificationResult(
                kind=NotificationKind.FAILED, timestamp=utc_now_iso(), reason=INVALID_PHONE
            )

        if self.settings.template_name:
            body = render_template_message(order, self.settings)
            response = self.client.send_template(
                to, self.settings.template_name, template_parameters(order, self.settings)
            )
        else:
            body = build_delivery_message(order, self.settings)
            response = self.client.send_text(to, body)

        if response.ok:
            logger.info("Delivery notification sent for order %s id=%s", order.id, response.message_id)
            return NotificationResult(
                kind=NotificationKind.SENT,
                timestamp=utc_now_iso(),
                body=body,
                message_id=response.message_id,
                phone=to,
            )

        logger.error("Delivery notification failed for order %s: %s", order.id, response.error)
        return NotificationResult(
            kind=NotificationKind.FAILED,
            timestamp=utc_now_iso(),
            body=body,
            reason=response.error,
            error_code=response.error_code,
            phone=to,
        )

    def send_test_message(self, phone: str) -> NotificationResult:
        """Send a one-off configuration check message to ``phone``."""
        if not self.settings.is_configured:
            return NotificationResult(
                kind=NotificationKind.SKIPPED, timestamp=utc_now_iso(), reason=NOT_CONFIGURED
            )
        to = normalize_phone(phone, self.settings.default_country_code)
        if not to:
            return NotificationResult(
                kind=NotificationKind.FAILED, timestamp=utc_now_iso(), reason=INVALID_PHONE
            )
        body = (
            f"🔧 Mensaje de prueba desde {self.settings.business_name}\n\n"
            "La integración de WhatsApp está funcionando correctamente. ✅"
        )
        response = self.client.send_text(to, body)
        kind = NotificationKind.SENT if response.ok else NotificationKind.FAILED
        return NotificationResult(
            kind=kind,
            timestamp=utc_now_iso(),
            body=body,
            reason=None if response.ok else response.error,
            message_id=response.message_id,
            error_code=response.error_code,
            phone=to,
        )
