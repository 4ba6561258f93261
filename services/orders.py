"""Order and notification-log records shared by every order service."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderStatus(str, Enum):
    RECEIVED = "received"
    IN_PROGRESS = "inProgress"
    READY = "ready"
    OUT_FOR_DELIVERY = "outForDelivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> Optional["OrderStatus"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip())
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})
OPEN_STATUSES = frozenset(s for s in OrderStatus if s not in TERMINAL_STATUSES)

BOARD_COLUMNS = (
    OrderStatus.RECEIVED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.READY,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
)


class Direction(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class NotificationKind(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse a stored ISO timestamp; unparseable or missing values sort first."""
    if not value:
        return datetime.min.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class NotificationEvent:
    direction: Direction
    body: str
    timestamp: str
    kind: Optional[NotificationKind] = None
    external_message_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    sender: Optional[str] = None
    received_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "direction": self.direction.value,
            "body": self.body,
            "timestamp": self.timestamp,
        }
        if self.kind is not None:
            data["kind"] = self.kind.value
        for key in ("external_message_id", "error", "error_code", "sender", "received_at"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationEvent":
        kind = data.get("kind")
        return cls(
            direction=Direction(data.get("direction", Direction.OUTGOING.value)),
            body=str(data.get("body") or ""),
            timestamp=str(data.get("timestamp") or ""),
            kind=NotificationKind(kind) if kind else None,
            external_message_id=data.get("external_message_id"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            sender=data.get("sender"),
            received_at=data.get("received_at"),
        )


@dataclass(frozen=True)
class ServiceLine:
    service_name: str
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status != "cancelled"

    def to_dict(self) -> Dict[str, Any]:
        return {"service_name": self.service_name, "status": self.status}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceLine":
        return cls(
            service_name=str(data.get("service_name") or data.get("serviceName") or "").strip(),
            status=str(data.get("status") or "active"),
        )


@dataclass(frozen=True)
class Order:
    id: str
    order_number: int
    client: str
    phone: str
    status: OrderStatus
    created_at: str
    services: List[ServiceLine] = field(default_factory=list)
    payment_status: str = "pending"
    tracking_token: Optional[str] = None
    completed_date: Optional[str] = None
    cancelled_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_incoming_message_at: Optional[str] = None
    notifications: List[NotificationEvent] = field(default_factory=list)
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def active_service_names(self) -> List[str]:
        return [s.service_name for s in self.services if s.is_active and s.service_name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "client": self.client,
            "phone": self.phone,
            "status": self.status.value,
            "created_at": self.created_at,
            "services": [s.to_dict() for s in self.services],
            "payment_status": self.payment_status,
            "tracking_token": self.tracking_token,
            "completed_date": self.completed_date,
            "cancelled_at": self.cancelled_at,
            "updated_at": self.updated_at,
            "last_incoming_message_at": self.last_incoming_message_at,
            "notifications": [n.to_dict() for n in self.notifications],
        }
