from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from services.order_store import OrderNotFound, OrderStore
from services.orders import Direction, NotificationEvent, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncomingMessage:
    sender: str
    body: str
    external_message_id: Optional[str]
    timestamp: str


class ConversationLog:
    """Appends customer replies to the matched order's notification log."""

    def __init__(self, store: OrderStore, *, dedupe: bool = False):
        self.store = store
        self.dedupe = dedupe

    def append_incoming(self, order_id: str, message: IncomingMessage) -> bool:
        """
        Returns True when the reply was stored. Failures are logged and
        reported as False, never raised: the webhook acknowledges regardless.
        """
        event = NotificationEvent(
            direction=Direction.INCOMING,
            body=message.body,
            timestamp=message.timestamp or utc_now_iso(),
            external_message_id=message.external_message_id,
            sender=message.sender,
            received_at=utc_now_iso(),
        )
        try:
            _, appended = self.store.append_notification(order_id, event, dedupe=self.dedupe)
        except OrderNotFound:
            logger.error("Cannot log reply %s: order %s not found", message.external_message_id, order_id)
            return False
        except Exception:
            logger.exception("Failed to log reply %s on order %s", message.external_message_id, order_id)
            return False

        if not appended:
            logger.info("Reply %s already logged on order %s", message.external_message_id, order_id)
            return False
        logger.info("Logged reply %s on order %s", message.external_message_id, order_id)
        return True
