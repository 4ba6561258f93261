"""Order status workflow.

``received -> inProgress -> ready -> outForDelivery -> completed``, and any of
the first four may go to ``cancelled``. Entering ``outForDelivery`` sends the
customer a WhatsApp notification; its outcome is appended to the order before
``transition`` returns, and a failed send never undoes the status change.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Mapping, Optional

from order_desk.logging import log_event
from services.metrics import metrics, record_notification
from services.order_store import OrderStore, StaleStatusError
from services.orders import NotificationKind, Order, OrderStatus, utc_now_iso
from services.whatsapp import NotificationResult, NotificationSender

logger = logging.getLogger(__name__)

S = OrderStatus

ALLOWED_TRANSITIONS: Mapping[OrderStatus, FrozenSet[OrderStatus]] = {
    S.RECEIVED: frozenset({S.IN_PROGRESS, S.CANCELLED}),
    S.IN_PROGRESS: frozenset({S.READY, S.CANCELLED}),
    S.READY: frozenset({S.OUT_FOR_DELIVERY, S.CANCELLED}),
    S.OUT_FOR_DELIVERY: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

NOTIFY_ON_ENTER = S.OUT_FOR_DELIVERY


class InvalidTransition(ValueError):
    def __init__(self, order_id: str, current: Any, target: Any):
        self.order_id = order_id
        self.current = current
        self.target = target
        current_label = getattr(current, "value", current)
        target_label = getattr(target, "value", target)
        super().__init__(f"Order {order_id}: cannot move from {current_label} to {target_label}")


def allowed_targets(status: OrderStatus) -> FrozenSet[OrderStatus]:
    return ALLOWED_TRANSITIONS.get(status, frozenset())


def is_allowed(current: OrderStatus, target: OrderStatus) -> bool:
    return target in allowed_targets(current)


def side_fields_for(order: Order, target: OrderStatus, now: str) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if target is S.COMPLETED:
        fields["completed_date"] = now
    elif target is S.CANCELLED:
        fields["cancelled_at"] = now
        if order.payment_status == "pending":
            fields["payment_status"] = "cancelled"
    return fields


@dataclass(frozen=True)
class TransitionResult:
    order: Order
    previous_status: OrderStatus
    notification: Optional[NotificationResult] = None
    outcome_recorded: bool = True


class OrderTransitionService:
    def __init__(self, store: OrderStore, sender: NotificationSender):
        self.store = store
        self.sender = sender

    def transition(self, order_id: str, new_status: Any) -> TransitionResult:
        order = self.store.get_order(order_id)
        target = OrderStatus.parse(new_status)
        if target is None or not is_allowed(order.status, target):
            raise InvalidTransition(order_id, order.status, target or new_status)

        fields = side_fields_for(order, target, utc_now_iso())
        try:
            updated = self.store.write_status(order_id, order.status, target, fields)
        except StaleStatusError as e:
            logger.warning("Transition lost a race: %s", e)
            raise InvalidTransition(order_id, order.status, target) from e

        logger.info(
            "Order %s (#%s) %s -> %s",
            order_id,
            order.order_number,
            order.status.value,
            target.value,
        )

        if target is not NOTIFY_ON_ENTER:
            return TransitionResult(order=updated, previous_status=order.status)

        with metrics.timer("delivery_notification"):
            try:
                result = self.sender.notify(updated)
            except Exception as e:
                # The order is already outForDelivery; it must still get an outcome.
                logger.exception("Notification sender crashed for order %s", order_id)
                result = NotificationResult(
                    kind=NotificationKind.FAILED, timestamp=utc_now_iso(), reason=str(e)
                )
        record_notification(result.kind.value)
        log_event(
            logger,
            logging.WARNING if result.kind is NotificationKind.FAILED else logging.INFO,
            f"Delivery notification {result.kind.value} for order {order_id}",
            order_id=order_id,
            kind=result.kind.value,
            reason=result.reason,
            message_id=result.message_id,
        )
        return self._record_outcome(updated, order.status, result)

    def _record_outcome(
        self, order: Order, previous: OrderStatus, result: NotificationResult
    ) -> TransitionResult:
        """Append the send outcome; if that fails, try once more to leave a ``failed`` marker."""
        try:
            updated, _ = self.store.append_notification(order.id, result.to_event())
            return TransitionResult(order=updated, previous_status=previous, notification=result)
        except Exception as e:
            logger.exception("Could not record notification outcome for order %s", order.id)
            failed = NotificationResult(
                kind=NotificationKind.FAILED,
                timestamp=utc_now_iso(),
                body=result.body,
                reason=f"outcome not recorded: {e}",
                message_id=result.message_id,
                error_code=result.error_code,
                phone=result.phone,
            )

        try:
            updated, _ = self.store.append_notification(order.id, failed.to_event())
            return TransitionResult(order=updated, previous_status=previous, notification=failed)
        except Exception:
            logger.exception("Order %s is outForDelivery with no recorded outcome", order.id)
            return TransitionResult(
                order=order, previous_status=previous, notification=failed, outcome_recorded=False
            )
