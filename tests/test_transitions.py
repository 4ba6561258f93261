import itertools
from unittest.mock import MagicMock

import pytest

from order_desk.config import MessagingSettings
from services.orders import Direction, NotificationKind, OrderStatus
from services.transitions import (
    ALLOWED_TRANSITIONS,
    InvalidTransition,
    OrderTransitionService,
    allowed_targets,
)
from services.whatsapp import NotificationSender, SendResponse

VALID_EDGES = [
    ("received", "inProgress"),
    ("inProgress", "ready"),
    ("ready", "outForDelivery"),
    ("outForDelivery", "completed"),
    ("received", "cancelled"),
    ("inProgress", "cancelled"),
    ("ready", "cancelled"),
    ("outForDelivery", "cancelled"),
]
ALL_PAIRS = list(itertools.product([s.value for s in OrderStatus], repeat=2))
INVALID_EDGES = [pair for pair in ALL_PAIRS if pair not in VALID_EDGES]


@pytest.fixture
def service(store, sender):
    return OrderTransitionService(store, sender)


def test_table_matches_workflow():
    edges = {(a.value, b.value) for a, targets in ALLOWED_TRANSITIONS.items() for b in targets}
    assert edges == set(VALID_EDGES)
    assert allowed_targets(OrderStatus.COMPLETED) == frozenset()
    assert allowed_targets(OrderStatus.CANCELLED) == frozenset()


@pytest.mark.parametrize("current, target", VALID_EDGES)
def test_valid_edges_succeed(service, store, force_status, current, target):
    order = store.create_order("Ana", "5512345678")
    force_status(order.id, current)

    result = service.transition(order.id, target)

    assert result.order.status.value == target
    assert result.previous_status.value == current
    assert store.get_order(order.id).status.value == target


@pytest.mark.parametrize("current, target", INVALID_EDGES)
def test_invalid_edges_rejected_without_writes(service, store, force_status, wa_client, current, target):
    order = store.create_order("Ana", "5512345678")
    force_status(order.id, current)
    before = store.get_order(order.id)

    with pytest.raises(InvalidTransition):
        service.transition(order.id, target)

    after = store.get_order(order.id)
    assert after == before
    wa_client.send_text.assert_not_called()


def test_unknown_status_literal_is_invalid(service, store):
    order = store.create_order("Ana", "5512345678")
    with pytest.raises(InvalidTransition):
        service.transition(order.id, "enEntrega")
    assert store.get_order(order.id).status is OrderStatus.RECEIVED


def test_out_for_delivery_end_to_end(service, store, force_status):
    order = store.create_order("Ana", "555-123-4567", order_id="o1")
    force_status("o1", "ready")
    before = len(store.get_order("o1").notifications)

    result = service.transition("o1", "outForDelivery")

    stored = store.get_order("o1")
    assert stored.status is OrderStatus.OUT_FOR_DELIVERY
    assert len(stored.notifications) == before + 1
    event = stored.notifications[-1]
    assert event.direction is Direction.OUTGOING
    assert event.kind is NotificationKind.SENT
    assert event.external_message_id == "wamid.OUT1"
    assert result.notification.kind is NotificationKind.SENT
    assert order.id == "o1"


@pytest.mark.parametrize(
    "settings, phone, expected",
    [
        (MessagingSettings(enabled=False), "5512345678", NotificationKind.SKIPPED),
        (MessagingSettings(enabled=True, access_token="t", phone_number_id="1"), "", NotificationKind.FAILED),
        (MessagingSettings(enabled=True, access_token="t", phone_number_id="1"), "5512345678", NotificationKind.SENT),
    ],
)
def test_out_for_delivery_always_records_one_outcome(store, force_status, wa_client, settings, phone, expected):
    service = OrderTransitionService(store, NotificationSender(settings, client=wa_client))
    order = store.create_order("Ana", phone)
    force_status(order.id, "ready")

    result = service.transition(order.id, "outForDelivery")

    outgoing = [n for n in result.order.notifications if n.direction is Direction.OUTGOING]
    assert len(outgoing) == 1
    assert outgoing[0].kind is expected
    assert result.order.status is OrderStatus.OUT_FOR_DELIVERY


def test_failed_send_keeps_status_and_records_reason(store, force_status, messaging, wa_client):
    wa_client.send_text.return_value = SendResponse(ok=False, error="Message undeliverable", error_code="131026")
    service = OrderTransitionService(store, NotificationSender(messaging, client=wa_client))
    order = store.create_order("Ana", "5512345678")
    force_status(order.id, "ready")

    result = service.transition(order.id, "outForDelivery")

    assert result.order.status is OrderStatus.OUT_FOR_DELIVERY
    event = result.order.notifications[-1]
    assert event.kind is NotificationKind.FAILED
    assert event.error == "Message undeliverable"
    assert event.error_code == "131026"
    assert wa_client.send_text.call_count == 1


def test_sender_crash_is_recorded_as_failed(store, force_status):
    crashing = MagicMock()
    crashing.notify.side_effect = RuntimeError("boom")
    service = OrderTransitionService(store, crashing)
    order = store.create_order("Ana", "5512345678")
    force_status(order.id, "ready")

    result = service.transition(order.id, "outForDelivery")

    assert result.order.status is OrderStatus.OUT_FOR_DELIVERY
    assert result.notification.kind is NotificationKind.FAILED
    assert result.order.notifications[-1].error == "boom"


def test_other_transitions_do_not_notify(service, store, wa_client):
    order = store.create_order("Ana", "5512345678")

    result = service.transition(order.id, "inProgress")

    assert result.notification is None
    assert result.order.notifications == []
    wa_client.send_text.assert_not_called()


def test_completed_sets_completed_date(service, store, force_status):
    order = store.create_order("Ana", "5512345678")
    force_status(order.id, "outForDelivery")

    result = service.transition(order.id, OrderStatus.COMPLETED)

    assert result.order.completed_date is not None
    assert result.order.cancelled_at is None


def test_cancel_sets_timestamp_and_cancels_pending_payment(service, store):
    pending = store.create_order("Ana", "5512345678", payment_status="pending")
    paid = store.create_order("Beto", "5512345679", payment_status="paid")

    cancelled = service.transition(pending.id, "cancelled").order
    cancelled_paid = service.transition(paid.id, "cancelled").order

    assert cancelled.cancelled_at is not None
    assert cancelled.payment_status == "cancelled"
    assert cancelled_paid.payment_status == "paid"


def test_transition_unknown_order(service):
    from services.order_store import OrderNotFound

    with pytest.raises(OrderNotFound):
        service.transition("missing", "inProgress")


def test_outcome_append_conflicts_do_not_raise(service, store, force_status, monkeypatch):
    from services.order_store import ConcurrentModificationError, OrderStore

    def always_conflict(self, con, order_id, events, expected_version, incoming_at):
        raise ConcurrentModificationError("busy")

    monkeypatch.setattr(OrderStore, "_write_log", always_conflict)
    monkeypatch.setattr("services.retry.time.sleep", lambda s: None)
    order = store.create_order("Ana", "5512345678")
    force_status(order.id, "ready")

    result = service.transition(order.id, "outForDelivery")

    assert result.order.status is OrderStatus.OUT_FOR_DELIVERY
    assert result.outcome_recorded is False
    assert result.notification.kind is NotificationKind.FAILED
    assert result.notification.reason.startswith("outcome not recorded:")
    assert store.get_order(order.id).status is OrderStatus.OUT_FOR_DELIVERY


def test_outcome_append_failure_leaves_failed_marker(service, store, force_status, monkeypatch):
    order = store.create_order("Ana", "5512345678")
    force_status(order.id, "ready")
    original = store.append_notification
    calls = []

    def flaky_append(order_id, event, **kwargs):
        calls.append(event)
        if len(calls) == 1:
            raise RuntimeError("disk I/O error")
        return original(order_id, event, **kwargs)

    monkeypatch.setattr(store, "append_notification", flaky_append)

    result = service.transition(order.id, "outForDelivery")

    assert result.outcome_recorded is True
    events = store.get_order(order.id).notifications
    assert len(events) == 1
    assert events[0].kind is NotificationKind.FAILED
    assert events[0].error == "outcome not recorded: disk I/O error"
