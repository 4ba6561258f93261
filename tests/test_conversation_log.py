from unittest.mock import MagicMock

from services.conversation_log import ConversationLog, IncomingMessage
from services.orders import Direction, NotificationKind


def _message(message_id="wamid.IN1", body="¿Ya viene?"):
    return IncomingMessage(
        sender="5215512345678",
        body=body,
        external_message_id=message_id,
        timestamp="2026-01-01T10:00:00+00:00",
    )


def test_append_incoming_records_reply(store):
    order = store.create_order("Ana", "5512345678")

    assert ConversationLog(store).append_incoming(order.id, _message()) is True

    event = store.get_order(order.id).notifications[0]
    assert event.direction is Direction.INCOMING
    assert event.kind is None
    assert event.body == "¿Ya viene?"
    assert event.received_at is not None


def test_replies_keep_arrival_order(store):
    order = store.create_order("Ana", "5512345678")
    log = ConversationLog(store)

    log.append_incoming(order.id, _message("wamid.A", "uno"))
    log.append_incoming(order.id, _message("wamid.B", "dos"))

    assert [n.body for n in store.get_order(order.id).notifications] == ["uno", "dos"]


def test_missing_order_returns_false(store):
    assert ConversationLog(store).append_incoming("gone", _message()) is False


def test_store_failure_is_logged_not_raised(caplog):
    broken = MagicMock()
    broken.append_notification.side_effect = RuntimeError("disk full")

    assert ConversationLog(broken).append_incoming("o1", _message()) is False
    assert "Failed to log reply wamid.IN1" in caplog.text


def test_dedupe_drops_known_message(store):
    order = store.create_order("Ana", "5512345678")
    log = ConversationLog(store, dedupe=True)

    assert log.append_incoming(order.id, _message()) is True
    assert log.append_incoming(order.id, _message()) is False
    assert log.append_incoming(order.id, _message(message_id=None)) is True

    assert len(store.get_order(order.id).notifications) == 2


def test_incoming_does_not_disturb_outgoing_outcome(store, force_status, sender):
    from services.transitions import OrderTransitionService

    order = store.create_order("Ana", "5512345678")
    force_status(order.id, "ready")
    OrderTransitionService(store, sender).transition(order.id, "outForDelivery")

    ConversationLog(store).append_incoming(order.id, _message())

    kinds = [(n.direction, n.kind) for n in store.get_order(order.id).notifications]
    assert kinds == [(Direction.OUTGOING, NotificationKind.SENT), (Direction.INCOMING, None)]
