import sqlite3
from unittest.mock import MagicMock

import pytest

from order_desk.config import MessagingSettings, WebhookSettings
from services.order_store import OrderStore
from services.whatsapp import NotificationSender, SendResponse, WhatsAppClient


@pytest.fixture
def store(tmp_path):
    s = OrderStore(tmp_path / "orders.db")
    s.init_db()
    return s


@pytest.fixture
def force_status(store):
    """Put an order straight into a status for test setup (bypasses the workflow)."""

    def _force(order_id: str, status: str) -> None:
        con = sqlite3.connect(store.db_path)
        con.execute("UPDATE orders SET status = ? WHERE id = ?", (status, order_id))
        con.commit()
        con.close()

    return _force


@pytest.fixture
def messaging():
    return MessagingSettings(
        enabled=True,
        access_token="test-token",
        phone_number_id="123456",
        business_name="Clean Master Shoes",
        business_address="Av. Juárez 10, CDMX",
    )


@pytest.fixture
def webhook_settings():
    return WebhookSettings(app_secret="app-secret", verify_token="verify-me")


@pytest.fixture
def wa_client():
    client = MagicMock(spec=WhatsAppClient)
    client.send_text.return_value = SendResponse(ok=True, message_id="wamid.OUT1", http_status=200)
    client.send_template.return_value = SendResponse(ok=True, message_id="wamid.TPL1", http_status=200)
    return client


@pytest.fixture
def sender(messaging, wa_client):
    return NotificationSender(messaging, client=wa_client)
