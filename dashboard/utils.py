from typing import Any, Dict, List

import pandas as pd
import streamlit as st

from order_desk.config import MessagingSettings, get_db_path, load_config
from services.order_store import OrderStore
from services.orders import Direction, NotificationKind, Order
from services.transitions import OrderTransitionService
from services.whatsapp import NotificationSender

STATUS_LABELS = {
    "received": "📥 Recibidos",
    "inProgress": "🧽 En proceso",
    "ready": "✅ Listos",
    "outForDelivery": "🚚 En entrega",
    "completed": "🏁 Completados",
    "cancelled": "🚫 Cancelados",
}

KIND_ICONS = {
    NotificationKind.SENT: "✅ sent",
    NotificationKind.FAILED: "❌ failed",
    NotificationKind.SKIPPED: "⏭ skipped",
}


@st.cache_resource
def get_services():
    config = load_config()
    store = OrderStore(get_db_path(config))
    store.init_db()
    messaging = MessagingSettings.from_config(config)
    transitions = OrderTransitionService(store, NotificationSender(messaging))
    return store, transitions, messaging


def notifications_frame(order: Order) -> pd.DataFrame:
    rows: List[Dict[str, Any]] = []
    for event in order.notifications:
        if event.direction is Direction.INCOMING:
            state = f"💬 from {event.sender or '?'}"
        else:
            state = KIND_ICONS.get(event.kind, "")
        rows.append(
            {
                "time": event.timestamp,
                "direction": event.direction.value,
                "state": state,
                "message": event.body,
                "error": event.error or "",
            }
        )
    return pd.DataFrame(rows, columns=["time", "direction", "state", "message", "error"])


def last_outgoing_failed(order: Order) -> bool:
    outgoing = [n for n in order.notifications if n.direction is Direction.OUTGOING]
    return bool(outgoing) and outgoing[-1].kind is NotificationKind.FAILED
