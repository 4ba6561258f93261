import streamlit as st

from dashboard.utils import get_services
from order_desk.config import WebhookSettings
from services.health import check_messaging
from services.orders import NotificationKind

st.set_page_config(page_title="WhatsApp", page_icon="💬", layout="wide")
st.title("💬 WhatsApp Integration")

_, transitions, messaging = get_services()
check = check_messaging(messaging, WebhookSettings.from_config())

c1, c2, c3 = st.columns(3)
c1.metric("Outbound", "Configured" if messaging.is_configured else "Off")
c2.metric("Mode", f"Template: {messaging.template_name}" if messaging.template_name else "Free text")
c3.metric("Webhook secret", "Set" if check.details["webhook_secret_configured"] else "Missing")

if not check.details["verify_token_configured"]:
    st.warning("WHATSAPP_WEBHOOK_VERIFY_TOKEN is not set: the platform cannot subscribe the webhook.")

st.divider()
st.subheader("Send a test message")
with st.form("test_message"):
    phone = st.text_input("Phone", placeholder="55 1234 5678")
    submitted = st.form_submit_button("Send", type="primary")

if submitted:
    result = transitions.sender.send_test_message(phone)
    if result.kind is NotificationKind.SENT:
        st.success(f"Sent to {result.phone} (id {result.message_id})")
    elif result.kind is NotificationKind.SKIPPED:
        st.info("WhatsApp is not configured; nothing was sent.")
    else:
        st.error(f"Failed: {result.reason}")
