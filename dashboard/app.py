import streamlit as st

from dashboard.utils import STATUS_LABELS, get_services, last_outgoing_failed, notifications_frame
from services.orders import BOARD_COLUMNS, NotificationKind
from services.transitions import InvalidTransition, allowed_targets
from services.whatsapp import whatsapp_web_link

# --- PAGE CONFIG ---
st.set_page_config(page_title="Order Board", page_icon="👟", layout="wide")

store, transitions, messaging = get_services()

st.title("👟 Order Board")
if not messaging.is_configured:
    st.info("WhatsApp is not configured: delivery notifications will be skipped.")

board = store.orders_by_status()
columns = st.columns(len(BOARD_COLUMNS))

for col, status in zip(columns, BOARD_COLUMNS):
    orders = board[status.value]
    with col:
        st.subheader(f"{STATUS_LABELS[status.value]} ({len(orders)})")
        for order in orders:
            with st.expander(f"#{order.order_number} · {order.client}"):
                st.caption(f"📞 {order.phone or '—'} · {', '.join(order.active_service_names) or 'Sin servicios'}")

                for target in sorted(allowed_targets(order.status), key=BOARD_COLUMNS.index):
                    if st.button(f"→ {STATUS_LABELS[target.value]}", key=f"{order.id}_{target.value}"):
                        try:
                            result = transitions.transition(order.id, target)
                        except InvalidTransition as e:
                            st.error(str(e))
                        else:
                            note = result.notification
                            if note and note.kind is NotificationKind.FAILED:
                                st.session_state["failed_notice"] = (order.order_number, note.reason)
                            st.rerun()

                if order.notifications:
                    st.dataframe(notifications_frame(order), hide_index=True, use_container_width=True)

                if last_outgoing_failed(order):
                    st.warning("WhatsApp notification failed. Contact the customer manually.")
                    st.link_button("Abrir WhatsApp", whatsapp_web_link(order, messaging))

notice = st.session_state.pop("failed_notice", None)
if notice:
    st.toast(f"Order #{notice[0]}: notification failed ({notice[1]})", icon="❌")
