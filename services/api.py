from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from order_desk.config import MessagingSettings, WebhookSettings, get_db_path, load_config
from order_desk.logging import request_context
from services.conversation_log import ConversationLog
from services.correlator import OrderCorrelator
from services.health import get_system_health
from services.metrics import metrics
from services.order_store import OrderNotFound, OrderStore
from services.orders import NotificationKind, Order, OrderStatus
from services.transitions import InvalidTransition, OrderTransitionService, allowed_targets
from services.webhook import InboundWebhookHandler, WebhookResponse
from services.whatsapp import NotificationSender, whatsapp_web_link

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-hub-signature-256", "x-signature-256")


class TransitionPayload(BaseModel):
    status: str


def _order_payload(order: Order) -> Dict[str, Any]:
    data = order.to_dict()
    data["allowed_transitions"] = sorted(s.value for s in allowed_targets(order.status))
    return data


def _to_response(result: WebhookResponse):
    if isinstance(result.body, dict):
        return JSONResponse(status_code=result.status_code, content=result.body)
    return PlainTextResponse(content=result.body, status_code=result.status_code)


def create_app(
    config: Optional[Dict[str, Any]] = None,
    *,
    store: Optional[OrderStore] = None,
    sender: Optional[NotificationSender] = None,
) -> FastAPI:
    """Build the API with every collaborator constructed here and injected explicitly."""
    cfg = config if config is not None else load_config()
    messaging = MessagingSettings.from_config(cfg)
    webhook_settings = WebhookSettings.from_config(cfg)

    store = store or OrderStore(get_db_path(cfg))
    store.init_db()
    sender = sender or NotificationSender(messaging)
    transitions = OrderTransitionService(store, sender)
    handler = InboundWebhookHandler(
        webhook_settings,
        OrderCorrelator(store),
        ConversationLog(store, dedupe=webhook_settings.dedupe_incoming),
    )

    app = FastAPI(title="Order Desk API", version="1.0.0")
    app.state.store = store
    app.state.transitions = transitions
    app.state.webhook = handler
    app.state.messaging = messaging

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        return get_system_health(store, messaging, webhook_settings).to_dict()

    @app.get("/api/metrics")
    def metrics_snapshot() -> Dict[str, Any]:
        return metrics.snapshot()

    @app.get("/api/orders")
    def list_orders(status: Optional[str] = None) -> Dict[str, Any]:
        if status is None:
            board = store.orders_by_status()
            return {"columns": {k: [_order_payload(o) for o in v] for k, v in board.items()}}
        parsed = OrderStatus.parse(status)
        if parsed is None:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        return {"orders": [_order_payload(o) for o in store.list_orders([parsed])]}

    @app.get("/api/orders/{order_id}")
    def get_order(order_id: str) -> Dict[str, Any]:
        try:
            return _order_payload(store.get_order(order_id))
        except OrderNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.post("/api/orders/{order_id}/transition")
    def transition_order(order_id: str, payload: TransitionPayload) -> Dict[str, Any]:
        with request_context():
            try:
                result = transitions.transition(order_id, payload.status)
            except OrderNotFound as e:
                raise HTTPException(status_code=404, detail=str(e))
            except InvalidTransition as e:
                raise HTTPException(status_code=409, detail=str(e))

        body: Dict[str, Any] = {
            "order": _order_payload(result.order),
            "previous_status": result.previous_status.value,
            "notification": result.notification.to_dict() if result.notification else None,
            "outcome_recorded": result.outcome_recorded,
        }
        if result.notification and result.notification.kind is NotificationKind.FAILED:
            body["fallback_link"] = whatsapp_web_link(result.order, messaging)
        return body

    @app.get("/api/whatsapp/webhook")
    def webhook_verify(request: Request):
        params = request.query_params
        result = handler.verify_subscription(
            params.get("hub.mode") or params.get("mode"),
            params.get("hub.verify_token") or params.get("verify_token"),
            params.get("hub.challenge") or params.get("challenge"),
        )
        return _to_response(result)

    @app.post("/api/whatsapp/webhook")
    async def webhook_receive(request: Request):
        raw_body = await request.body()
        signature = next(
            (request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers), None
        )
        result = await run_in_threadpool(handler.handle_delivery, raw_body, signature)
        return _to_response(result)

    return app
