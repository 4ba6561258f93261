"""Health checks for the order database and the messaging integration."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from order_desk.config import MessagingSettings, WebhookSettings
from services.order_store import OrderStore

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    name: str
    healthy: bool
    latency_ms: float
    message: str
    details: dict[str, Any] | None = None


@dataclass
class SystemHealth:
    healthy: bool
    checks: list[HealthCheckResult]
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "timestamp": self.timestamp,
            "checks": [
                {
                    "name": c.name,
                    "healthy": c.healthy,
                    "latency_ms": round(c.latency_ms, 2),
                    "message": c.message,
                    "details": c.details,
                }
                for c in self.checks
            ],
        }


def check_sqlite(store: OrderStore) -> HealthCheckResult:
    start = time.perf_counter()
    try:
        open_orders = len(store.list_open_orders())
        latency = (time.perf_counter() - start) * 1000
        return HealthCheckResult(
            name="sqlite",
            healthy=True,
            latency_ms=latency,
            message="Database operational",
            details={"open_orders": open_orders, "db_path": str(store.db_path)},
        )
    except Exception as e:
        latency = (time.perf_counter() - start) * 1000
        logger.error("SQLite health check failed: %s", e)
        return HealthCheckResult(
            name="sqlite",
            healthy=False,
            latency_ms=latency,
            message=f"Database error: {str(e)[:100]}",
        )


def check_messaging(messaging: MessagingSettings, webhook: WebhookSettings) -> HealthCheckResult:
    # Unconfigured messaging is a supported mode (sends are skipped), so it stays healthy.
    return HealthCheckResult(
        name="whatsapp",
        healthy=True,
        latency_ms=0.0,
        message="Configured" if messaging.is_configured else "Not configured; notifications are skipped",
        details={
            "outbound_configured": messaging.is_configured,
            "template_mode": bool(messaging.template_name),
            "webhook_secret_configured": bool(webhook.app_secret),
            "verify_token_configured": bool(webhook.verify_token),
        },
    )


def get_system_health(
    store: OrderStore, messaging: MessagingSettings, webhook: WebhookSettings
) -> SystemHealth:
    checks = [check_sqlite(store), check_messaging(messaging, webhook)]
    return SystemHealth(
        healthy=all(c.healthy for c in checks),
        checks=checks,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
