"""sqlite-backed order records.

Every other order service reads and writes through ``OrderStore``. Status
writes are single conditional UPDATEs; notification-log appends are
read/append/compare-and-swap on the row ``version`` and are retried on
conflict, so a concurrent outgoing send and incoming reply both survive.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from order_desk.db.connect import get_conn
from services.orders import (
    BOARD_COLUMNS,
    OPEN_STATUSES,
    Direction,
    NotificationEvent,
    Order,
    OrderStatus,
    ServiceLine,
    utc_now_iso,
)
from services.retry import retry_on_conflict

logger = logging.getLogger(__name__)

# Columns a status transition may write alongside ``status``.
STATUS_SIDE_FIELDS = frozenset({"completed_date", "cancelled_at", "payment_status"})


class OrderNotFound(LookupError):
    pass


class StaleStatusError(RuntimeError):
    """The order's status changed between validation and the write."""


class ConcurrentModificationError(RuntimeError):
    """Another writer bumped the notification log version first."""


def _is_conflict(exc: Exception) -> bool:
    # sqlite "database is locked" is transient; any other OperationalError is not.
    if isinstance(exc, sqlite3.OperationalError):
        return "locked" in str(exc).lower()
    return True


class OrderStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def _conn(self) -> sqlite3.Connection:
        return get_conn(self.db_path)

    def init_db(self) -> None:
        statuses = ", ".join(f"'{s.value}'" for s in OrderStatus)
        con = self._conn()
        try:
            con.execute(f"""
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                order_number INTEGER UNIQUE NOT NULL,
                client TEXT NOT NULL DEFAULT '',
                phone TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'received' CHECK(status IN ({statuses})),
                created_at TEXT NOT NULL,
                services TEXT NOT NULL DEFAULT '[]',
                payment_status TEXT DEFAULT 'pending',
                tracking_token TEXT,
                completed_date TEXT,
                cancelled_at TEXT,
                updated_at TEXT,
                last_incoming_message_at TEXT,
                notifications TEXT NOT NULL DEFAULT '[]',
                version INTEGER NOT NULL DEFAULT 0
            );
            """)
            con.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);")
        finally:
            con.close()

    # ---- reads ----

    def find_order(self, order_id: str) -> Optional[Order]:
        con = self._conn()
        try:
            row = con.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        finally:
            con.close()
        return _row_to_order(row) if row else None

    def get_order(self, order_id: str) -> Order:
        order = self.find_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    def list_orders(self, statuses: Optional[Iterable[OrderStatus]] = None) -> List[Order]:
        """Orders in ascending ``order_number``; this order is stable across calls."""
        sql = "SELECT * FROM orders"
        params: Sequence[Any] = ()
        if statuses is not None:
            wanted = [OrderStatus(s).value for s in statuses]
            if not wanted:
                return []
            sql += f" WHERE status IN ({', '.join('?' for _ in wanted)})"
            params = wanted
        sql += " ORDER BY order_number ASC"

        con = self._conn()
        try:
            rows = con.execute(sql, params).fetchall()
        finally:
            con.close()
        return [_row_to_order(r) for r in rows]

    def list_open_orders(self) -> List[Order]:
        return self.list_orders(OPEN_STATUSES)

    def orders_by_status(self) -> Dict[str, List[Order]]:
        board: Dict[str, List[Order]] = {s.value: [] for s in BOARD_COLUMNS}
        for order in self.list_orders():
            board[order.status.value].append(order)
        return board

    # ---- writes ----

    def create_order(
        self,
        client: str,
        phone: str,
        services: Optional[Iterable[Any]] = None,
        *,
        payment_status: str = "pending",
        tracking_token: Optional[str] = None,
        created_at: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Order:
        """Insert a new order in ``received`` with the next sequential order number."""
        lines = [s if isinstance(s, ServiceLine) else _service_line(s) for s in (services or [])]
        new_id = order_id or uuid.uuid4().hex
        now = created_at or utc_now_iso()

        con = self._conn()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                number = con.execute(
                    "SELECT COALESCE(MAX(order_number), 0) + 1 FROM orders"
                ).fetchone()[0]
                con.execute(
                    """
                    INSERT INTO orders (
                        id, order_number, client, phone, status, created_at,
                        services, payment_status, tracking_token, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        new_id,
                        int(number),
                        str(client or "").strip(),
                        str(phone or "").strip(),
                        OrderStatus.RECEIVED.value,
                        now,
                        json.dumps([line.to_dict() for line in lines]),
                        payment_status,
                        tracking_token,
                        now,
                    ),
                )
                con.execute("COMMIT")
            except Exception:
                con.execute("ROLLBACK")
                raise
        finally:
            con.close()

        logger.info("Created order %s (#%s) for %s", new_id, number, client)
        return self.get_order(new_id)

    def write_status(
        self,
        order_id: str,
        expected: OrderStatus,
        new_status: OrderStatus,
        side_fields: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """Set ``status`` plus its side fields in one statement, only if still ``expected``."""
        fields = dict(side_fields or {})
        unknown = set(fields) - STATUS_SIDE_FIELDS
        if unknown:
            raise ValueError(f"Not a status side field: {', '.join(sorted(unknown))}")

        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [new_status.value, utc_now_iso()]
        for key in sorted(fields):
            assignments.append(f"{key} = ?")
            params.append(fields[key])
        params.extend([order_id, expected.value])

        con = self._conn()
        try:
            cur = con.execute(
                f"UPDATE orders SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                params,
            )
            updated = cur.rowcount
        finally:
            con.close()

        if updated == 0:
            current = self.find_order(order_id)
            if current is None:
                raise OrderNotFound(f"Order {order_id} not found")
            raise StaleStatusError(
                f"Order {order_id} is {current.status.value}, expected {expected.value}"
            )
        return self.get_order(order_id)

    @retry_on_conflict((ConcurrentModificationError, sqlite3.OperationalError), retry_if=_is_conflict)
    def append_notification(
        self,
        order_id: str,
        event: NotificationEvent,
        *,
        dedupe: bool = False,
    ) -> Tuple[Order, bool]:
        """
        Append ``event`` to the order's notification log.

        Returns the updated order and whether the event was appended. With
        ``dedupe`` an incoming event whose ``external_message_id`` is already
        logged is dropped; the check runs against the same snapshot the write
        is conditioned on.
        """
        con = self._conn()
        try:
            events, version = self._read_log(con, order_id)
            if dedupe and _already_logged(events, event):
                return _row_to_order(self._fetch_row(con, order_id)), False

            events.append(event.to_dict())
            incoming_at = event.timestamp if event.direction is Direction.INCOMING else None
            self._write_log(con, order_id, events, version, incoming_at)
            return _row_to_order(self._fetch_row(con, order_id)), True
        finally:
            con.close()

    def _fetch_row(self, con: sqlite3.Connection, order_id: str) -> sqlite3.Row:
        row = con.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        if row is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return row

    def _read_log(self, con: sqlite3.Connection, order_id: str) -> Tuple[List[Dict[str, Any]], int]:
        # fetchall so the read statement is finished before the conditional write.
        rows = con.execute(
            "SELECT notifications, version FROM orders WHERE id = ?", (order_id,)
        ).fetchall()
        if not rows:
            raise OrderNotFound(f"Order {order_id} not found")
        return _load_json_list(rows[0]["notifications"]), int(rows[0]["version"])

    def _write_log(
        self,
        con: sqlite3.Connection,
        order_id: str,
        events: List[Dict[str, Any]],
        expected_version: int,
        incoming_at: Optional[str],
    ) -> None:
        cur = con.execute(
            """
            UPDATE orders
               SET notifications = ?,
                   version = version + 1,
                   last_incoming_message_at = COALESCE(?, last_incoming_message_at)
             WHERE id = ? AND version = ?
            """,
            (json.dumps(events), incoming_at, order_id, expected_version),
        )
        if cur.rowcount == 0:
            raise ConcurrentModificationError(
                f"Order {order_id} notification log changed (expected version {expected_version})"
            )


def _service_line(value: Any) -> ServiceLine:
    if isinstance(value, dict):
        return ServiceLine.from_dict(value)
    return ServiceLine(service_name=str(value))


def _already_logged(events: List[Dict[str, Any]], event: NotificationEvent) -> bool:
    if not event.external_message_id:
        return False
    return any(
        e.get("direction") == event.direction.value
        and e.get("external_message_id") == event.external_message_id
        for e in events
    )


def _load_json_list(raw: Any) -> List[Dict[str, Any]]:
    try:
        value = json.loads(raw or "[]")
    except (TypeError, ValueError):
        logger.warning("Discarding unreadable JSON column: %r", raw)
        return []
    return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []


def _decode_events(order_id: str, raw_events: List[Dict[str, Any]]) -> List[NotificationEvent]:
    events: List[NotificationEvent] = []
    for raw in raw_events:
        try:
            events.append(NotificationEvent.from_dict(raw))
        except ValueError:
            logger.warning("Skipping undecodable notification on order %s: %r", order_id, raw)
    return events


def _row_to_order(row: sqlite3.Row) -> Order:
    return Order(
        id=row["id"],
        order_number=int(row["order_number"]),
        client=row["client"] or "",
        phone=row["phone"] or "",
        status=OrderStatus(row["status"]),
        created_at=row["created_at"],
        services=[ServiceLine.from_dict(s) for s in _load_json_list(row["services"])],
        payment_status=row["payment_status"] or "",
        tracking_token=row["tracking_token"],
        completed_date=row["completed_date"],
        cancelled_at=row["cancelled_at"],
        updated_at=row["updated_at"],
        last_incoming_message_at=row["last_incoming_message_at"],
        notifications=_decode_events(row["id"], _load_json_list(row["notifications"])),
        version=int(row["version"]),
    )
