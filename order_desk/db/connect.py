from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Optional

from order_desk.config import get_db_path


def get_conn(path: Optional[Path] = None) -> sqlite3.Connection:
    db_path = Path(path) if path else get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    # isolation_level=None: transactions are opened explicitly with BEGIN IMMEDIATE.
    con = sqlite3.connect(db_path, timeout=5.0, isolation_level=None)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA journal_mode=WAL;")
    con.execute("PRAGMA foreign_keys=ON;")
    return con
