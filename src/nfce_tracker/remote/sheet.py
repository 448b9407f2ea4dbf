from __future__ import annotations

import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from ..domain.normalize import to_float
from ..errors import ValidationError
from ..logging import get_logger
from ..paths import find_project_root, var_dir


LOG = get_logger("sheet-store")

DEFAULT_DB_FOLDER = "sheet_db"
DEFAULT_DB_FILENAME = "sheet.sqlite3"

RECEIPT_COLUMNS = (
    "id",
    "url",
    "status",
    "storeName",
    "storeCnpj",
    "storeAddress",
    "date",
    "totalAmount",
    "items",
    "error",
    "payer",
)

ITEM_COLUMNS = ("name", "quantity", "unit", "unitPrice", "totalPrice", "category")


SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

-- One row per receipt; mirrors the "Receipts" tab
CREATE TABLE IF NOT EXISTS receipts (
  row_no        INTEGER PRIMARY KEY AUTOINCREMENT,
  id            TEXT NOT NULL UNIQUE,
  url           TEXT,
  status        TEXT,
  storeName     TEXT,
  storeCnpj     TEXT,
  storeAddress  TEXT,
  date          TEXT,
  totalAmount   REAL,
  items         TEXT,            -- raw JSON list, kept for legacy rows
  error         TEXT,
  payer         TEXT,
  timestamp     TEXT NOT NULL
);

-- One row per line item; mirrors the "Items" tab
CREATE TABLE IF NOT EXISTS items (
  row_no      INTEGER PRIMARY KEY AUTOINCREMENT,
  item_id     TEXT NOT NULL UNIQUE,
  receipt_id  TEXT NOT NULL,
  name        TEXT,
  quantity    REAL,
  unit        TEXT,
  unitPrice   REAL,
  totalPrice  REAL,
  category    TEXT,
  timestamp   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_items_receipt ON items(receipt_id);
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _items_list(raw: Any) -> List[Dict[str, Any]]:
    if isinstance(raw, str):
        if not raw.strip():
            return []
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(raw, list):
        return []
    return [it for it in raw if isinstance(it, dict)]


class SheetStore:
    """SQLite-backed stand-in for the receipts spreadsheet.

    - Places DB under `<repo-root>/var/sheet_db/sheet.sqlite3` unless a path is given.
    - `receipts` keeps the raw items JSON; `items` holds one row per line item.
    - Every write stamps a server-side timestamp.
    """

    def __init__(self, root_dir: Optional[str] = None, *, db_path: Optional[str] = None) -> None:
        if db_path is None:
            root = find_project_root(root_dir)
            folder = os.path.join(var_dir(root), DEFAULT_DB_FOLDER)
            os.makedirs(folder, exist_ok=True)
            db_path = os.path.join(folder, DEFAULT_DB_FILENAME)
        self.db_path = db_path
        LOG.info(f"Sheet DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cur.executescript(SCHEMA_SQL)
            conn.commit()

    # --------------- actions ---------------
    def list_receipts(self) -> List[Dict[str, Any]]:
        """Return every receipt, newest row first, with its items attached."""
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM receipts ORDER BY row_no DESC").fetchall()
            item_rows = conn.execute("SELECT * FROM items ORDER BY row_no ASC").fetchall()

        items_by_receipt: Dict[str, List[Dict[str, Any]]] = {}
        for it in item_rows:
            items_by_receipt.setdefault(it["receipt_id"], []).append(
                {col: it[col] for col in ITEM_COLUMNS}
            )

        out: List[Dict[str, Any]] = []
        for row in rows:
            rec = {col: row[col] for col in RECEIPT_COLUMNS}
            if row["id"] in items_by_receipt:
                rec["items"] = items_by_receipt[row["id"]]
            else:
                # Legacy rows written before the items tab existed
                rec["items"] = _items_list(row["items"])
            out.append(rec)
        return out

    def save_receipt(self, data: Any) -> Dict[str, Any]:
        """Insert or update one receipt by id.

        When `items` is present it replaces the receipt's item rows in the
        same transaction; when absent the stored items are left untouched.
        """
        if not isinstance(data, dict):
            raise ValidationError("Receipt data must be an object")
        rid = data.get("id")
        if not isinstance(rid, str) or not rid.strip():
            raise ValidationError("Receipt id is required")
        rid = rid.strip()

        has_items = "items" in data and data.get("items") is not None
        items = _items_list(data.get("items")) if has_items else []
        stamp = _now_iso()
        values = {
            "id": rid,
            "url": data.get("url"),
            "status": data.get("status"),
            "storeName": data.get("storeName"),
            "storeCnpj": data.get("storeCnpj"),
            "storeAddress": data.get("storeAddress"),
            "date": data.get("date"),
            "totalAmount": to_float(data.get("totalAmount")),
            "error": data.get("error"),
            "payer": data.get("payer"),
        }

        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                existing = conn.execute("SELECT items FROM receipts WHERE id=?", (rid,)).fetchone()
                items_json = json.dumps(items, ensure_ascii=False) if has_items else (
                    existing["items"] if existing else None
                )
                if existing:
                    conn.execute(
                        """
                        UPDATE receipts SET
                            url=?, status=?, storeName=?, storeCnpj=?, storeAddress=?,
                            date=?, totalAmount=?, items=?, error=?, payer=?, timestamp=?
                        WHERE id=?;
                        """,
                        (
                            values["url"],
                            values["status"],
                            values["storeName"],
                            values["storeCnpj"],
                            values["storeAddress"],
                            values["date"],
                            values["totalAmount"],
                            items_json,
                            values["error"],
                            values["payer"],
                            stamp,
                            rid,
                        ),
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO receipts (
                            id, url, status, storeName, storeCnpj, storeAddress,
                            date, totalAmount, items, error, payer, timestamp
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                        """,
                        (
                            rid,
                            values["url"],
                            values["status"],
                            values["storeName"],
                            values["storeCnpj"],
                            values["storeAddress"],
                            values["date"],
                            values["totalAmount"],
                            items_json,
                            values["error"],
                            values["payer"],
                            stamp,
                        ),
                    )
                if has_items:
                    conn.execute("DELETE FROM items WHERE receipt_id=?", (rid,))
                    self._insert_items(conn, rid, items, stamp)
                conn.commit()
            except sqlite3.Error:
                LOG.exception(f"Failed to save receipt {rid}; rolling back")
                conn.rollback()
                raise
        LOG.info(f"Saved receipt {rid} ({'with' if has_items else 'without'} items)")
        return {"success": True, "id": rid}

    def delete_receipt(self, receipt_id: Any) -> Dict[str, Any]:
        """Delete a receipt and its item rows. Unknown ids succeed."""
        if not isinstance(receipt_id, str) or not receipt_id.strip():
            raise ValidationError("Receipt id is required")
        rid = receipt_id.strip()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM items WHERE receipt_id=?", (rid,))
            cur.execute("DELETE FROM receipts WHERE id=?", (rid,))
            removed = cur.rowcount
            conn.commit()
        LOG.info(f"Deleted receipt {rid} (rows removed: {removed})")
        return {"success": True, "id": rid}

    def migrate(self) -> Dict[str, Any]:
        """Rebuild the items table from the JSON column of every receipt."""
        stamp = _now_iso()
        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                rows = conn.execute("SELECT id, items FROM receipts ORDER BY row_no ASC").fetchall()
                conn.execute("DELETE FROM items;")
                item_count = 0
                for row in rows:
                    items = _items_list(row["items"])
                    self._insert_items(conn, row["id"], items, stamp)
                    item_count += len(items)
                conn.commit()
            except sqlite3.Error:
                LOG.exception("Migration failed; rolling back")
                conn.rollback()
                raise
        message = f"Migrated {len(rows)} receipt(s) into {item_count} item row(s)."
        LOG.info(message)
        return {"success": True, "migratedCount": len(rows), "message": message}

    def _insert_items(
        self, conn: sqlite3.Connection, receipt_id: str, items: List[Dict[str, Any]], stamp: str
    ) -> None:
        for it in items:
            conn.execute(
                """
                INSERT INTO items (
                    item_id, receipt_id, name, quantity, unit, unitPrice, totalPrice, category, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    str(uuid.uuid4()),
                    receipt_id,
                    it.get("name"),
                    to_float(it.get("quantity")),
                    it.get("unit"),
                    to_float(it.get("unitPrice")),
                    to_float(it.get("totalPrice")),
                    it.get("category"),
                    stamp,
                ),
            )

    def count_items(self, receipt_id: Optional[str] = None) -> int:
        with self.connect() as conn:
            if receipt_id is None:
                row = conn.execute("SELECT COUNT(*) FROM items").fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM items WHERE receipt_id=?", (receipt_id,)).fetchone()
        return int(row[0]) if row else 0

    def clear_item_rows(self) -> None:
        """Drop all item rows, leaving receipts (and their JSON) in place."""
        with self.connect() as conn:
            conn.execute("DELETE FROM items;")
            conn.commit()
