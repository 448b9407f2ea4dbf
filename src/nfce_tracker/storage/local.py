"""Local key-value persistence and the receipt snapshot built on top of it."""

from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

from ..domain.codec import receipt_to_dict, receipts_from_list
from ..domain.models import STATUS_PROCESSING, Receipt, with_flags
from ..logging import get_logger
from ..paths import find_project_root, var_dir

LOG = get_logger("local-storage")

DB_FOLDERNAME = "local_db"
DB_FILENAME = "local.sqlite3"
TABLE_NAME = "kv_store"

SNAPSHOT_KEY = "receipts_data"
SCRIPT_URL_KEY = "script_url"


class LocalStorage:
    """Small string key-value store under `<root>/var/local_db/`.

    Plays the part of browser local storage: one table, last write wins.
    """

    def __init__(self, root_dir: Optional[str] = None) -> None:
        root = find_project_root(root_dir)
        folder = os.path.join(var_dir(root), DB_FOLDERNAME)
        os.makedirs(folder, exist_ok=True)
        self.db_path = os.path.join(folder, DB_FILENAME)
        self._ensure_schema()
        LOG.debug(f"Local storage ready at {self.db_path}")

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    key        TEXT PRIMARY KEY,
                    value      TEXT NOT NULL,
                    updated_at TEXT DEFAULT (datetime('now'))
                );
                """
            )
            conn.commit()

    def get(self, key: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute(f"SELECT value FROM {TABLE_NAME} WHERE key=?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute(
                f"""
                INSERT INTO {TABLE_NAME}(key, value, updated_at) VALUES(?, ?, datetime('now'))
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value),
            )
            conn.commit()

    def remove(self, key: str) -> None:
        with self.connect() as conn:
            conn.execute(f"DELETE FROM {TABLE_NAME} WHERE key=?", (key,))
            conn.commit()


class LocalSnapshotStore:
    """Whole-list snapshot of non-processing receipts used when no remote is set."""

    def __init__(self, storage: LocalStorage, key: str = SNAPSHOT_KEY) -> None:
        self.storage = storage
        self.key = key

    def load(self) -> List[Receipt]:
        try:
            raw = self.storage.get(self.key)
        except sqlite3.Error as exc:
            LOG.error(f"Could not read local snapshot: {exc}")
            return []
        if not raw:
            return []
        try:
            rows = json.loads(raw)
        except json.JSONDecodeError as exc:
            LOG.error(f"Local snapshot is corrupted, starting empty: {exc}")
            return []
        if not isinstance(rows, list):
            LOG.error("Local snapshot is not a list, starting empty")
            return []
        return [with_flags(r, is_synced=False, syncing=False) for r in receipts_from_list(rows)]

    def save(self, receipts: Iterable[Receipt]) -> None:
        # Processing records are never written: after a restart they would
        # have no extraction in flight.
        rows = [receipt_to_dict(r) for r in receipts if r.status != STATUS_PROCESSING]
        self.storage.set(self.key, json.dumps(rows, ensure_ascii=False))
        LOG.debug(f"Local snapshot saved ({len(rows)} receipt(s))")
