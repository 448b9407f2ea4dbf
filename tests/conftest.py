from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from nfce_tracker.domain.codec import receipt_to_dict
from nfce_tracker.storage.local import LocalSnapshotStore, LocalStorage


def leite_payload(store: str = "Mercado A", price: float = 5.0, date: str = "2024-05-10T10:00:00") -> Dict[str, Any]:
    return {
        "storeName": store,
        "storeCnpj": "11.111.111/0001-11" if store == "Mercado A" else "22.222.222/0001-22",
        "storeAddress": "Rua Um, 1 - Sao Paulo",
        "date": date,
        "totalAmount": price * 2,
        "items": [
            {
                "name": "Leite",
                "quantity": 2,
                "unit": "un",
                "unitPrice": price,
                "totalPrice": price * 2,
                "category": "Laticínios",
            }
        ],
    }


class FakeBridge:
    """In-memory remote store with scriptable save outcomes."""

    def __init__(self, configured: bool = True, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self.configured = configured
        self.rows: List[Dict[str, Any]] = list(rows or [])
        self.saved: List[Dict[str, Any]] = []
        self.deleted: List[str] = []
        self.save_ok = True
        self.save_delay = 0.0
        self.fail_ids: set = set()
        self.connection_error: Optional[str] = None
        self._lock = threading.Lock()

    def is_configured(self) -> bool:
        return self.configured

    def list_receipts(self) -> List[Dict[str, Any]]:
        return list(self.rows)

    def save_receipt(self, receipt: Any) -> Optional[Dict[str, Any]]:
        data = receipt_to_dict(receipt)
        if self.save_delay:
            time.sleep(self.save_delay)
        with self._lock:
            self.saved.append(data)
        if not self.save_ok or receipt.id in self.fail_ids:
            return None
        with self._lock:
            self.rows = [r for r in self.rows if r["id"] != data["id"]]
            self.rows.insert(0, data)
        return {"success": True, "id": receipt.id}

    def delete_receipt(self, receipt_id: str) -> Optional[Dict[str, Any]]:
        self.deleted.append(receipt_id)
        self.rows = [r for r in self.rows if r["id"] != receipt_id]
        return {"success": True, "id": receipt_id}

    def migrate(self) -> Optional[Dict[str, Any]]:
        return {"success": True, "migratedCount": len(self.rows), "message": "ok"}

    def saved_statuses(self, receipt_id: str) -> List[str]:
        return [d["status"] for d in self.saved if d["id"] == receipt_id]


class FakeExtractor:
    """Returns scripted results per URL and records extraction concurrency."""

    def __init__(self, results: Optional[Dict[str, Any]] = None, delay: float = 0.0) -> None:
        self.results: Dict[str, Any] = dict(results or {})
        self.photo_result: Any = None
        self.delay = delay
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def url_to_fields(self, url: str) -> Any:
        with self._lock:
            self.calls.append(url)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            result = self.results.get(url, leite_payload())
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            with self._lock:
                self.active -= 1

    def image_to_url(self, photo_b64: str) -> str:
        if isinstance(self.photo_result, Exception):
            raise self.photo_result
        return self.photo_result

    def insights(self, question: str, receipts: Any):
        yield f"answer to {question}"


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    (tmp_path / "README.md").write_text("test marker", encoding="utf-8")
    return tmp_path


@pytest.fixture
def local_storage(project_root: Path) -> LocalStorage:
    return LocalStorage(str(project_root))


@pytest.fixture
def snapshot(local_storage: LocalStorage) -> LocalSnapshotStore:
    return LocalSnapshotStore(local_storage)
