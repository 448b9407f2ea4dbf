from __future__ import annotations

import json

import pytest

from nfce_tracker.errors import ValidationError
from nfce_tracker.remote.sheet import SheetStore

from conftest import leite_payload


def _completed(rid: str = "r1", **overrides):
    data = {"id": rid, "url": f"http://nfce/{rid}", "status": "completed", "error": None, "payer": None}
    data.update(leite_payload())
    data["items"].append(
        {"name": "Pão", "quantity": 1, "unit": "UN", "unitPrice": 7.5, "totalPrice": 7.5, "category": "Padaria"}
    )
    data.update(overrides)
    return data


def test_save_and_list_round_trip(project_root):
    store = SheetStore(root_dir=str(project_root))
    assert store.save_receipt(_completed()) == {"success": True, "id": "r1"}

    rows = store.list_receipts()
    assert len(rows) == 1
    row = rows[0]
    assert row["storeName"] == "Mercado A"
    assert row["totalAmount"] == 10.0
    assert [it["name"] for it in row["items"]] == ["Leite", "Pão"]
    assert row["items"][1]["unitPrice"] == 7.5
    assert store.count_items("r1") == 2


def test_save_upserts_by_id_and_keeps_items_when_absent(project_root):
    store = SheetStore(root_dir=str(project_root))
    store.save_receipt(_completed())
    store.save_receipt({"id": "r1", "url": "http://nfce/r1", "status": "completed", "payer": "Ana"})

    rows = store.list_receipts()
    assert len(rows) == 1
    assert rows[0]["payer"] == "Ana"
    assert len(rows[0]["items"]) == 2

    store.save_receipt(_completed(items=[{"name": "Café", "quantity": 1, "unitPrice": 20, "totalPrice": 20}]))
    rows = store.list_receipts()
    assert [it["name"] for it in rows[0]["items"]] == ["Café"]
    assert store.count_items() == 1


def test_list_is_newest_first(project_root):
    store = SheetStore(root_dir=str(project_root))
    store.save_receipt(_completed("old"))
    store.save_receipt({"id": "new", "url": "http://nfce/new", "status": "processing"})
    assert [r["id"] for r in store.list_receipts()] == ["new", "old"]


def test_save_requires_id(project_root):
    store = SheetStore(root_dir=str(project_root))
    with pytest.raises(ValidationError):
        store.save_receipt({"status": "processing"})
    with pytest.raises(ValidationError):
        store.save_receipt("not a dict")


def test_delete_is_idempotent(project_root):
    store = SheetStore(root_dir=str(project_root))
    store.save_receipt(_completed())
    assert store.delete_receipt("r1")["success"] is True
    assert store.delete_receipt("r1")["success"] is True
    assert store.list_receipts() == []
    assert store.count_items() == 0


def test_migrate_rebuilds_item_rows_from_json_column(project_root):
    store = SheetStore(root_dir=str(project_root))
    store.save_receipt(_completed("r1"))
    store.save_receipt(_completed("r2"))
    store.save_receipt({"id": "r3", "status": "error", "error": "boom"})
    store.clear_item_rows()
    assert store.count_items() == 0

    # Legacy rows still answer with their JSON items
    legacy = {r["id"]: r for r in store.list_receipts()}
    assert len(legacy["r1"]["items"]) == 2

    result = store.migrate()
    assert result["success"] is True
    assert result["migratedCount"] == 3
    assert "4 item row(s)" in result["message"]
    assert store.count_items("r1") == 2
    assert store.count_items("r2") == 2

    again = store.migrate()
    assert again["migratedCount"] == 3
    assert store.count_items() == 4


def test_items_column_keeps_raw_json(project_root):
    store = SheetStore(root_dir=str(project_root))
    store.save_receipt(_completed())
    with store.connect() as conn:
        raw = conn.execute("SELECT items FROM receipts WHERE id='r1'").fetchone()[0]
    assert [it["name"] for it in json.loads(raw)] == ["Leite", "Pão"]
