from __future__ import annotations

import pytest

from nfce_tracker.domain.codec import (
    INCOMPLETE_RECEIPT_MESSAGE,
    details_from_payload,
    receipt_from_dict,
    receipt_to_dict,
    receipts_from_list,
)
from nfce_tracker.domain.models import (
    CompletedReceipt,
    FailedReceipt,
    ProcessingReceipt,
    as_completed,
)
from nfce_tracker.errors import ValidationError

from conftest import leite_payload


def test_details_from_payload_normalizes_fields():
    details = details_from_payload(
        {
            "storeName": "  Mercado A ",
            "date": "10/05/2024 18:30:00",
            "items": [
                {"name": "Arroz", "quantity": "2", "unit": "kg", "unitPrice": "10,50"},
                {"name": "Feijão", "totalPrice": 8.0},
            ],
        }
    )
    assert details.store_name == "Mercado A"
    assert details.store_cnpj == ""
    assert details.date == "2024-05-10T18:30:00"
    arroz, feijao = details.items
    assert arroz.unit == "KG"
    assert arroz.total_price == pytest.approx(21.0)
    assert feijao.quantity == 1.0
    assert feijao.unit_price == pytest.approx(8.0)
    assert feijao.unit == "UN"
    assert feijao.category == "Outros"
    assert details.total_amount == pytest.approx(29.0)


def test_details_from_payload_keeps_unparsable_date_verbatim():
    details = details_from_payload({"storeName": "X", "date": "ontem", "items": []})
    assert details.date == "ontem"


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"items": []},
        {"storeName": "X", "items": "nope"},
        {"storeName": "X", "items": [{"quantity": 1, "unitPrice": 1}]},
        {"storeName": "X", "items": [{"name": "A", "quantity": 0, "unitPrice": 1}]},
        {"storeName": "X", "items": [{"name": "A", "quantity": 1}]},
        {"storeName": "X", "totalAmount": -1, "items": []},
    ],
)
def test_details_from_payload_rejects_invalid(payload):
    with pytest.raises(ValidationError):
        details_from_payload(payload)


def test_placeholder_encoding_has_no_items_key():
    data = receipt_to_dict(ProcessingReceipt(id="r1", url="http://x"))
    assert data["status"] == "processing"
    assert data["storeName"] is None
    assert "items" not in data
    assert "isSynced" not in data


def test_completed_encoding_round_trips():
    base = ProcessingReceipt(id="r1", url="http://x", payer="Ana")
    completed = as_completed(base, details_from_payload(leite_payload()))
    data = receipt_to_dict(completed)
    assert data["items"][0]["unitPrice"] == 5.0

    decoded = receipt_from_dict(data)
    assert isinstance(decoded, CompletedReceipt)
    assert decoded.details == completed.details
    assert decoded.payer == "Ana"


def test_include_flags_only_for_display():
    data = receipt_to_dict(ProcessingReceipt(id="r1", is_synced=True), include_flags=True)
    assert data["isSynced"] is True
    assert data["syncing"] is False


def test_receipt_from_dict_variants():
    assert isinstance(receipt_from_dict({"id": "a", "status": "processing"}), ProcessingReceipt)

    incomplete = receipt_from_dict({"id": "b", "status": "completed"})
    assert isinstance(incomplete, FailedReceipt)
    assert incomplete.error == INCOMPLETE_RECEIPT_MESSAGE

    unknown = receipt_from_dict({"id": "c", "status": "weird"})
    assert isinstance(unknown, FailedReceipt)
    assert unknown.error == "Unknown error."

    failed = receipt_from_dict({"id": "d", "status": "error", "error": "boom"})
    assert failed.error == "boom"


def test_receipt_from_dict_accepts_items_as_json_string():
    data = {"id": "a", "status": "completed", "storeName": "X", "totalAmount": "12,00"}
    data["items"] = '[{"name": "Leite", "quantity": 1, "unitPrice": 12}, {"quantity": 3}]'
    r = receipt_from_dict(data)
    assert r.details.total_amount == 12.0
    assert [it.name for it in r.details.items] == ["Leite"]


def test_receipts_from_list_skips_bad_rows():
    rows = [{"id": "a", "status": "processing"}, {"status": "completed"}, "junk"]
    assert [r.id for r in receipts_from_list(rows)] == ["a"]
    assert receipts_from_list({"not": "a list"}) == []
