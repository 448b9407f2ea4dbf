"""Conversion between receipt models and their camelCase JSON shape.

The same shape is used by the remote store protocol, the local snapshot and
the extraction model output:

    {id, url, status, storeName, storeCnpj, storeAddress, date, totalAmount,
     items: [{name, quantity, unit, unitPrice, totalPrice, category}],
     error, payer}

Decoding stored records is lenient (remote rows are whatever the sheet holds);
decoding model output with `details_from_payload` is strict and raises
ValidationError.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ValidationError
from ..logging import get_logger
from .models import (
    DEFAULT_CATEGORY,
    DEFAULT_UNIT,
    STATUS_COMPLETED,
    STATUS_PROCESSING,
    CompletedReceipt,
    FailedReceipt,
    Item,
    ProcessingReceipt,
    Receipt,
    ReceiptDetails,
)
from .normalize import normalize_datetime_iso, to_float

LOG = get_logger("codec")

INCOMPLETE_RECEIPT_MESSAGE = "Receipt data is incomplete."

_DETAIL_KEYS = ("storeName", "storeCnpj", "storeAddress", "date", "totalAmount", "items")


def _norm_s(s: Any) -> Optional[str]:
    return str(s).strip() if isinstance(s, str) and s.strip() else None


# ---------- encode ----------
def item_to_dict(item: Item) -> Dict[str, Any]:
    return {
        "name": item.name,
        "quantity": item.quantity,
        "unit": item.unit,
        "unitPrice": item.unit_price,
        "totalPrice": item.total_price,
        "category": item.category,
    }


def details_to_dict(details: ReceiptDetails) -> Dict[str, Any]:
    return {
        "storeName": details.store_name,
        "storeCnpj": details.store_cnpj,
        "storeAddress": details.store_address,
        "date": details.date,
        "totalAmount": details.total_amount,
        "items": [item_to_dict(it) for it in details.items],
    }


def receipt_to_dict(receipt: Receipt, *, include_flags: bool = False) -> Dict[str, Any]:
    """Encode a receipt for the wire.

    `items` is only present when the receipt carries extracted details, so a
    placeholder save never wipes item rows on the remote side. The transient
    sync flags are left out unless `include_flags` is set (display only).
    """
    out: Dict[str, Any] = {
        "id": receipt.id,
        "url": receipt.url,
        "status": receipt.status,
        "storeName": None,
        "storeCnpj": None,
        "storeAddress": None,
        "date": None,
        "totalAmount": None,
        "error": getattr(receipt, "error", None),
        "payer": receipt.payer,
    }
    if receipt.details is not None:
        out.update(details_to_dict(receipt.details))
    if include_flags:
        out["isSynced"] = receipt.is_synced
        out["syncing"] = receipt.syncing
    return out


# ---------- decode (lenient) ----------
def _items_in(raw: Any) -> List[Any]:
    if isinstance(raw, str):
        if not raw.strip():
            return []
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            LOG.warning("Ignoring items column that is not valid JSON")
            return []
    return raw if isinstance(raw, list) else []


def item_from_dict(data: Any) -> Optional[Item]:
    """Decode one stored item; returns None for rows without a name."""
    if not isinstance(data, dict):
        return None
    name = _norm_s(data.get("name"))
    if not name:
        return None
    quantity = to_float(data.get("quantity"), 1.0)
    if quantity is None or quantity <= 0:
        quantity = 1.0
    unit_price = to_float(data.get("unitPrice"), 0.0)
    total_price = to_float(data.get("totalPrice"), None)
    if total_price is None:
        total_price = round(unit_price * quantity, 2)
    return Item(
        name=name,
        quantity=quantity,
        unit=_norm_s(data.get("unit")) or DEFAULT_UNIT,
        unit_price=unit_price,
        total_price=total_price,
        category=_norm_s(data.get("category")) or DEFAULT_CATEGORY,
    )


def items_from_value(raw: Any) -> Tuple[Item, ...]:
    decoded = (item_from_dict(it) for it in _items_in(raw))
    return tuple(it for it in decoded if it is not None)


def _details_from_fields(data: Dict[str, Any]) -> Optional[ReceiptDetails]:
    if not any(data.get(k) not in (None, "") for k in _DETAIL_KEYS):
        return None
    raw_date = _norm_s(data.get("date")) or ""
    return ReceiptDetails(
        store_name=_norm_s(data.get("storeName")) or "",
        store_cnpj=_norm_s(data.get("storeCnpj")) or "",
        store_address=_norm_s(data.get("storeAddress")) or "",
        date=normalize_datetime_iso(raw_date) or raw_date,
        total_amount=max(to_float(data.get("totalAmount"), 0.0), 0.0),
        items=items_from_value(data.get("items")),
    )


def receipt_from_dict(data: Any) -> Receipt:
    """Decode a stored/wire record into the matching receipt variant.

    Unknown statuses decode as failed records; a `completed` row without
    extracted fields decodes as failed as well, since the rest of the system
    relies on completed receipts carrying details.
    """
    if not isinstance(data, dict):
        raise ValidationError("Receipt must be a JSON object")
    rid = data.get("id")
    rid = str(rid).strip() if rid not in (None, "") else ""
    if not rid:
        raise ValidationError("Receipt id is required")

    base = {
        "id": rid,
        "url": _norm_s(data.get("url")),
        "payer": _norm_s(data.get("payer")),
        "details": _details_from_fields(data),
    }
    status = (_norm_s(data.get("status")) or "").lower()
    if status == STATUS_PROCESSING:
        return ProcessingReceipt(**base)
    if status == STATUS_COMPLETED:
        if base["details"] is None:
            return FailedReceipt(error=INCOMPLETE_RECEIPT_MESSAGE, **base)
        return CompletedReceipt(**base)
    return FailedReceipt(error=_norm_s(data.get("error")) or "Unknown error.", **base)


def receipts_from_list(rows: Any) -> List[Receipt]:
    """Decode a list of records, skipping (and logging) undecodable rows."""
    out: List[Receipt] = []
    if not isinstance(rows, list):
        return out
    for idx, row in enumerate(rows):
        try:
            out.append(receipt_from_dict(row))
        except ValidationError as exc:
            LOG.warning(f"Skipping receipt row {idx}: {exc}")
    return out


# ---------- decode (strict, model output) ----------
def details_from_payload(payload: Any) -> ReceiptDetails:
    """Validate and normalize extracted receipt fields.

    Expected input shape (from the extraction prompt):
    - storeName: str (required)
    - storeCnpj, storeAddress: str (optional, default "")
    - date: ISO date/time or DD/MM/YYYY HH:MM:SS (kept verbatim if unparsable)
    - totalAmount: number >= 0; derived from item totals when missing
    - items: list of {name, quantity > 0, unit, unitPrice, totalPrice, category}
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")

    store_name = _norm_s(payload.get("storeName"))
    if not store_name:
        raise ValidationError("storeName required")

    items_in = payload.get("items")
    if items_in is None:
        items_in = []
    if not isinstance(items_in, list):
        raise ValidationError("items must be a list")

    items: List[Item] = []
    for idx, it in enumerate(items_in):
        if not isinstance(it, dict):
            raise ValidationError(f"items[{idx}] must be an object")
        name = _norm_s(it.get("name"))
        if not name:
            raise ValidationError(f"items[{idx}].name required")
        qty = to_float(it.get("quantity"), 1.0)
        if qty is None or qty <= 0:
            raise ValidationError(f"items[{idx}].quantity must be > 0")
        unit_price = to_float(it.get("unitPrice"))
        total_price = to_float(it.get("totalPrice"))
        if unit_price is None and total_price is None:
            raise ValidationError(f"items[{idx}] needs unitPrice or totalPrice")
        if unit_price is None:
            unit_price = round(total_price / qty, 4)
        if total_price is None:
            total_price = round(unit_price * qty, 2)
        items.append(
            Item(
                name=name,
                quantity=qty,
                unit=(_norm_s(it.get("unit")) or DEFAULT_UNIT).upper(),
                unit_price=unit_price,
                total_price=total_price,
                category=_norm_s(it.get("category")) or DEFAULT_CATEGORY,
            )
        )

    total = to_float(payload.get("totalAmount"))
    if total is None:
        total = round(sum(it.total_price for it in items), 2)
    if total < 0:
        raise ValidationError("totalAmount must be >= 0")

    raw_date = _norm_s(payload.get("date")) or ""
    details = ReceiptDetails(
        store_name=store_name,
        store_cnpj=_norm_s(payload.get("storeCnpj")) or "",
        store_address=_norm_s(payload.get("storeAddress")) or "",
        date=normalize_datetime_iso(raw_date) or raw_date,
        total_amount=total,
        items=tuple(items),
    )
    LOG.debug(f"Normalized extraction payload with {len(items)} item(s)")
    return details
