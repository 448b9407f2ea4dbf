from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import ClassVar, Optional, Tuple, Union

STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

DEFAULT_UNIT = "UN"
DEFAULT_CATEGORY = "Outros"


@dataclass(frozen=True)
class Item:
    """One purchased line of a receipt. Has no identity of its own."""

    name: str
    quantity: float
    unit: str
    unit_price: float
    total_price: float
    category: str = DEFAULT_CATEGORY


@dataclass(frozen=True)
class ReceiptDetails:
    """Fields extracted from the NFC-e page."""

    store_name: str
    store_cnpj: str
    store_address: str
    date: str  # ISO 8601, YYYY-MM-DDTHH:MM:SS
    total_amount: float
    items: Tuple[Item, ...] = ()


@dataclass(frozen=True, kw_only=True)
class _ReceiptBase:
    id: str
    url: Optional[str] = None
    payer: Optional[str] = None
    details: Optional[ReceiptDetails] = None
    is_synced: bool = False
    syncing: bool = False

    status: ClassVar[str]

    @property
    def store_cnpj(self) -> Optional[str]:
        return self.details.store_cnpj if self.details else None


@dataclass(frozen=True, kw_only=True)
class ProcessingReceipt(_ReceiptBase):
    status: ClassVar[str] = STATUS_PROCESSING


@dataclass(frozen=True, kw_only=True)
class CompletedReceipt(_ReceiptBase):
    details: ReceiptDetails
    status: ClassVar[str] = STATUS_COMPLETED


@dataclass(frozen=True, kw_only=True)
class FailedReceipt(_ReceiptBase):
    error: str
    status: ClassVar[str] = STATUS_ERROR


Receipt = Union[ProcessingReceipt, CompletedReceipt, FailedReceipt]


def new_receipt_id() -> str:
    return str(uuid.uuid4())


def _carry(r: Receipt) -> dict:
    return {
        "id": r.id,
        "url": r.url,
        "payer": r.payer,
        "details": r.details,
        "is_synced": r.is_synced,
        "syncing": r.syncing,
    }


def as_processing(r: Receipt) -> ProcessingReceipt:
    """Re-enter the processing state, dropping any previous error."""
    return ProcessingReceipt(**_carry(r))


def as_completed(r: Receipt, details: ReceiptDetails) -> CompletedReceipt:
    kwargs = _carry(r)
    kwargs["details"] = details
    return CompletedReceipt(**kwargs)


def as_failed(r: Receipt, message: str) -> FailedReceipt:
    return FailedReceipt(error=message, **_carry(r))


def with_flags(r: Receipt, **flags: bool) -> Receipt:
    """Return a copy with `is_synced` and/or `syncing` replaced."""
    return replace(r, **flags)
