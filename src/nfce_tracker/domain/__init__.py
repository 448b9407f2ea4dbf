"""Receipt domain: variant models, normalization helpers and the wire codec."""

from .models import (
    DEFAULT_CATEGORY,
    DEFAULT_UNIT,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_PROCESSING,
    CompletedReceipt,
    FailedReceipt,
    Item,
    ProcessingReceipt,
    Receipt,
    ReceiptDetails,
    as_completed,
    as_failed,
    as_processing,
    new_receipt_id,
    with_flags,
)
from .codec import (
    details_from_payload,
    details_to_dict,
    item_to_dict,
    receipt_from_dict,
    receipt_to_dict,
    receipts_from_list,
)
from .normalize import normalize_name

__all__ = [
    "DEFAULT_CATEGORY",
    "DEFAULT_UNIT",
    "STATUS_COMPLETED",
    "STATUS_ERROR",
    "STATUS_PROCESSING",
    "CompletedReceipt",
    "FailedReceipt",
    "Item",
    "ProcessingReceipt",
    "Receipt",
    "ReceiptDetails",
    "as_completed",
    "as_failed",
    "as_processing",
    "new_receipt_id",
    "with_flags",
    "details_from_payload",
    "details_to_dict",
    "item_to_dict",
    "receipt_from_dict",
    "receipt_to_dict",
    "receipts_from_list",
    "normalize_name",
]
