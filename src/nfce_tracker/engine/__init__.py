from .store import PREVIOUS_SESSION_MESSAGE, ReceiptStore

__all__ = ["ReceiptStore", "PREVIOUS_SESSION_MESSAGE"]
