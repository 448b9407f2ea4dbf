"""
NFC-e expense tracker.

Tracks Brazilian electronic consumer receipts: a receipt URL (or a photo of
the receipt) goes through AI extraction, is stored locally or in a remote
receipt store, and feeds spending analytics.
"""

__all__ = [
    "config",
    "logging",
    "paths",
    "tracker",
]
