from .gateway import NO_URL_MESSAGE, ReceiptExtractor, encode_photo, html_to_text

__all__ = ["ReceiptExtractor", "encode_photo", "html_to_text", "NO_URL_MESSAGE"]
