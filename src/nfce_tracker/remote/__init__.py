from .client import CONNECTION_ERROR_MESSAGE, RemoteStoreClient, is_valid_script_url
from .sheet import SheetStore

__all__ = ["RemoteStoreClient", "SheetStore", "CONNECTION_ERROR_MESSAGE", "is_valid_script_url"]
