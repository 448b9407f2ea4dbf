from .local import SCRIPT_URL_KEY, SNAPSHOT_KEY, LocalSnapshotStore, LocalStorage

__all__ = ["LocalStorage", "LocalSnapshotStore", "SNAPSHOT_KEY", "SCRIPT_URL_KEY"]
