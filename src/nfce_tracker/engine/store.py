"""Receipt store: the canonical receipt list and its processing queue.

The store owns an immutable tuple of receipts (newest first). Every change
replaces the tuple and notifies subscribers synchronously. Two subscribers are
built in:

- the queue trigger, which starts one extraction at a time for the first
  `processing` receipt that has a URL;
- the snapshot writer, which mirrors the list to local storage while no
  remote store is configured.

Collaborator calls (bridge, gateway) are blocking and run in worker threads
via `asyncio.to_thread`; state is only ever touched from the event loop.
Nothing raised by a collaborator escapes the public operations: failures end
up as sync flags or as a failed receipt.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import sqlite3
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..domain.codec import details_from_payload, receipts_from_list
from ..domain.models import (
    STATUS_COMPLETED,
    STATUS_PROCESSING,
    ProcessingReceipt,
    Receipt,
    ReceiptDetails,
    as_completed,
    as_failed,
    as_processing,
    new_receipt_id,
    with_flags,
)
from ..errors import DuplicateError
from ..logging import get_logger

LOG = get_logger("receipt-store")

PREVIOUS_SESSION_MESSAGE = "Processing did not complete in a previous session."
UNKNOWN_PROCESSING_MESSAGE = "Unknown processing failure."
UNKNOWN_PHOTO_MESSAGE = "Unknown failure while reading the URL from the image."

Listener = Callable[[Tuple[Receipt, ...]], None]


class ReceiptStore:
    def __init__(self, bridge: Any, extractor: Any, snapshot: Any) -> None:
        self.bridge = bridge
        self.extractor = extractor
        self.snapshot = snapshot

        self._receipts: Tuple[Receipt, ...] = ()
        self.is_loading = True
        self._processing = False
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._remote_locks: Dict[str, asyncio.Lock] = {}
        self._remote_users: Dict[str, int] = {}

        self.subscribe(self._trigger_queue)
        self.subscribe(self._write_snapshot)

    # ---------- observation ----------
    @property
    def receipts(self) -> Tuple[Receipt, ...]:
        return self._receipts

    @property
    def is_processing(self) -> bool:
        return self._processing

    def get(self, receipt_id: str) -> Optional[Receipt]:
        return next((r for r in self._receipts if r.id == receipt_id), None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; it is called with the new tuple after every change.

        Returns a function that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, receipts: Tuple[Receipt, ...]) -> None:
        self._receipts = tuple(receipts)
        for listener in list(self._listeners):
            try:
                listener(self._receipts)
            except Exception:
                LOG.exception(f"Receipt listener {listener!r} failed")

    def _put(self, receipt: Receipt) -> Optional[Receipt]:
        """Replace the receipt with the same id; None if it is gone."""
        if self.get(receipt.id) is None:
            return None
        self._set(tuple(receipt if r.id == receipt.id else r for r in self._receipts))
        return receipt

    # ---------- background tasks ----------
    def _spawn(self, label: str, factory: Callable[..., Awaitable[Any]], *args: Any) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOG.warning(f"No running event loop; background task '{label}' not started")
            return None
        task = loop.create_task(factory(*args), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            LOG.warning(f"Background task '{task.get_name()}' was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            LOG.error(f"Background task '{task.get_name()}' failed: {exc}", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until no background task (saves, deletes, extractions) is pending."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---------- bridge wrappers ----------
    def _configured(self) -> bool:
        return bool(self.bridge.is_configured())

    @contextlib.asynccontextmanager
    async def _remote_turn(self, receipt_id: str) -> AsyncIterator[None]:
        """Hold the per-id turn for one bridge write.

        Saves and the delete of one id reach the bridge in the order they were
        issued. The entry is dropped when its last user leaves.
        """
        lock = self._remote_locks.setdefault(receipt_id, asyncio.Lock())
        self._remote_users[receipt_id] = self._remote_users.get(receipt_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            left = self._remote_users[receipt_id] - 1
            if left:
                self._remote_users[receipt_id] = left
            else:
                del self._remote_users[receipt_id]
                del self._remote_locks[receipt_id]

    async def _save(self, receipt: Receipt) -> bool:
        async with self._remote_turn(receipt.id):
            try:
                result = await asyncio.to_thread(self.bridge.save_receipt, receipt)
            except Exception as exc:
                LOG.error(f"Saving receipt {receipt.id} failed: {exc}")
                return False
        ok = isinstance(result, dict) and bool(result.get("success"))
        if ok:
            LOG.info(f"Receipt {receipt.id} saved remotely")
        else:
            LOG.error(f"Remote save of receipt {receipt.id} was not confirmed")
        return ok

    async def _delete_remote(self, receipt_id: str) -> None:
        # Queued behind saves of the same id still in flight.
        async with self._remote_turn(receipt_id):
            try:
                result = await asyncio.to_thread(self.bridge.delete_receipt, receipt_id)
            except Exception as exc:
                LOG.error(f"Deleting receipt {receipt_id} remotely failed: {exc}")
                return
        if isinstance(result, dict) and result.get("success"):
            LOG.info(f"Receipt {receipt_id} deleted remotely")
        else:
            LOG.error(f"Remote delete of receipt {receipt_id} was not confirmed")

    # ---------- built-in subscribers ----------
    def _trigger_queue(self, receipts: Tuple[Receipt, ...]) -> None:
        if self._processing:
            return
        nxt = next((r for r in receipts if r.status == STATUS_PROCESSING and r.url), None)
        if nxt is None:
            return
        # Set before any await: this is what keeps extractions one at a time.
        self._processing = True
        if self._spawn(f"extract-{nxt.id}", self._process, nxt) is None:
            self._processing = False

    def _write_snapshot(self, receipts: Tuple[Receipt, ...]) -> None:
        if self.is_loading or self._configured():
            return
        try:
            self.snapshot.save(receipts)
        except (sqlite3.Error, OSError) as exc:
            LOG.error(f"Writing local snapshot failed: {exc}")

    # ---------- loading ----------
    async def initial_load(self) -> None:
        """Replace the list with the remote list, or the local snapshot when unconfigured."""
        self.is_loading = True
        loaded: List[Receipt] = []
        try:
            if self._configured():
                rows = await asyncio.to_thread(self.bridge.list_receipts)
                for r in receipts_from_list(rows):
                    if r.status == STATUS_PROCESSING:
                        r = as_failed(r, PREVIOUS_SESSION_MESSAGE)
                    loaded.append(with_flags(r, is_synced=True, syncing=False))
                LOG.info(f"Loaded {len(loaded)} receipt(s) from the remote store")
            else:
                loaded = [with_flags(r, is_synced=False, syncing=False) for r in self.snapshot.load()]
                LOG.info(f"Loaded {len(loaded)} receipt(s) from the local snapshot")
        except Exception as exc:
            LOG.error(f"Initial load failed, starting empty: {exc}")
            loaded = []
        finally:
            self.is_loading = False
        self._set(tuple(loaded))

    # ---------- adding ----------
    def _ensure_unique(self, url: str, *, exclude_id: Optional[str] = None) -> None:
        for r in self._receipts:
            if r.id != exclude_id and r.url == url:
                raise DuplicateError(url)

    def add_receipt(self, url: str) -> Optional[ProcessingReceipt]:
        """Queue a receipt URL for extraction; None when empty or already tracked."""
        url = (url or "").strip()
        if not url:
            LOG.warning("Ignoring empty receipt URL")
            return None
        try:
            self._ensure_unique(url)
        except DuplicateError:
            LOG.info(f"URL already queued or processed: {url}")
            return None
        receipt = ProcessingReceipt(id=new_receipt_id(), url=url)
        if self._configured():
            self._spawn(f"save-{receipt.id}", self._save, receipt)
        self._set((receipt,) + self._receipts)
        LOG.info(f"Queued receipt {receipt.id} for {url}")
        return receipt

    async def add_receipt_from_photo(self, photo_b64: str) -> Optional[Receipt]:
        """Resolve the receipt URL from a photo and queue it.

        Returns the resulting record (processing, or failed), or None when the
        placeholder was deleted while the image was being read.
        """
        placeholder = ProcessingReceipt(id=new_receipt_id())
        self._set((placeholder,) + self._receipts)
        try:
            url = await asyncio.to_thread(self.extractor.image_to_url, photo_b64)
            if self.get(placeholder.id) is None:
                LOG.info(f"Photo placeholder {placeholder.id} removed; dropping resolved URL")
                return None
            self._ensure_unique(url, exclude_id=placeholder.id)
        except Exception as exc:
            message = str(exc) or UNKNOWN_PHOTO_MESSAGE
            LOG.error(f"Reading URL from photo failed: {message}")
            current = self.get(placeholder.id)
            return self._put(as_failed(current, message)) if current is not None else None

        current = self.get(placeholder.id)
        updated = dataclasses.replace(current, url=url)
        if self._configured():
            self._spawn(f"save-{updated.id}", self._save, updated)
        return self._put(updated)

    # ---------- extraction ----------
    async def _process(self, receipt: Receipt) -> None:
        try:
            try:
                details = await asyncio.to_thread(self.extractor.url_to_fields, receipt.url)
                if not isinstance(details, ReceiptDetails):
                    details = details_from_payload(details)
            except Exception as exc:
                message = str(exc) or UNKNOWN_PROCESSING_MESSAGE
                LOG.error(f"Extraction failed for receipt {receipt.id}: {message}")
                current = self.get(receipt.id)
                if current is None:
                    LOG.info(f"Receipt {receipt.id} was deleted during extraction; dropping failure")
                    return
                self._finish(with_flags(as_failed(current, message), is_synced=False))
                return

            current = self.get(receipt.id)
            if current is None:
                LOG.info(f"Receipt {receipt.id} was deleted during extraction; dropping result")
                return
            LOG.info(f"Receipt {receipt.id} completed ({details.store_name!r}, {len(details.items)} item(s))")
            self._finish(with_flags(as_completed(current, details), is_synced=False))
        finally:
            self._processing = False
            self._trigger_queue(self._receipts)

    def _finish(self, receipt: Receipt) -> None:
        self._put(receipt)
        if self._configured():
            self._spawn(f"save-{receipt.id}", self._persist_result, receipt)

    async def _persist_result(self, receipt: Receipt) -> None:
        if await self._save(receipt):
            current = self.get(receipt.id)
            if current is not None:
                self._put(with_flags(current, is_synced=True))

    # ---------- sync ----------
    async def retry_sync(self, receipt_id: str) -> bool:
        """Save one unsynced completed receipt. Returns True on confirmed success."""
        receipt = self.get(receipt_id)
        if receipt is None or receipt.status != STATUS_COMPLETED or receipt.is_synced or receipt.syncing:
            return False
        if not self._configured():
            LOG.error("Cannot sync: the remote store URL is not configured")
            return False
        self._put(with_flags(receipt, syncing=True))
        ok = await self._save(receipt)
        current = self.get(receipt_id)
        if current is not None:
            if ok:
                self._put(with_flags(current, is_synced=True, syncing=False))
            else:
                self._put(with_flags(current, syncing=False))
        return ok

    async def sync_local_data_to_remote(self) -> Dict[str, bool]:
        """Push every unsynced receipt, then reload from the remote store.

        Returns the per-id outcome of the batch.
        """
        if not self._configured():
            LOG.info("Cannot sync: the remote store is not configured")
            return {}
        pending = [r for r in self._receipts if not r.is_synced]
        if not pending:
            LOG.info("No local data to sync")
            return {}

        ids = {r.id for r in pending}
        self._set(tuple(with_flags(r, syncing=True) if r.id in ids else r for r in self._receipts))
        results = await asyncio.gather(*(self._save(r) for r in pending), return_exceptions=True)
        outcome = {r.id: res is True for r, res in zip(pending, results)}
        self._set(
            tuple(
                with_flags(r, is_synced=outcome[r.id], syncing=False)
                if r.id in outcome
                else with_flags(r, syncing=False)
                for r in self._receipts
            )
        )
        LOG.info(f"Bulk sync finished: {sum(outcome.values())}/{len(outcome)} saved")
        await self.initial_load()
        return outcome

    # ---------- edits ----------
    def update_receipt(self, receipt: Receipt) -> Optional[Receipt]:
        updated = self._put(with_flags(receipt, is_synced=False))
        if updated is None:
            LOG.warning(f"Cannot update unknown receipt {receipt.id}")
            return None
        if self._configured():
            self._spawn(f"retry-sync-{updated.id}", self.retry_sync, updated.id)
        return updated

    def update_store_address(self, cnpj: str, new_address: str) -> int:
        """Rewrite the store address on every receipt of `cnpj`; returns how many changed."""
        if not cnpj:
            return 0
        changed: List[str] = []
        out: List[Receipt] = []
        for r in self._receipts:
            if r.details is not None and r.details.store_cnpj == cnpj:
                details = dataclasses.replace(r.details, store_address=new_address)
                out.append(dataclasses.replace(r, details=details, is_synced=False))
                changed.append(r.id)
            else:
                out.append(r)
        if not changed:
            return 0
        self._set(tuple(out))
        if self._configured():
            for rid in changed:
                self._spawn(f"retry-sync-{rid}", self.retry_sync, rid)
        return len(changed)

    def reprocess_receipt(self, receipt_id: str) -> Optional[Receipt]:
        receipt = self.get(receipt_id)
        if receipt is None:
            return None
        reset = with_flags(as_processing(receipt), is_synced=False)
        if self._configured():
            self._spawn(f"save-{reset.id}", self._save, reset)
        return self._put(reset)

    def update_receipt_url(self, receipt_id: str, new_url: str) -> Optional[Receipt]:
        receipt = self.get(receipt_id)
        if receipt is None:
            return None
        return self._put(dataclasses.replace(receipt, url=new_url))

    def delete_receipt(self, receipt_id: str) -> bool:
        if self.get(receipt_id) is None:
            return False
        self._set(tuple(r for r in self._receipts if r.id != receipt_id))
        if self._configured():
            self._spawn(f"delete-{receipt_id}", self._delete_remote, receipt_id)
        LOG.info(f"Deleted receipt {receipt_id}")
        return True
