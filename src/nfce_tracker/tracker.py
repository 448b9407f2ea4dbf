"""Wiring of the tracker: configuration plus the collaborating services."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .analytics.projection import ReceiptAnalytics
from .config import (
    load_http_timeout,
    load_openai,
    load_openai_base_url,
    load_openai_model,
    load_script_url,
)
from .engine.store import ReceiptStore
from .extraction.gateway import ReceiptExtractor
from .geocoding import GeocodingClient, StoreLocation, locate_stores
from .logging import get_logger
from .paths import find_project_root
from .remote.client import RemoteStoreClient
from .storage.local import LocalSnapshotStore, LocalStorage

LOG = get_logger("tracker")


@dataclass
class TrackerConfig:
    repo_root: str
    script_dir: str
    script_url: Optional[str]
    openai_api_key: Optional[str]
    openai_model: str
    openai_base_url: Optional[str]
    timeout: int


def build_tracker_config(args: Any = None, *, script_dir: Optional[str] = None) -> TrackerConfig:
    """Create a TrackerConfig from CLI args (optional) and env/.env."""

    script_dir = script_dir or os.getcwd()
    repo_root = find_project_root(script_dir)

    script_url = getattr(args, "script_url", None) or load_script_url(script_dir)
    model = getattr(args, "model", None) or load_openai_model(script_dir)
    timeout = getattr(args, "timeout", None) or load_http_timeout(script_dir)
    api_key = load_openai(script_dir)

    LOG.info("Tracker configuration prepared")
    LOG.info(f"Project root       : {repo_root}")
    LOG.info(f"Script URL (env)   : {script_url or '-'}")
    LOG.info(f"OpenAI model       : {model}")
    LOG.info(f"OpenAI key present : {bool(api_key)}")
    LOG.info(f"HTTP timeout       : {timeout}s")

    return TrackerConfig(
        repo_root=repo_root,
        script_dir=script_dir,
        script_url=script_url,
        openai_api_key=api_key,
        openai_model=model,
        openai_base_url=load_openai_base_url(script_dir),
        timeout=int(timeout),
    )


class Tracker:
    """Owns the receipt store and the services around it.

    Collaborators can be injected (tests pass fakes or a TestClient-backed
    bridge); otherwise they are built from the config.
    """

    def __init__(
        self,
        config: TrackerConfig,
        *,
        bridge: Optional[RemoteStoreClient] = None,
        extractor: Any = None,
        geocoder: Optional[GeocodingClient] = None,
    ) -> None:
        self.config = config
        self.storage = LocalStorage(config.repo_root)
        self.bridge = bridge or RemoteStoreClient(
            config.script_url,
            storage=self.storage,
            timeout=config.timeout,
        )
        self.extractor = extractor or ReceiptExtractor(
            config.openai_api_key,
            model=config.openai_model,
            base_url=config.openai_base_url,
            timeout=config.timeout,
        )
        self.geocoder = geocoder or GeocodingClient(timeout=config.timeout)
        self.snapshot = LocalSnapshotStore(self.storage)
        self.store = ReceiptStore(self.bridge, self.extractor, self.snapshot)
        self.analytics = ReceiptAnalytics(self.store)
        LOG.info(f"Tracker ready (remote {'configured' if self.bridge.is_configured() else 'not configured'})")

    async def start(self) -> None:
        await self.store.initial_load()

    async def configure_remote(self, url: str) -> Tuple[bool, str]:
        """Save the remote URL, push local receipts and reload from the remote."""
        ok, message = self.bridge.set_script_url(url)
        if not ok:
            return ok, message
        await self.store.sync_local_data_to_remote()
        await self.store.initial_load()
        return ok, message

    async def clear_remote(self) -> None:
        self.bridge.clear_script_url()
        await self.store.initial_load()

    async def migrate(self) -> Optional[Dict[str, Any]]:
        if not self.bridge.is_configured():
            LOG.warning("Migration needs a configured remote store")
            return None
        return await asyncio.to_thread(self.bridge.migrate)

    def ask(self, question: str) -> Iterator[str]:
        return self.extractor.insights(question, self.store.receipts)

    async def locate_stores(self) -> List[StoreLocation]:
        stores = self.analytics.snapshot.stores
        return await asyncio.to_thread(locate_stores, stores, self.geocoder)

    async def close(self) -> None:
        await self.store.wait_idle()
        self.analytics.close()
