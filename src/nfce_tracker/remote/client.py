import itertools
import json
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from ..domain.codec import receipt_to_dict
from ..domain.models import Receipt
from ..errors import ConfigurationError, NetworkError
from ..logging import get_logger
from ..storage.local import SCRIPT_URL_KEY, LocalStorage

CONNECTION_ERROR_MESSAGE = (
    "Could not reach the remote receipt store. Check the script URL, your "
    "internet connection, and that the endpoint is publicly accessible."
)

_callback_ids = itertools.count(1)


def _unwrap(text: str, callback: str) -> Any:
    """Strip `callback(...)` around a JSON body; plain JSON is accepted too."""
    body = (text or "").strip()
    m = re.fullmatch(rf"{re.escape(callback)}\((.*)\)\s*;?", body, flags=re.DOTALL)
    if m:
        body = m.group(1)
    try:
        return json.loads(body)
    except json.JSONDecodeError as e:
        raise NetworkError(f"Unexpected response body: {body[:200]!r}") from e


def is_valid_script_url(url: Optional[str]) -> bool:
    if not url or not isinstance(url, str):
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class RemoteStoreClient:
    """Client for the remote receipt store bridge.

    Every call is one GET `?payload=<json>&callback=<name>`; the answer comes
    back wrapped as `name(<json>)`. Failures never raise: list calls fall back
    to `[]`, the rest to `None`, and `connection_error` carries a message for
    the user until the next successful call.
    """

    def __init__(
        self,
        script_url: Optional[str] = None,
        *,
        storage: Optional[LocalStorage] = None,
        timeout: int = 30,
        session: Any = None,
    ) -> None:
        self.log = get_logger("remote-client")
        self.storage = storage
        self.timeout = int(timeout)
        self.s = session if session is not None else requests.Session()
        self.connection_error: Optional[str] = None

        saved = storage.get(SCRIPT_URL_KEY) if storage is not None else None
        self._script_url: Optional[str] = saved or script_url or None
        if self._script_url:
            self.log.info(f"Remote store configured at {self._script_url}")

    # ---------- configuration ----------
    @property
    def script_url(self) -> Optional[str]:
        return self._script_url

    def is_configured(self) -> bool:
        return bool(self._script_url)

    def set_script_url(self, url: str) -> Tuple[bool, str]:
        if not is_valid_script_url(url):
            return False, "Invalid URL. Check the format (http or https)."
        url = url.strip()
        if self.storage is not None:
            self.storage.set(SCRIPT_URL_KEY, url)
        self._script_url = url
        self.connection_error = None
        self.log.info(f"Remote store URL saved: {url}")
        return True, "URL saved successfully."

    def clear_script_url(self) -> None:
        if self.storage is not None:
            self.storage.remove(SCRIPT_URL_KEY)
        self._script_url = None
        self.log.info("Remote store URL cleared")

    # ---------- transport ----------
    def _request(self, payload: Dict[str, Any]) -> Any:
        script_url = self._script_url
        if not script_url:
            raise ConfigurationError("Remote store is not configured")
        callback = f"nfce_cb_{next(_callback_ids)}"
        params = {
            "payload": json.dumps(payload, ensure_ascii=False),
            "callback": callback,
        }
        try:
            r = self.s.get(script_url, params=params, timeout=self.timeout)
            if r.status_code >= 400:
                raise NetworkError(f"HTTP {r.status_code} from remote store")
            data = _unwrap(r.text, callback)
        except (requests.RequestException, NetworkError) as e:
            self.log.error(f"Remote store request failed ({payload.get('action')}): {e}")
            self.connection_error = CONNECTION_ERROR_MESSAGE
            raise NetworkError(CONNECTION_ERROR_MESSAGE) from e
        self.connection_error = None
        return data

    def _call(self, payload: Dict[str, Any], fallback: Any) -> Any:
        action = payload.get("action")
        if not self.is_configured():
            self.log.warning(f"Remote store not configured; skipping '{action}'")
            return fallback
        try:
            data = self._request(payload)
        except NetworkError:
            return fallback
        if isinstance(data, dict) and data.get("error"):
            details = data.get("details")
            self.log.error(f"Remote store rejected '{action}': {data['error']}" + (f" ({details})" if details else ""))
            return fallback
        return data

    # ---------- actions ----------
    def list_receipts(self) -> List[Dict[str, Any]]:
        data = self._call({"action": "get"}, [])
        if not isinstance(data, list):
            self.log.warning("Remote store returned a non-list for 'get'")
            return []
        return data

    def save_receipt(self, receipt: Receipt) -> Optional[Dict[str, Any]]:
        data = self._call({"action": "save", "data": receipt_to_dict(receipt)}, None)
        return data if isinstance(data, dict) else None

    def delete_receipt(self, receipt_id: str) -> Optional[Dict[str, Any]]:
        data = self._call({"action": "delete", "id": receipt_id}, None)
        return data if isinstance(data, dict) else None

    def migrate(self) -> Optional[Dict[str, Any]]:
        data = self._call({"action": "migrate"}, None)
        return data if isinstance(data, dict) else None
