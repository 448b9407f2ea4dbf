from __future__ import annotations

import json

import requests
from starlette.testclient import TestClient

from nfce_tracker.domain.codec import details_from_payload
from nfce_tracker.domain.models import CompletedReceipt, ProcessingReceipt
from nfce_tracker.remote.app import create_app
from nfce_tracker.remote.client import (
    CONNECTION_ERROR_MESSAGE,
    RemoteStoreClient,
    _unwrap,
    is_valid_script_url,
)
from nfce_tracker.storage.local import SCRIPT_URL_KEY, LocalStorage

from conftest import leite_payload

SCRIPT_URL = "http://testserver/exec"


class _BrokenSession:
    def __init__(self) -> None:
        self.calls = 0

    def get(self, url, params=None, timeout=None):
        self.calls += 1
        raise requests.ConnectionError("connection refused")


class _StaticSession:
    def __init__(self, text: str, status_code: int = 200) -> None:
        self.text = text
        self.status_code = status_code
        self.params = None

    def get(self, url, params=None, timeout=None):
        self.params = params
        return self


def _bridge(project_root) -> RemoteStoreClient:
    session = TestClient(create_app(root_dir=str(project_root)))
    return RemoteStoreClient(SCRIPT_URL, session=session)


def test_round_trip_against_the_app(project_root):
    bridge = _bridge(project_root)
    placeholder = ProcessingReceipt(id="r1", url="http://nfce/1")
    assert bridge.save_receipt(placeholder) == {"success": True, "id": "r1"}

    done = CompletedReceipt(id="r1", url="http://nfce/1", details=details_from_payload(leite_payload()))
    assert bridge.save_receipt(done)["success"] is True

    rows = bridge.list_receipts()
    assert len(rows) == 1
    assert rows[0]["status"] == "completed"
    assert rows[0]["items"][0]["name"] == "Leite"
    assert bridge.connection_error is None

    assert bridge.migrate()["migratedCount"] == 1
    assert bridge.delete_receipt("r1")["success"] is True
    assert bridge.list_receipts() == []


def test_request_shape_and_callback_unwrapping():
    session = _StaticSession("")
    bridge = RemoteStoreClient(SCRIPT_URL, session=session)

    def answer(url, params=None, timeout=None):
        session.params = params
        session.text = f"{params['callback']}({json.dumps([{'id': 'x', 'status': 'processing'}])});"
        return session

    session.get = answer
    assert bridge.list_receipts() == [{"id": "x", "status": "processing"}]
    assert json.loads(session.params["payload"]) == {"action": "get"}
    assert session.params["callback"].startswith("nfce_cb_")


def test_connection_failure_sets_error_and_falls_back():
    session = _BrokenSession()
    bridge = RemoteStoreClient(SCRIPT_URL, session=session)

    assert bridge.list_receipts() == []
    assert bridge.connection_error == CONNECTION_ERROR_MESSAGE
    assert bridge.save_receipt(ProcessingReceipt(id="r1")) is None
    assert bridge.delete_receipt("r1") is None
    assert session.calls == 3


def test_error_answers_and_bad_status_fall_back():
    bridge = RemoteStoreClient(SCRIPT_URL, session=_StaticSession('{"error": "nope"}'))
    assert bridge.save_receipt(ProcessingReceipt(id="r1")) is None
    assert bridge.connection_error is None

    bridge = RemoteStoreClient(SCRIPT_URL, session=_StaticSession("oops", status_code=500))
    assert bridge.list_receipts() == []
    assert bridge.connection_error == CONNECTION_ERROR_MESSAGE


def test_unconfigured_bridge_never_calls_out():
    session = _BrokenSession()
    bridge = RemoteStoreClient(None, session=session)
    assert not bridge.is_configured()
    assert bridge.list_receipts() == []
    assert bridge.save_receipt(ProcessingReceipt(id="r1")) is None
    assert bridge.migrate() is None
    assert session.calls == 0


def test_script_url_is_persisted_and_preferred(project_root):
    storage = LocalStorage(str(project_root))
    bridge = RemoteStoreClient(None, storage=storage, session=_BrokenSession())

    ok, _ = bridge.set_script_url("not a url")
    assert not ok
    assert not bridge.is_configured()

    ok, message = bridge.set_script_url("  https://example.org/exec ")
    assert ok and message == "URL saved successfully."
    assert storage.get(SCRIPT_URL_KEY) == "https://example.org/exec"

    again = RemoteStoreClient("https://other.example/exec", storage=storage, session=_BrokenSession())
    assert again.script_url == "https://example.org/exec"

    again.clear_script_url()
    assert storage.get(SCRIPT_URL_KEY) is None
    assert not again.is_configured()


def test_url_validation_and_unwrap():
    assert is_valid_script_url("https://script.google.com/macros/s/abc/exec")
    assert not is_valid_script_url("ftp://example.org")
    assert not is_valid_script_url("")
    assert _unwrap("cb_1({\"a\": 1})", "cb_1") == {"a": 1}
    assert _unwrap("[1, 2]", "cb_1") == [1, 2]
