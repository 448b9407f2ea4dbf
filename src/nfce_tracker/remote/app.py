from __future__ import annotations

import json
import re
import sqlite3
from typing import Any, Dict, List, Optional

from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from ..errors import ValidationError
from ..logging import get_logger
from ..paths import find_project_root
from .sheet import SheetStore


LOG = get_logger("sheet-app")

_CALLBACK_RE = re.compile(r"^[A-Za-z_$][\w$.]*$")


def _decode_payload(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        raise ValidationError("Missing payload parameter")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError("Payload is not valid JSON", details=str(exc)) from exc
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be a JSON object")
    return payload


def dispatch(store: SheetStore, payload: Dict[str, Any]) -> Any:
    """Run one bridge action against the store and return its JSON answer."""
    action = payload.get("action")
    if action == "get":
        return store.list_receipts()
    if action == "save":
        return store.save_receipt(payload.get("data"))
    if action == "delete":
        return store.delete_receipt(payload.get("id"))
    if action == "migrate":
        return store.migrate()
    raise ValidationError(f"Unknown action: {action!r}")


def _respond(body: Any, callback: Optional[str]) -> Response:
    if callback:
        text = f"{callback}({json.dumps(body, ensure_ascii=False)})"
        return Response(text, media_type="application/javascript")
    return JSONResponse(body)


def create_app(
    root_dir: Optional[str] = None,
    *,
    store: Optional[SheetStore] = None,
    allow_origins: Optional[List[str]] = None,
) -> Starlette:
    """Create the Starlette app that serves the remote receipt store.

    Requests are GET-only: `?payload=<json>&callback=<name>`. The answer is
    wrapped as `name(<json>)` when a callback is given, plain JSON otherwise.
    """

    if store is None:
        store = SheetStore(root_dir=find_project_root(root_dir))

    async def execute(request: Request) -> Response:
        qp = request.query_params
        callback = qp.get("callback") or None
        if callback and not _CALLBACK_RE.match(callback):
            return JSONResponse({"error": "Invalid callback name"}, status_code=400)
        try:
            payload = _decode_payload(qp.get("payload"))
            body = dispatch(store, payload)
        except ValidationError as exc:
            LOG.warning(f"Rejected request: {exc}")
            body = {"error": str(exc)}
            if exc.details:
                body["details"] = exc.details
        except sqlite3.Error as exc:
            LOG.exception(f"Storage failure while handling {qp.get('payload', '')[:200]!r}")
            body = {"error": "Storage failure", "details": str(exc)}
        return _respond(body, callback)

    async def health(_: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "db_path": store.db_path})

    routes = [
        Route("/exec", execute, methods=["GET"]),
        Route("/", execute, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
    ]

    app = Starlette(debug=False, routes=routes)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins or ["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    LOG.info("Remote receipt store app ready")
    return app


__all__ = ["create_app", "dispatch"]
