from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import os
import sys
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from ..domain.codec import receipt_to_dict
from ..domain.models import STATUS_ERROR, Receipt
from ..domain.normalize import normalize_name
from ..errors import ExtractionError
from ..logging import get_logger, set_level
from ..tracker import Tracker, build_tracker_config

LOG = get_logger("cli-main")

Body = Callable[[Tracker, argparse.Namespace], Awaitable[int]]


def _money(value: float) -> str:
    return f"R$ {value:,.2f}"


def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2))


def _print_receipt(r: Receipt) -> None:
    d = r.details
    store = d.store_name if d else "-"
    total = _money(d.total_amount) if d else "-"
    when = (d.date if d else "") or "-"
    sync = "syncing" if r.syncing else ("synced" if r.is_synced else "local")
    line = f"{r.id[:8]}  {r.status:<10}  {when:<19}  {store[:32]:<32}  {total:>12}  {sync}"
    error = getattr(r, "error", None)
    if error:
        line += f"  ({error})"
    print(line)


def _resolve(tracker: Tracker, prefix: str) -> Optional[Receipt]:
    """Find a receipt by full id or unique id prefix."""
    exact = tracker.store.get(prefix)
    if exact is not None:
        return exact
    matches = [r for r in tracker.store.receipts if r.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        LOG.error(f"No receipt matches id {prefix!r}")
    else:
        LOG.error(f"Id prefix {prefix!r} is ambiguous ({len(matches)} matches)")
    return None


def _with_tracker(body: Body) -> Callable[[argparse.Namespace], int]:
    def handler(ns: argparse.Namespace) -> int:
        config = build_tracker_config(ns, script_dir=os.getcwd())
        tracker = Tracker(config)

        async def run() -> int:
            await tracker.start()
            try:
                return await body(tracker, ns)
            finally:
                await tracker.close()

        return asyncio.run(run())

    return handler


# ---------- receipts ----------
async def _add(tracker: Tracker, ns: argparse.Namespace) -> int:
    added = [r for r in (tracker.store.add_receipt(url) for url in ns.urls) if r is not None]
    if not added:
        LOG.warning("Nothing queued (empty or already tracked URLs)")
        return 1
    await tracker.store.wait_idle()
    for r in added:
        current = tracker.store.get(r.id)
        if current is not None:
            _print_receipt(current)
    return 0


async def _photo(tracker: Tracker, ns: argparse.Namespace) -> int:
    try:
        photo = await asyncio.to_thread(_encode_photo, ns.path)
    except ExtractionError as exc:
        LOG.error(str(exc))
        return 1
    receipt = await tracker.store.add_receipt_from_photo(photo)
    await tracker.store.wait_idle()
    current = tracker.store.get(receipt.id) if receipt is not None else None
    if current is None:
        return 1
    _print_receipt(current)
    return 0 if current.status != STATUS_ERROR else 1


def _encode_photo(path: str) -> str:
    from ..extraction.gateway import encode_photo

    return encode_photo(path)


async def _list(tracker: Tracker, ns: argparse.Namespace) -> int:
    receipts = tracker.store.receipts
    if ns.json:
        _print_json([receipt_to_dict(r, include_flags=True) for r in receipts])
        return 0
    for r in receipts:
        _print_receipt(r)
    if tracker.bridge.connection_error:
        LOG.warning(tracker.bridge.connection_error)
    return 0


async def _process(tracker: Tracker, ns: argparse.Namespace) -> int:
    failed = [r for r in tracker.store.receipts if r.status == STATUS_ERROR and r.url]
    if not failed:
        LOG.info("No failed receipts to process again")
        return 0
    for r in failed:
        tracker.store.reprocess_receipt(r.id)
    await tracker.store.wait_idle()
    for r in failed:
        current = tracker.store.get(r.id)
        if current is not None:
            _print_receipt(current)
    return 0


async def _reprocess(tracker: Tracker, ns: argparse.Namespace) -> int:
    r = _resolve(tracker, ns.id)
    if r is None:
        return 1
    tracker.store.reprocess_receipt(r.id)
    await tracker.store.wait_idle()
    current = tracker.store.get(r.id)
    if current is not None:
        _print_receipt(current)
    return 0


async def _delete(tracker: Tracker, ns: argparse.Namespace) -> int:
    r = _resolve(tracker, ns.id)
    if r is None:
        return 1
    tracker.store.delete_receipt(r.id)
    await tracker.store.wait_idle()
    return 0


async def _retry_sync(tracker: Tracker, ns: argparse.Namespace) -> int:
    r = _resolve(tracker, ns.id)
    if r is None:
        return 1
    ok = await tracker.store.retry_sync(r.id)
    LOG.info(f"Sync of {r.id}: {'ok' if ok else 'not synced'}")
    return 0 if ok else 1


async def _set_payer(tracker: Tracker, ns: argparse.Namespace) -> int:
    r = _resolve(tracker, ns.id)
    if r is None:
        return 1
    tracker.store.update_receipt(dataclasses.replace(r, payer=ns.payer or None))
    await tracker.store.wait_idle()
    return 0


async def _set_address(tracker: Tracker, ns: argparse.Namespace) -> int:
    count = tracker.store.update_store_address(ns.cnpj, ns.address)
    await tracker.store.wait_idle()
    LOG.info(f"Updated address on {count} receipt(s)")
    return 0 if count else 1


async def _set_url(tracker: Tracker, ns: argparse.Namespace) -> int:
    r = _resolve(tracker, ns.id)
    if r is None:
        return 1
    tracker.store.update_receipt_url(r.id, ns.url)
    return 0


# ---------- remote ----------
async def _configure(tracker: Tracker, ns: argparse.Namespace) -> int:
    if ns.clear:
        await tracker.clear_remote()
        print("Remote store URL cleared.")
        return 0
    if not ns.url:
        LOG.error("Provide a URL or --clear")
        return 2
    ok, message = await tracker.configure_remote(ns.url)
    print(message)
    return 0 if ok else 1


async def _sync(tracker: Tracker, ns: argparse.Namespace) -> int:
    results = await tracker.store.sync_local_data_to_remote()
    _print_json(results)
    return 0 if all(results.values()) else 1


async def _migrate(tracker: Tracker, ns: argparse.Namespace) -> int:
    result = await tracker.migrate()
    if not result or not result.get("success"):
        LOG.error("Migration failed or there was nothing to migrate.")
        return 1
    print(result.get("message") or "Migration finished.")
    return 0


# ---------- analytics ----------
async def _stats(tracker: Tracker, ns: argparse.Namespace) -> int:
    snap = tracker.analytics.snapshot
    print(f"Receipts            : {snap.total_receipts}")
    print(f"Total spent         : {_money(snap.total_spent)}")
    print(f"Average per receipt : {_money(snap.average_per_receipt)}")
    print("\nBy month:")
    for m in snap.spending_by_month:
        print(f"  {m.month}  {_money(m.total):>14}")
    print("\nBy category:")
    for c in snap.spending_by_category:
        print(f"  {c.category:<24}{_money(c.total):>14}")
    print("\nBy payer:")
    for p in snap.spending_by_payer:
        print(f"  {p.payer:<24}{_money(p.total):>14}")
    recurring = tracker.analytics.recurring_items()
    if recurring:
        print("\nRecurring items: " + ", ".join(recurring))
    return 0


async def _prices(tracker: Tracker, ns: argparse.Namespace) -> int:
    key = normalize_name(ns.name)
    stats = tracker.analytics.snapshot.product_stats.get(key)
    if stats is None:
        LOG.error(f"No purchases found for {ns.name!r}")
        return 1
    print(f"{stats.name} ({stats.category})")
    print(f"  purchases : {stats.purchase_count}")
    print(f"  average   : {_money(stats.average_price)}")
    print(f"  min / max : {_money(stats.min_price)} / {_money(stats.max_price)}")
    print(f"  last      : {_money(stats.last_price)}")
    product = next(p for p in tracker.analytics.snapshot.products if normalize_name(p.name) == key)
    for pu in product.purchases:
        print(f"    {pu.date:<19}  {pu.store_name[:32]:<32}  {_money(pu.unit_price):>12} / {pu.unit}")
    return 0


async def _simulate(tracker: Tracker, ns: argparse.Namespace) -> int:
    results = tracker.analytics.simulate_shopping_list(ns.items)
    if not results:
        LOG.warning("None of the requested items was found in any store")
        return 1
    for res in results:
        missing = f"  missing: {', '.join(res.missing_items)}" if res.missing_items else ""
        print(f"{res.store_name[:32]:<32}  {res.found_items}/{len(set(map(normalize_name, ns.items)))}  {_money(res.total):>12}{missing}")
    return 0


async def _stores(tracker: Tracker, ns: argparse.Namespace) -> int:
    if ns.geocode:
        for loc in await tracker.locate_stores():
            coords = f"{loc.coordinates.lat:.5f},{loc.coordinates.lon:.5f}" if loc.coordinates else "-"
            print(f"{loc.store.store_name[:32]:<32}  {coords:<22}  {loc.store.store_address}")
        return 0
    for s in tracker.analytics.snapshot.stores:
        print(
            f"{s.store_name[:32]:<32}  {s.receipt_count:>3} receipt(s)  {_money(s.total_spent):>12}  "
            f"avg {_money(s.average_receipt_total)}  {s.first_purchase_date} .. {s.last_purchase_date}"
        )
    return 0


async def _ask(tracker: Tracker, ns: argparse.Namespace) -> int:
    question = " ".join(ns.question)

    def stream() -> None:
        for piece in tracker.ask(question):
            sys.stdout.write(piece)
            sys.stdout.flush()
        sys.stdout.write("\n")

    try:
        await asyncio.to_thread(stream)
    except ExtractionError as exc:
        LOG.error(str(exc))
        return 1
    return 0


def _serve(ns: argparse.Namespace) -> int:
    from ..remote.app import create_app
    import uvicorn

    allow_origins = ns.allow_origins
    app = create_app(root_dir=os.getcwd(), allow_origins=allow_origins)
    LOG.info(f"Remote store endpoint: http://{ns.host}:{ns.port}/exec")
    uvicorn.run(app, host=ns.host, port=ns.port, log_level=ns.log_level)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nfce-tracker",
        description="Track NFC-e receipts: AI extraction, local/remote storage and spending analytics.",
    )
    parser.add_argument("--script-url", help="Remote store URL for this run (defaults to the saved one or env/.env)")
    parser.add_argument("--model", help="OpenAI model (defaults to OPENAI_MODEL or gpt-4o-mini)")
    parser.add_argument("--timeout", type=int, help="HTTP timeout in seconds (defaults to NFCE_HTTP_TIMEOUT or 30)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging (overrides LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    def cmd(name: str, body: Body, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.set_defaults(handler=_with_tracker(body))
        return p

    p = cmd("add", _add, "Queue receipt URLs and process them")
    p.add_argument("urls", nargs="+", metavar="URL")

    p = cmd("photo", _photo, "Read the receipt URL from a photo and process it")
    p.add_argument("path")

    p = cmd("list", _list, "List receipts, newest first")
    p.add_argument("--json", action="store_true", help="Print the receipts as JSON")

    cmd("process", _process, "Process every failed receipt again")

    p = cmd("reprocess", _reprocess, "Process one receipt again")
    p.add_argument("id")

    p = cmd("delete", _delete, "Delete a receipt")
    p.add_argument("id")

    p = cmd("retry-sync", _retry_sync, "Save one unsynced receipt to the remote store")
    p.add_argument("id")

    p = cmd("set-payer", _set_payer, "Set who paid for a receipt")
    p.add_argument("id")
    p.add_argument("payer")

    p = cmd("set-address", _set_address, "Rewrite the address of every receipt of a store")
    p.add_argument("cnpj")
    p.add_argument("address")

    p = cmd("set-url", _set_url, "Replace the URL of a receipt (local only)")
    p.add_argument("id")
    p.add_argument("url")

    p = cmd("configure", _configure, "Save the remote store URL and sync local receipts to it")
    p.add_argument("url", nargs="?")
    p.add_argument("--clear", action="store_true", help="Forget the saved URL and use local storage")

    cmd("sync", _sync, "Save every unsynced receipt to the remote store")
    cmd("migrate", _migrate, "Rebuild the remote item rows from the stored receipts")
    cmd("stats", _stats, "Spending totals by month, category and payer")

    p = cmd("prices", _prices, "Price history of one product")
    p.add_argument("name")

    p = cmd("simulate", _simulate, "Compare a shopping list across stores")
    p.add_argument("items", nargs="+", metavar="ITEM")

    p = cmd("stores", _stores, "Spending per store")
    p.add_argument("--geocode", action="store_true", help="Look up store coordinates")

    p = cmd("ask", _ask, "Ask the AI assistant about your spending")
    p.add_argument("question", nargs="+")

    serve = sub.add_parser("serve", help="Run the remote receipt store server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8002)
    serve.add_argument("--log-level", default="info")
    serve.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )
    serve.set_defaults(handler=_serve)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    provided: List[str] = list(argv) if argv is not None else sys.argv[1:]
    LOG.debug(f"CLI invoked with arguments: {provided}")
    parser = _build_parser()
    args = parser.parse_args(provided)
    if args.verbose:
        set_level("DEBUG")
    code = args.handler(args)
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
