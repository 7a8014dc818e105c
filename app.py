"""Command line entry point for the vehicle maintenance sync tools."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Optional

from core.entities import COLLECTIONS, vehicle_label
from core.errors import ValidationError
from core.logging_config import configure_logging
from core.reports import (
    DATE_RANGES,
    EXPORT_FORMATS,
    date_range,
    default_export_filename,
    expiry_alerts,
    export_rows,
    filter_receipts,
    receipt_totals,
    write_export,
)
from core.scheduler import SyncScheduler
from core.sync_engine import SyncEngine, SyncResult, build_engine
from core.timestamps import format_iso, parse_timestamp
from core.version import __version__
from settings import load_backend_settings, load_client_settings

logger = logging.getLogger(__name__)


def _engine() -> SyncEngine:
    return build_engine(load_client_settings())


def _print_result(result: SyncResult) -> None:
    if result.skipped:
        print(f"Sync skipped: {result.reason}")
        return
    if result.replayed:
        print(f"Replayed {result.replayed} queued change(s)")
    for item in result.collections.values():
        if item.skipped:
            print(f"  {item.name:<12} skipped (already running)")
        elif item.ok:
            print(f"  {item.name:<12} {item.pulled} pulled, {item.total} stored")
        else:
            print(f"  {item.name:<12} FAILED: {item.message}")
    print("Sync complete." if result.ok else "Sync finished with errors.")


def command_serve(args: argparse.Namespace) -> int:
    from backend.web import create_app_from_settings

    settings = load_backend_settings()
    host = args.host or settings.host
    port = args.port or settings.port
    app = create_app_from_settings(settings)
    logger.info("Serving %s store on %s:%s", settings.store, host, port)
    app.run(host=host, port=port)
    return 0


def command_sync(args: argparse.Namespace) -> int:
    engine = _engine()
    if not args.watch:
        result = engine.sync_all()
        _print_result(result)
        return 0 if result.ok else 1

    settings = load_client_settings()
    scheduler = SyncScheduler(
        engine,
        interval_seconds=settings.sync_interval_seconds,
        stale_after_seconds=settings.stale_after_seconds,
        background=False,
        status_callback=lambda status, payload: print(f"[{status}] {payload.get('reason', '')}".rstrip()),
    )
    result = scheduler.handle_online()
    if result is not None:
        _print_result(result)
    scheduler.start()
    print(f"Watching; syncing every {settings.sync_interval_seconds}s. Press Ctrl+C to stop.")
    try:
        while True:
            # Wake periodically so Ctrl+C is handled promptly on every platform.
            scheduler.join(1.0)
    except KeyboardInterrupt:
        print("Stopping.")
    finally:
        scheduler.stop()
    return 0


def command_set_url(args: argparse.Namespace) -> int:
    engine = _engine()
    url = (args.url or "").strip()
    engine.set_backend_url(url or None)
    print(f"Backend URL set to: {url}" if url else "Backend URL cleared.")
    return 0


def command_status(args: argparse.Namespace) -> int:
    engine = _engine()
    print(f"Backend URL : {engine.backend_url or 'not configured'}")
    last = parse_timestamp(engine.last_sync)
    print(f"Last sync   : {format_iso(last) if last else 'never'}")
    print(f"Online      : {'yes' if engine.online else 'no'}")
    for spec in COLLECTIONS:
        print(f"  {spec.name:<12} {len(engine.get_collection(spec.name))} record(s)")
    print(f"Pending     : {len(engine.pending_mutations())} queued change(s)")
    totals = receipt_totals(engine.get_collection("receipts"))
    print(
        f"Spending    : ${totals.total:,.2f} total, "
        f"${totals.this_month:,.2f} this month, ${totals.this_year:,.2f} this year"
    )
    vehicles = engine.get_collection("vehicles")
    for vehicle, document, status in expiry_alerts(vehicles):
        label = vehicle_label(vehicles, vehicle.get("vehicle_id"))
        print(f"  ! {label}: {document} {status.text.lower()}")
    return 0


def command_install(args: argparse.Namespace) -> int:
    from backend.web import build_router

    router = build_router(load_backend_settings())
    response = router.route("POST", "install")
    if response.status != 200 or not response.body:
        message = response.body.get("message") if response.body else response.status
        print(f"Error: {message}", file=sys.stderr)
        return 1
    for item in response.body["data"]["collections"]:
        print(f"Ready: {item['name']} ({len(item['columns'])} columns)")
    return 0


def command_export(args: argparse.Namespace) -> int:
    engine = _engine()
    try:
        start, end = date_range(args.range, start=args.start, end=args.end)
    except ValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    receipts = filter_receipts(engine.get_collection("receipts"), start, end)
    if not receipts:
        print("No receipts to export for selected date range")
        return 1
    rows = export_rows(receipts, engine.get_collection("vehicles"))
    target = Path(args.output) if args.output else Path.cwd() / default_export_filename(args.format)
    try:
        write_export(rows, target, args.format)
    except OSError as exc:
        print(f"Error: Failed to export receipts: {exc}", file=sys.stderr)
        return 1
    print(f"Exported {len(rows)} receipts to {target}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vehicle maintenance sync tool")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the backend web service")
    serve_parser.add_argument("--host", help="Interface to bind (defaults to the backend settings)")
    serve_parser.add_argument("--port", type=int, help="Port to listen on")
    serve_parser.set_defaults(func=command_serve)

    sync_parser = subparsers.add_parser("sync", help="Synchronise the local copy with the backend")
    sync_parser.add_argument("--watch", action="store_true", help="Keep running and sync on a timer")
    sync_parser.set_defaults(func=command_sync)

    url_parser = subparsers.add_parser("set-url", help="Store the backend base URL")
    url_parser.add_argument("url", nargs="?", default="", help="Backend URL; omit to clear it")
    url_parser.set_defaults(func=command_set_url)

    status_parser = subparsers.add_parser("status", help="Show sync status and local record counts")
    status_parser.set_defaults(func=command_status)

    install_parser = subparsers.add_parser("install", help="Create the backend tables or worksheets")
    install_parser.set_defaults(func=command_install)

    export_parser = subparsers.add_parser("export", help="Export receipts to CSV or JSON")
    export_parser.add_argument("--format", choices=EXPORT_FORMATS, default="csv", help="Output format")
    export_parser.add_argument("--range", choices=DATE_RANGES, default="all", help="Receipt date range")
    export_parser.add_argument("--start", type=date.fromisoformat, help="First day of a custom range (YYYY-MM-DD)")
    export_parser.add_argument("--end", type=date.fromisoformat, help="Last day of a custom range (YYYY-MM-DD)")
    export_parser.add_argument("-o", "--output", help="Destination file (defaults to receipts_export_<date>.<format>)")
    export_parser.set_defaults(func=command_export)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
