from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from tixr_etl.adapters import TixrClient
from tixr_etl.core.config import ConfigError, settings
from tixr_etl.core.logging import configure_logging
from tixr_etl.core.models import SALES_BUCKETS, SyncReport
from tixr_etl.core.sync import ALL, SyncEngine
from tixr_etl.storage.sqlite_store import SqliteStore

log = logging.getLogger(__name__)


def _target(ids: List[str]) -> Any:
    if not ids or ids == [ALL]:
        return ALL
    return ids


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _report(report: SyncReport) -> Dict[str, Any]:
    return report.model_dump(exclude={"results"})


async def sales_rows(engine: SyncEngine, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Événements à venir + leur agrégat, une ligne par événement (export Sheet)."""
    rows: List[Dict[str, Any]] = []
    for ev in await engine.list_upcoming_events(limit):
        summary = await engine.store.get_sales(ev["id"])
        row = {"event_id": ev["id"], "event_name": ev["name"], "event_date": ev["date"]}
        if summary is not None:
            row.update(summary.model_dump(include=set(SALES_BUCKETS) | {"sales_gross", "sales_net"}))
        rows.append(row)
    return rows


async def run(args: argparse.Namespace) -> int:
    store = SqliteStore(settings.database_path, batch_size=settings.db_batch_size)
    try:
        async with TixrClient.from_settings(settings) as client:
            engine = SyncEngine.from_settings(settings, client=client, store=store)

            if args.command == "events":
                _print(_report(await engine.sync_events(_target(args.ids))))
            elif args.command == "orders":
                ids = None if not args.ids or args.ids == [ALL] else args.ids
                _print(_report(await engine.sync_orders(ids, force=args.force)))
            elif args.command == "sync":
                events, orders = await engine.sync(_target(args.ids), force=args.force)
                _print({"events": _report(events), "orders": _report(orders)})
            elif args.command == "upcoming":
                _print(await engine.list_upcoming_events(None if args.all else args.limit))
            elif args.command == "sales":
                summary = await engine.get_sales_summary(args.event_id)
                if summary is None:
                    print(f"Aucune donnée de ventes pour l'événement {args.event_id}")
                    return 1
                _print(summary.model_dump())
            elif args.command == "export-sheet":
                # import tardif : gspread n'est utile qu'ici
                from tixr_etl.storage.google_sheets import export_sales_to_gsheet
                written = await export_sales_to_gsheet(await sales_rows(engine))
                print(f"{written} lignes exportées")
    finally:
        store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tixr-etl", description="Synchro Tixr : événements, commandes, ventes")
    parser.add_argument("--log-level", default=settings.log_level, help="DEBUG, INFO, WARNING…")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("events", help="Synchro des métadonnées d'événements")
    p.add_argument("ids", nargs="*", default=[ALL], help="'all' ou identifiants d'événements")

    p = sub.add_parser("orders", help="Synchro des commandes (sans identifiant : mode update)")
    p.add_argument("ids", nargs="*", help="identifiants d'événements")
    p.add_argument("--force", action="store_true", help="supprime puis resynchronise toutes les commandes")

    p = sub.add_parser("sync", help="Événements puis commandes")
    p.add_argument("ids", nargs="*", default=[ALL], help="'all' ou identifiants d'événements")
    p.add_argument("--force", action="store_true")

    p = sub.add_parser("upcoming", help="Événements à venir")
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--all", action="store_true", help="sans limite")

    p = sub.add_parser("sales", help="Agrégat de ventes d'un événement")
    p.add_argument("event_id", type=int)

    sub.add_parser("export-sheet", help="Export des ventes à venir vers Google Sheets")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper())
    try:
        settings.validate()
    except ConfigError as e:
        log.error("%s", e)
        return 2
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
