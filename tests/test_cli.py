from __future__ import annotations

import asyncio
from datetime import date
from unittest.mock import MagicMock

from tixr_etl import cli
from tixr_etl.core.config import Settings
from tixr_etl.core.models import EventRecord, SalesSummary
from tixr_etl.storage import google_sheets


def test_parser_commands():
    parser = cli.build_parser()

    args = parser.parse_args(["orders", "--force", "1", "2"])
    assert args.command == "orders" and args.force and args.ids == ["1", "2"]

    args = parser.parse_args(["sync"])
    assert cli._target(args.ids) == "all"

    args = parser.parse_args(["sales", "42"])
    assert args.event_id == 42


def test_missing_configuration_exits_before_any_work(monkeypatch):
    monkeypatch.setattr(cli, "settings", Settings(tixr_cpk="", tixr_secret_key=""))
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    run = MagicMock()
    monkeypatch.setattr(cli, "run", run)

    assert cli.main(["upcoming"]) == 2
    assert run.call_count == 0


def test_sales_rows_join_upcoming_events_with_summary(store):
    engine = MagicMock()
    engine.store = store

    async def upcoming(limit=None):
        return [{"id": 1, "name": "Bicep", "date": date(2025, 3, 1)},
                {"id": 2, "name": "Kaytranada", "date": date(2025, 4, 1)}]

    engine.list_upcoming_events = upcoming

    async def scenario():
        await store.upsert_events([EventRecord(event_id=1, event_name="Bicep", event_date=date(2025, 3, 1))])
        await store.upsert_sales(SalesSummary(event_id=1, sales_total_ga=5, sales_gross=100))
        return await cli.sales_rows(engine)

    rows = asyncio.run(scenario())
    assert rows[0]["sales_total_ga"] == 5
    assert rows[0]["sales_gross"] == 100.0
    assert "sales_total_ga" not in rows[1]

    matrix = google_sheets.rows_to_matrix(rows)
    assert matrix[0][:3] == [1, "Bicep", "2025-03-01"]
    assert matrix[1][3] == ""


def test_export_rewrites_worksheet(monkeypatch):
    client = MagicMock()
    ws = client.open.return_value.worksheet.return_value
    monkeypatch.setattr(google_sheets, "_ensure_client", lambda: client)
    monkeypatch.setattr(google_sheets, "settings", Settings(gsheet_id="", gsheet_worksheet="sales"))

    written = asyncio.run(google_sheets.export_sales_to_gsheet([{"event_id": 1, "event_name": "Bicep"}]))

    assert written == 1
    ws.clear.assert_called_once()
    ws.update.assert_any_call(values=[google_sheets.HEADERS], range_name="A1")
