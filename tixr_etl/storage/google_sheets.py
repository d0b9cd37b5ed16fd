# tixr_etl/storage/google_sheets.py
import asyncio
import logging
import os
from datetime import date, datetime
from typing import Any, Dict, List

import gspread
from google.oauth2.service_account import Credentials

from tixr_etl.core.config import settings

log = logging.getLogger(__name__)

_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.file",
]

# Ordre de colonnes de l'onglet ventes
HEADERS = [
    "event_id",
    "event_name",
    "event_date",
    "sales_total_ga",
    "sales_total_vip",
    "sales_total_coatcheck",
    "sales_total_comp_ga",
    "sales_total_comp_vip",
    "sales_total_free_ga",
    "sales_total_free_vip",
    "sales_gross",
    "sales_net",
]

_client = None


def _cell(v: Any) -> Any:
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return "" if v is None else v


def _ensure_client():
    global _client
    if _client is not None:
        return _client

    sa_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "")
    if not sa_path or not os.path.exists(sa_path):
        raise RuntimeError(
            "GOOGLE_APPLICATION_CREDENTIALS introuvable : chemin du JSON du compte de service requis."
        )

    creds = Credentials.from_service_account_file(sa_path, scopes=_SCOPES)
    _client = gspread.authorize(creds)
    return _client


def _open_spreadsheet(client):
    if settings.gsheet_id:
        try:
            return client.open_by_key(settings.gsheet_id)
        except gspread.SpreadsheetNotFound:
            log.warning("GSHEET_ID introuvable, repli sur le titre %r", settings.gsheet_doc_title)
    # fallback par titre (doit être partagé avec le compte de service)
    return client.open(settings.gsheet_doc_title)


def _get_or_create_worksheet(sh, title: str):
    try:
        return sh.worksheet(title)
    except gspread.WorksheetNotFound:
        return sh.add_worksheet(title=title, rows=1000, cols=len(HEADERS))


def rows_to_matrix(rows: List[Dict[str, Any]]) -> List[List[Any]]:
    return [[_cell(r.get(h)) for h in HEADERS] for r in rows]


async def export_sales_to_gsheet(rows: List[Dict[str, Any]]) -> int:
    """
    Réécrit l'onglet ventes (clear + rewrite).
    `rows` = un dict par événement : event_id, event_name, event_date + cases de ventes.
    Retourne le nombre de lignes écrites.
    """
    matrix = rows_to_matrix(rows)

    def _blocking() -> None:
        sh = _open_spreadsheet(_ensure_client())
        ws = _get_or_create_worksheet(sh, settings.gsheet_worksheet)
        ws.clear()
        ws.update(values=[HEADERS], range_name="A1")
        if matrix:
            ws.update(values=matrix, range_name="A2")

    await asyncio.to_thread(_blocking)
    log.info("Google Sheet: %s lignes écrites", len(matrix), extra={"worksheet": settings.gsheet_worksheet})
    return len(matrix)
