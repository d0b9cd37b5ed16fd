import asyncio
import json
import logging
import sqlite3
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from tixr_etl.core.freshness import parse_date, parse_timestamp
from tixr_etl.core.orders import parse_serials
from tixr_etl.core.models import (
    SALES_BUCKETS,
    EventRecord,
    EventStatus,
    InsertResult,
    OrderLine,
    SalesSummary,
)

log = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
READ_PAGE_SIZE = 1000

ORDER_COLUMNS = (
    "event_id", "order_sale_id", "order_tier_id", "order_category", "order_quantity",
    "order_sales_item_name", "order_serials", "order_name", "order_gross", "order_net",
    "order_purchase_date", "order_ref", "order_ref_type", "order_card_type", "order_user_agent",
)
SALES_COLUMNS = ("event_id",) + SALES_BUCKETS + ("sales_gross", "sales_net")

OrderKey = Tuple[Optional[str], Optional[str]]


def _chunks(rows: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


def _iso(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v else None


class SqliteStore:
    """
    Tables events / events_orders / events_sales.

    Les appels sqlite sont bloquants : ils passent par asyncio.to_thread, un
    verrou sérialise l'accès à l'unique connexion.
    """

    def __init__(self, db_path: Path, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self.batch_size = batch_size
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        _create_schema(self._conn)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        def locked() -> Any:
            with self._lock:
                return fn(*args)
        return await asyncio.to_thread(locked)

    # --- Events ---

    async def upsert_events(self, records: Sequence[EventRecord]) -> InsertResult:
        return await self._run(self._upsert_events, list(records))

    def _upsert_events(self, records: List[EventRecord]) -> InsertResult:
        result = InsertResult()
        for chunk in _chunks(records, self.batch_size):
            try:
                with self._conn:
                    self._conn.executemany(
                        """
                        INSERT INTO events (event_id, event_name, event_date, event_artist,
                                            event_status, event_flyer, event_updated)
                        VALUES (:event_id, :event_name, :event_date, :event_artist,
                                :event_status, :event_flyer, :event_updated)
                        ON CONFLICT(event_id) DO UPDATE SET
                            event_name    = excluded.event_name,
                            event_date    = excluded.event_date,
                            event_artist  = excluded.event_artist,
                            event_status  = excluded.event_status,
                            event_flyer   = excluded.event_flyer,
                            event_updated = excluded.event_updated
                        """,
                        [_event_params(r) for r in chunk],
                    )
                result.inserted += len(chunk)
            except sqlite3.Error:
                log.exception("Upsert events: lot en échec", extra={"rows": len(chunk)})
                result.failed_batches += 1
                result.failed_rows += len(chunk)
        return result

    async def get_event(self, event_id: int) -> Optional[EventRecord]:
        def q() -> Optional[EventRecord]:
            row = self._conn.execute("SELECT * FROM events WHERE event_id = ?", (event_id,)).fetchone()
            return _row_to_event(row) if row else None
        return await self._run(q)

    async def all_events(self) -> List[EventRecord]:
        def q() -> List[EventRecord]:
            rows = self._conn.execute("SELECT * FROM events ORDER BY event_id").fetchall()
            return [_row_to_event(r) for r in rows]
        return await self._run(q)

    async def upcoming_events(self, today: date, limit: Optional[int] = None) -> List[EventRecord]:
        def q() -> List[EventRecord]:
            sql = "SELECT * FROM events WHERE event_date >= ? ORDER BY event_date, event_id"
            params: Tuple[Any, ...] = (today.isoformat(),)
            if limit:
                sql += " LIMIT ?"
                params += (limit,)
            return [_row_to_event(r) for r in self._conn.execute(sql, params).fetchall()]
        return await self._run(q)

    async def distinct_artists(self) -> List[str]:
        def q() -> List[str]:
            rows = self._conn.execute(
                "SELECT event_artist FROM events WHERE event_artist IS NOT NULL "
                "GROUP BY event_artist ORDER BY MIN(event_id)"
            ).fetchall()
            return [r["event_artist"] for r in rows if r["event_artist"]]
        return await self._run(q)

    async def stamp_order_sync(self, event_id: int, ts: datetime) -> None:
        def q() -> None:
            with self._conn:
                self._conn.execute(
                    "UPDATE events SET event_order_updated = ? WHERE event_id = ?", (ts.isoformat(), event_id)
                )
        await self._run(q)

    # --- Orders ---

    def _existing_order_keys(self, event_id: int) -> Set[OrderKey]:
        rows = self._conn.execute(
            "SELECT order_name, order_sale_id FROM events_orders WHERE event_id = ?", (event_id,)
        ).fetchall()
        return {(r["order_name"], r["order_sale_id"]) for r in rows}

    async def insert_orders(self, lines: Sequence[OrderLine]) -> InsertResult:
        return await self._run(self._insert_orders, list(lines))

    def _insert_orders(self, lines: List[OrderLine]) -> InsertResult:
        result = InsertResult()
        if not lines:
            return result

        seen: Set[OrderKey] = set()
        for event_id in {l.event_id for l in lines}:
            seen |= self._existing_order_keys(event_id)

        to_insert: List[OrderLine] = []
        for line in lines:
            if line.key in seen:
                result.skipped += 1
                continue
            seen.add(line.key)
            to_insert.append(line)

        for n, chunk in enumerate(_chunks(to_insert, self.batch_size), 1):
            try:
                written = self._insert_chunk(chunk)
            except sqlite3.Error:
                # pas de transaction inter-lots : les lots précédents restent écrits
                log.exception("Insert orders: lot %s en échec", n, extra={"rows": len(chunk)})
                result.failed_batches += 1
                result.failed_rows += len(chunk)
                continue
            result.inserted += written
            result.skipped += len(chunk) - written
        return result

    def _insert_chunk(self, chunk: Sequence[OrderLine]) -> int:
        placeholders = ", ".join(f":{c}" for c in ORDER_COLUMNS)
        with self._conn:
            cur = self._conn.executemany(
                f"""
                INSERT INTO events_orders ({", ".join(ORDER_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(order_name, order_sale_id) DO NOTHING
                """,
                [_order_params(l) for l in chunk],
            )
        return max(cur.rowcount, 0)

    async def delete_orders(self, event_id: int) -> int:
        """
        Seule opération destructive : resynchro forcée d'un événement.
        L'horodatage des commandes est effacé dans la même transaction : tout
        échec après la suppression laisse l'événement à resynchroniser en entier.
        """
        log.warning("Suppression de toutes les commandes avant resynchro forcée", extra={"event_id": event_id})

        def q() -> int:
            with self._conn:
                cur = self._conn.execute("DELETE FROM events_orders WHERE event_id = ?", (event_id,))
                self._conn.execute("UPDATE events SET event_order_updated = NULL WHERE event_id = ?", (event_id,))
            return cur.rowcount
        deleted = await self._run(q)
        log.warning("%s lignes supprimées", deleted, extra={"event_id": event_id})
        return deleted

    async def count_orders(self, event_id: int) -> int:
        def q() -> int:
            return self._conn.execute(
                "SELECT COUNT(*) FROM events_orders WHERE event_id = ?", (event_id,)
            ).fetchone()[0]
        return await self._run(q)

    async def iter_orders(self, event_id: int, page_size: int = READ_PAGE_SIZE) -> AsyncIterator[OrderLine]:
        """Lecture paginée de toutes les lignes d'un événement."""
        offset = 0
        while True:
            rows = await self._run(self._orders_page, event_id, page_size, offset)
            for r in rows:
                yield _row_to_order(r)
            if len(rows) < page_size:
                break
            offset += page_size

    def _orders_page(self, event_id: int, limit: int, offset: int) -> List[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM events_orders WHERE event_id = ? ORDER BY id LIMIT ? OFFSET ?",
            (event_id, limit, offset),
        ).fetchall()

    # --- Sales ---

    async def upsert_sales(self, summary: SalesSummary) -> None:
        """Écrasement complet de la ligne : jamais d'arithmétique sur l'ancien agrégat."""
        params = _sales_params(summary)
        updates = ", ".join(f"{c} = excluded.{c}" for c in SALES_COLUMNS[1:])

        def q() -> None:
            with self._conn:
                self._conn.execute(
                    f"""
                    INSERT INTO events_sales ({", ".join(SALES_COLUMNS)}, sales_updated)
                    VALUES ({", ".join(":" + c for c in SALES_COLUMNS)}, :sales_updated)
                    ON CONFLICT(event_id) DO UPDATE SET {updates}, sales_updated = excluded.sales_updated
                    """,
                    params,
                )
        await self._run(q)

    async def get_sales(self, event_id: int) -> Optional[SalesSummary]:
        def q() -> Optional[SalesSummary]:
            row = self._conn.execute("SELECT * FROM events_sales WHERE event_id = ?", (event_id,)).fetchone()
            return _row_to_sales(row) if row else None
        return await self._run(q)


# --- schéma & conversions ---

def _create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS events (
            event_id            INTEGER PRIMARY KEY,
            event_name          TEXT NOT NULL,
            event_date          TEXT NOT NULL,
            event_artist        TEXT,
            event_status        TEXT NOT NULL DEFAULT 'LIVE',
            event_flyer         TEXT,
            event_updated       TEXT,
            event_order_updated TEXT
        );

        CREATE TABLE IF NOT EXISTS events_orders (
            id                    INTEGER PRIMARY KEY AUTOINCREMENT,
            event_id              INTEGER NOT NULL REFERENCES events(event_id),
            order_sale_id         TEXT,
            order_tier_id         TEXT,
            order_category        TEXT,
            order_quantity        INTEGER,
            order_sales_item_name TEXT,
            order_serials         TEXT,
            order_name            TEXT,
            order_gross           REAL,
            order_net             REAL,
            order_purchase_date   TEXT,
            order_ref             TEXT,
            order_ref_type        TEXT,
            order_card_type       TEXT,
            order_user_agent      TEXT,
            UNIQUE(order_name, order_sale_id)
        );
        CREATE INDEX IF NOT EXISTS idx_events_orders_event ON events_orders(event_id);

        CREATE TABLE IF NOT EXISTS events_sales (
            event_id              INTEGER PRIMARY KEY REFERENCES events(event_id),
            sales_total_ga        INTEGER,
            sales_total_vip       INTEGER,
            sales_total_coatcheck INTEGER,
            sales_total_comp_ga   INTEGER,
            sales_total_comp_vip  INTEGER,
            sales_total_free_ga   INTEGER,
            sales_total_free_vip  INTEGER,
            sales_gross           REAL,
            sales_net             REAL,
            sales_updated         TEXT
        );
    """)
    conn.commit()


def _event_params(r: EventRecord) -> Dict[str, Any]:
    return {
        "event_id":     r.event_id,
        "event_name":   r.event_name,
        "event_date":   r.event_date.isoformat(),
        "event_artist": r.event_artist,
        "event_status": r.event_status.value,
        "event_flyer":  r.event_flyer,
        "event_updated": _iso(r.event_updated),
    }


def _row_to_event(row: sqlite3.Row) -> EventRecord:
    return EventRecord(
        event_id=row["event_id"],
        event_name=row["event_name"],
        event_date=parse_date(row["event_date"]),
        event_artist=row["event_artist"],
        event_status=EventStatus(row["event_status"]),
        event_flyer=row["event_flyer"],
        event_updated=parse_timestamp(row["event_updated"]),
        event_order_updated=parse_timestamp(row["event_order_updated"]),
    )


def _order_params(l: OrderLine) -> Dict[str, Any]:
    p = l.model_dump(include=set(ORDER_COLUMNS))
    p["order_serials"] = json.dumps(l.order_serials) if l.order_serials else None
    p["order_purchase_date"] = _iso(l.order_purchase_date)
    return p


def _row_to_order(row: sqlite3.Row) -> OrderLine:
    data = {c: row[c] for c in ORDER_COLUMNS}
    data["order_serials"] = parse_serials(row["order_serials"])
    data["order_purchase_date"] = parse_timestamp(row["order_purchase_date"])
    return OrderLine(**data)


def _sales_params(s: SalesSummary) -> Dict[str, Any]:
    # cases à zéro stockées NULL
    p = {c: (getattr(s, c) or None) for c in SALES_COLUMNS[1:]}
    p["event_id"] = s.event_id
    p["sales_updated"] = datetime.now(timezone.utc).isoformat()
    return p


def _row_to_sales(row: sqlite3.Row) -> SalesSummary:
    data = {c: row[c] for c in SALES_COLUMNS[1:] if row[c] is not None}
    return SalesSummary(event_id=row["event_id"], **data)
