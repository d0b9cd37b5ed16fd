# tixr_etl/core/sync.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar, Union
from zoneinfo import ZoneInfo

from tixr_etl.adapters.tixr import TixrClient
from tixr_etl.core.artists import extract_artist, should_exclude_event
from tixr_etl.core.config import Settings, settings as default_settings
from tixr_etl.core.freshness import event_status, needs_update, to_venue_date
from tixr_etl.core.matching import ArtistCache, ArtistMatcher
from tixr_etl.core.models import EventRecord, EventSyncResult, SalesSummary, SyncReport
from tixr_etl.core.orders import transform_orders
from tixr_etl.core.sales import recompute_sales
from tixr_etl.storage.sqlite_store import SqliteStore

log = logging.getLogger(__name__)

ALL = "all"
Target = Union[str, int, Iterable[Union[str, int]]]
T = TypeVar("T")
R = TypeVar("R")


def as_event_ids(target: Target) -> List[int]:
    if isinstance(target, (str, int)):
        target = [target]
    return [int(str(t).strip()) for t in target]


def _flyer(ev: Dict[str, Any]) -> Optional[str]:
    media = ev.get("media") or []
    first = media[0] if media and isinstance(media[0], dict) else {}
    return ev.get("flyer_url") or first.get("url") or None


class SyncEngine:
    """
    Orchestrateur : événements (statut, artiste) puis commandes → agrégat → horodatage.
    Chaque événement est une unité indépendante, bornée par un sémaphore.
    """

    def __init__(
        self,
        client: TixrClient,
        store: SqliteStore,
        matcher: Optional[ArtistMatcher] = None,
        *,
        concurrency: int = 10,
        venue_timezone: str = "America/Montreal",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.matcher = matcher or ArtistMatcher(ArtistCache(store.distinct_artists))
        self.concurrency = max(1, concurrency)
        self.venue_timezone = venue_timezone
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._event_locks: Dict[int, asyncio.Lock] = {}
        self._event_lock_users: Dict[int, int] = {}
        self._background: set = set()

    @classmethod
    def from_settings(cls, s: Settings = default_settings, *, client: Optional[TixrClient] = None,
                      store: Optional[SqliteStore] = None) -> "SyncEngine":
        store = store or SqliteStore(s.database_path, batch_size=s.db_batch_size)
        matcher = ArtistMatcher(ArtistCache(store.distinct_artists, ttl=s.artist_cache_ttl))
        return cls(
            client or TixrClient.from_settings(s),
            store,
            matcher,
            concurrency=s.sync_concurrency,
            venue_timezone=s.venue_timezone,
        )

    def _now(self) -> datetime:
        return self._clock()

    async def _bounded(self, items: Sequence[T], fn: Callable[[T], Awaitable[R]]) -> List[Union[R, BaseException]]:
        sem = asyncio.Semaphore(self.concurrency)

        async def run(item: T) -> R:
            async with sem:
                return await fn(item)

        return await asyncio.gather(*(run(i) for i in items), return_exceptions=True)

    # ------------------------- événements -------------------------

    async def sync_events(self, target: Target = ALL) -> SyncReport:
        report = SyncReport(mode="events", started_at=self._now())
        raw_events = await self._fetch_events(target, report)
        report.considered = len(raw_events)

        known = {e.event_id: e for e in await self.store.all_events()}
        todo: List[Dict[str, Any]] = []
        for ev in raw_events:
            if should_exclude_event(ev.get("name")):
                report.excluded += 1
                continue
            try:
                event_id = int(ev.get("id"))
            except (TypeError, ValueError):
                log.warning("Événement sans identifiant ignoré", extra={"event_name": ev.get("name")})
                report.failed += 1
                continue
            existing = known.get(event_id)
            if existing is not None:
                day = to_venue_date(ev.get("start_date"), self.venue_timezone) or existing.event_date
                if not needs_update(day, existing.event_updated):
                    report.up_to_date += 1
                    continue
            todo.append(ev)

        log.info("Synchro événements: %s à traiter", len(todo), extra={
            "considered": report.considered, "excluded": report.excluded, "up_to_date": report.up_to_date,
        })

        records: List[EventRecord] = []
        for ev, res in zip(todo, await self._bounded(todo, self._build_record)):
            if isinstance(res, BaseException):
                log.error("Préparation de l'événement %s échouée: %r", ev.get("id"), res)
                report.failed += 1
                report.errors[int(ev["id"])] = repr(res)
            else:
                records.append(res)

        if records:
            written = await self.store.upsert_events(records)
            report.synced = written.inserted
            report.failed += written.failed_rows
            # les nouveaux noms canoniques doivent être visibles au prochain passage
            self.matcher.cache.invalidate()

        report.finished_at = self._now()
        log.info("Synchro événements terminée", extra={"synced": report.synced, "failed": report.failed})
        return report

    async def _fetch_events(self, target: Target, report: SyncReport) -> List[Dict[str, Any]]:
        if target == ALL:
            return (await self.client.list_events()).records

        ids = as_event_ids(target)
        fetched = await self._bounded(ids, self.client.get_event)
        out: List[Dict[str, Any]] = []
        for event_id, res in zip(ids, fetched):
            if isinstance(res, BaseException):
                log.error("Événement %s: lecture Tixr échouée: %r", event_id, res)
                report.failed += 1
                report.errors[event_id] = repr(res)
            elif res is None:
                log.warning("Événement %s introuvable chez Tixr", event_id)
                report.failed += 1
                report.errors[event_id] = "introuvable"
            else:
                out.append(res)
        return out

    async def _build_record(self, ev: Dict[str, Any]) -> EventRecord:
        event_id = int(ev["id"])
        day = to_venue_date(ev.get("start_date"), self.venue_timezone)
        if day is None:
            raise ValueError(f"start_date illisible pour l'événement {event_id}: {ev.get('start_date')!r}")
        now = self._now()
        artist = await self.matcher.resolve(extract_artist(ev))
        return EventRecord(
            event_id=event_id,
            event_name=ev.get("name") or "",
            event_date=day,
            event_artist=artist,
            event_status=event_status(day, now),
            event_flyer=_flyer(ev),
            event_updated=now,
        )

    # ------------------------- commandes -------------------------

    async def sync_orders(self, event_ids: Optional[Target] = None, *, force: bool = False) -> SyncReport:
        """Sans identifiants : mode "update", tous les événements dont les commandes ne sont pas réglées."""
        report = SyncReport(mode="orders-force" if force else "orders", started_at=self._now())
        events = await self.store.all_events()

        if event_ids is None:
            work = [e for e in events if needs_update(e.event_date, e.event_order_updated)]
            report.up_to_date = len(events) - len(work)
        else:
            by_id = {e.event_id: e for e in events}
            work = []
            for event_id in as_event_ids(event_ids):
                if event_id in by_id:
                    work.append(by_id[event_id])
                else:
                    log.warning("Événement %s inconnu en base, synchro des événements requise", event_id)
                    report.failed += 1
                    report.errors[event_id] = "inconnu en base"

        report.considered = len(work)
        log.info("Synchro commandes: %s événements à traiter", len(work), extra={"force": force})

        results = await self._bounded(work, lambda e: self._isolated(e, force))
        for res in results:
            # _isolated ne lève pas ; garde-fou pour CancelledError & co
            if isinstance(res, BaseException):
                raise res
            report.results.append(res)
            if res.ok:
                report.synced += 1
            else:
                report.failed += 1
                report.errors[res.event_id] = res.error or "échec"

        report.finished_at = self._now()
        log.info("Synchro commandes terminée", extra={
            "synced": report.synced, "failed": report.failed,
            "inserted": sum(r.inserted for r in report.results),
            "skipped": sum(r.skipped for r in report.results),
        })
        return report

    async def _isolated(self, event: EventRecord, force: bool) -> EventSyncResult:
        try:
            return await self.sync_event_orders(event, force=force)
        except Exception as exc:
            log.exception("Événement %s: pipeline commandes en échec", event.event_id)
            return EventSyncResult(event_id=event.event_id, ok=False, error=repr(exc))

    @contextlib.asynccontextmanager
    async def _event_lock(self, event_id: int):
        """Verrou par événement, libéré de la table dès qu'il n'a plus d'utilisateur."""
        lock = self._event_locks.setdefault(event_id, asyncio.Lock())
        self._event_lock_users[event_id] = self._event_lock_users.get(event_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._event_lock_users[event_id] -= 1
            if not self._event_lock_users[event_id]:
                del self._event_lock_users[event_id]
                del self._event_locks[event_id]

    async def sync_event_orders(self, event: EventRecord, *, force: bool = False) -> EventSyncResult:
        """
        fetch → transform → persist → agrégat → horodatage, strictement dans cet ordre.
        L'horodatage n'est posé que si aucune page ni aucun lot n'a échoué.
        """
        async with self._event_lock(event.event_id):
            started = self._now()
            since = None if force else event.event_order_updated
            fetched = await self.client.fetch_orders(event.event_id, since=since)

            if force:
                if not fetched.complete:
                    # resynchro complète impossible : on ne supprime rien
                    log.error("Événement %s: resynchro forcée annulée, pages en échec %s",
                              event.event_id, fetched.failed_pages)
                    return EventSyncResult(event_id=event.event_id, ok=False,
                                           error=f"pages en échec: {fetched.failed_pages}")
                await self.store.delete_orders(event.event_id)

            lines = transform_orders(fetched.records, event.event_id)
            written = await self.store.insert_orders(lines)
            await recompute_sales(self.store, event.event_id)

            problems = []
            if not fetched.complete:
                problems.append(f"pages en échec: {fetched.failed_pages}")
            if written.failed_batches:
                problems.append(f"lots en échec: {written.failed_batches}")
            if problems:
                log.warning("Événement %s: non horodaté (%s)", event.event_id, "; ".join(problems))
            else:
                await self.store.stamp_order_sync(event.event_id, started)

            log.info("Événement %s: %s insérées, %s ignorées", event.event_id, written.inserted, written.skipped)
            return EventSyncResult(
                event_id=event.event_id,
                ok=not problems,
                inserted=written.inserted,
                skipped=written.skipped,
                stamped=not problems,
                error="; ".join(problems) or None,
            )

    # ------------------------- appelants -------------------------

    async def sync(self, target: Target = ALL, *, force: bool = False) -> tuple:
        events = await self.sync_events(target)
        orders = await self.sync_orders(None if target == ALL else target, force=force)
        return events, orders

    async def list_upcoming_events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        today = self._now().astimezone(ZoneInfo(self.venue_timezone)).date()
        events = await self.store.upcoming_events(today, limit)
        return [{"id": e.event_id, "name": e.event_name, "date": e.event_date} for e in events]

    async def get_sales_summary(self, event_id: int) -> Optional[SalesSummary]:
        """None = pas de données de ventes (ligne absente ou toutes les cases à zéro)."""
        summary = await self.store.get_sales(int(event_id))
        if summary is None or not summary.has_sales:
            return None
        return summary

    def trigger_sync(self, target: Target = ALL, *, force: bool = False) -> asyncio.Task:
        """Lance la synchro en arrière-plan et rend la main immédiatement."""
        task = asyncio.get_running_loop().create_task(self.sync(target, force=force))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Synchro en arrière-plan échouée", exc_info=exc)
