# tixr_etl/adapters/tixr.py
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from tixr_etl.core.config import Settings, settings as default_settings
from tixr_etl.core.freshness import parse_timestamp

log = logging.getLogger(__name__)

BASE_URL = "https://studio.tixr.com"
DEFAULT_ORDERS_START = "2020-01-01"
COMPLETE = "COMPLETE"

# caractères non échappés par encodeURIComponent côté Tixr
_URI_SAFE = "-_.!~*'()"


class TixrApiError(RuntimeError):
    """Erreur HTTP ou de format renvoyée par l'API Tixr."""

    def __init__(self, message: str, *, status: Optional[int] = None,
                 path: Optional[str] = None, page: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.path = path
        self.page = page

    @property
    def transient(self) -> bool:
        return self.status is not None and (self.status >= 500 or self.status == 429)


# ----------------------------- Signature --------------------------------

def build_hash(secret: str, path: str, params: Dict[str, Any]) -> tuple[str, str]:
    """
    Query triée par clé + HMAC-SHA256 hex de "<path>?<query triée>".
    Retourne (query_triée, hash).
    """
    sorted_query = "&".join(f"{k}={quote(str(params[k]), safe=_URI_SAFE)}" for k in sorted(params))
    digest = hmac.new(secret.encode(), f"{path}?{sorted_query}".encode(), hashlib.sha256).hexdigest()
    return sorted_query, digest


# ----------------------------- Retry ------------------------------------

def _is_transient(exc: BaseException) -> bool:
    # TimeoutException hérite de TransportError
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, TixrApiError) and exc.transient


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning("Tixr API: nouvelle tentative", extra={
        "attempt": retry_state.attempt_number,
        "sleep": getattr(retry_state.next_action, "sleep", None),
        "error": repr(exc),
    })


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff exponentiel : base_delay, doublé à chaque échec, plafonné à max_delay."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )


# ----------------------------- Pagination -------------------------------

@dataclass
class PageResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    pages: List[int] = field(default_factory=list)
    failed_pages: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_pages

    def add(self, page: int, records: List[Dict[str, Any]]) -> None:
        self.pages.append(page)
        self.records.extend(records)


# ----------------------------- Client -----------------------------------

class TixrClient:
    """Client signé pour /v1/groups/{group} (événements, commandes)."""

    def __init__(
        self,
        *,
        cpk: str,
        secret_key: str,
        group_id: str,
        base_url: str = BASE_URL,
        page_size: int = 1000,
        page_concurrency: int = 3,
        timeout: float = 15.0,
        retry_policy: Optional[RetryPolicy] = None,
        max_pages: int = 500,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cpk = cpk
        self.secret_key = secret_key
        self.group_id = str(group_id)
        self.page_size = page_size
        self.page_concurrency = max(1, page_concurrency)
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_pages = max_pages
        self._clock = clock
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, s: Settings = default_settings, **kwargs: Any) -> "TixrClient":
        return cls(
            cpk=s.tixr_cpk,
            secret_key=s.tixr_secret_key,
            group_id=s.tixr_group_id,
            base_url=s.tixr_base_url,
            page_size=s.tixr_page_size,
            page_concurrency=s.tixr_page_concurrency,
            timeout=s.tixr_timeout,
            retry_policy=RetryPolicy(
                max_attempts=s.tixr_retry_attempts,
                base_delay=s.tixr_retry_base_delay,
                max_delay=s.tixr_retry_max_delay,
            ),
            **kwargs,
        )

    async def __aenter__(self) -> "TixrClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # --------------------------- bas niveau ----------------------------

    @property
    def group_path(self) -> str:
        return f"/v1/groups/{self.group_id}"

    def signed_url(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        full = {"cpk": self.cpk, "t": int(self._clock() * 1000), **(params or {})}
        sorted_query, digest = build_hash(self.secret_key, path, full)
        return f"{path}?{sorted_query}&hash={digest}"

    async def _get_once(self, path: str, params: Dict[str, Any]) -> Any:
        # t et hash recalculés à chaque tentative
        r = await self._http.get(self.signed_url(path, params))
        if r.status_code >= 400:
            raise TixrApiError(f"Tixr HTTP {r.status_code} sur {path}", status=r.status_code, path=path)
        try:
            return r.json()
        except ValueError as exc:
            raise TixrApiError(f"Réponse non JSON sur {path}", status=r.status_code, path=path) from exc

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.retry_policy.retrying()(self._get_once, path, params or {})

    async def fetch_page(self, resource: str, page_number: int, page_size: int,
                         filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        params = {"page_number": page_number, "page_size": page_size, **(filters or {})}
        data = await self._get(resource, params)
        if not isinstance(data, list):
            raise TixrApiError("Format de réponse invalide (liste attendue)", path=resource, page=page_number)
        return data

    async def _safe_page(self, resource: str, page_number: int, page_size: int,
                         filters: Optional[Dict[str, Any]]) -> Optional[List[Dict[str, Any]]]:
        """None si la page a échoué après les tentatives : elle est exclue, la boucle continue."""
        try:
            return await self.fetch_page(resource, page_number, page_size, filters)
        except Exception:
            log.exception("Tixr API: page %s abandonnée", page_number, extra={"resource": resource})
            return None

    async def paginate(self, resource: str, filters: Optional[Dict[str, Any]] = None,
                       page_size: Optional[int] = None) -> PageResult:
        """
        Page 1 seule ; si elle est pleine, les pages suivantes partent en parallèle
        par fenêtres de `page_concurrency`, consommées dans l'ordre.
        Arrêt : page incomplète, fenêtre entièrement en échec ou max_pages.
        Une page vide est une page incomplète : on ne lit jamais au-delà de la
        première page vide.
        """
        size = page_size or self.page_size
        result = PageResult()

        first = await self._safe_page(resource, 1, size, filters)
        if first is None:
            result.failed_pages.append(1)
            return result
        result.add(1, first)
        log.info("Tixr API: page 1, %s enregistrements", len(first), extra={"resource": resource})
        if len(first) < size:
            return result

        sem = asyncio.Semaphore(self.page_concurrency)

        async def bounded(n: int) -> Optional[List[Dict[str, Any]]]:
            async with sem:
                return await self._safe_page(resource, n, size, filters)

        next_page = 2
        while True:
            if next_page > self.max_pages:
                log.warning("Tixr API: max_pages atteint (%s)", self.max_pages, extra={"resource": resource})
                break
            window = range(next_page, min(next_page + self.page_concurrency, self.max_pages + 1))
            pages = await asyncio.gather(*(bounded(n) for n in window))

            done = False
            failures = 0
            for n, records in zip(window, pages):
                if records is None:
                    result.failed_pages.append(n)
                    failures += 1
                    continue
                if records:
                    result.add(n, records)
                log.info("Tixr API: page %s, cumul %s enregistrements", n, len(result.records),
                         extra={"resource": resource})
                if len(records) < size:
                    done = True
                    break
            if done:
                break
            if failures == len(window):
                log.error("Tixr API: fenêtre de pages entièrement en échec, arrêt",
                          extra={"resource": resource, "pages": list(window)})
                break
            next_page = window.stop

        return result

    # --------------------------- endpoints -----------------------------

    async def list_events(self, start_date: Optional[str] = None) -> PageResult:
        filters = {"start_date": start_date} if start_date else None
        result = await self.paginate(f"{self.group_path}/events", filters)
        log.info("Tixr API: %s événements récupérés", len(result.records),
                 extra={"failed_pages": result.failed_pages})
        return result

    async def get_event(self, event_id: int) -> Optional[Dict[str, Any]]:
        try:
            data = await self._get(f"{self.group_path}/events/{event_id}")
        except TixrApiError as exc:
            if exc.status == 404:
                return None
            raise
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    async def fetch_orders(self, event_id: int, since: Optional[datetime] = None) -> PageResult:
        """
        Commandes COMPLETE d'un événement. Avec `since`, filtre côté API au jour
        (start_date) puis côté client à la milliseconde sur purchase_date.
        """
        start_date = since.date().isoformat() if since else DEFAULT_ORDERS_START
        result = await self.paginate(f"{self.group_path}/events/{event_id}/orders", {"start_date": start_date})

        orders = [o for o in result.records if o.get("status") == COMPLETE]
        if since is not None:
            floor = parse_timestamp(since)
            orders = [o for o in orders if _purchased_at_or_after(o, floor)]
        result.records = orders
        return result


def _purchased_at_or_after(order: Dict[str, Any], floor: datetime) -> bool:
    purchased = parse_timestamp(order.get("purchase_date"))
    # date illisible : on garde, l'insertion est idempotente
    return purchased is None or purchased >= floor
