# tixr_etl/core/freshness.py
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from tixr_etl.core.models import EventStatus

log = logging.getLogger(__name__)

Timestamp = Union[str, int, float, datetime, None]

# un événement est "réglé" un jour après sa date
SETTLE_DELAY = timedelta(days=1)


def parse_timestamp(value: Timestamp) -> Optional[datetime]:
    """ISO (avec ou sans 'Z') ou datetime → datetime aware UTC. None si illisible."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) or str(value).strip().isdigit():
        # epoch en millisecondes (purchase_date Tixr)
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        try:
            dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value: Union[str, date, None]) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def settle_point(event_date: date) -> datetime:
    """Minuit UTC du lendemain de l'événement."""
    return datetime.combine(event_date + SETTLE_DELAY, time.min, tzinfo=timezone.utc)


def needs_update(event_date: Union[str, date, None], last_sync: Timestamp) -> bool:
    """
    Vrai si l'événement doit être rafraîchi :
    - jamais synchronisé (ou horodatage illisible),
    - ou dernière synchro antérieure à date + 1 jour.
    """
    if last_sync is None or last_sync == "":
        return True
    synced_at = parse_timestamp(last_sync)
    day = parse_date(event_date)
    if synced_at is None or day is None:
        log.warning("Horodatage illisible, rafraîchissement forcé",
                    extra={"event_date": str(event_date), "last_sync": str(last_sync)})
        return True
    return synced_at < settle_point(day)


def event_status(event_date: date, now: Optional[datetime] = None) -> EventStatus:
    now = now or datetime.now(timezone.utc)
    return EventStatus.PAST if parse_timestamp(now) > settle_point(event_date) else EventStatus.LIVE


def to_venue_date(start_date: Timestamp, tz: str = "America/Montreal") -> Optional[date]:
    """Date de début provider (UTC) → jour calendaire dans le fuseau de la salle."""
    dt = parse_timestamp(start_date)
    if dt is None:
        return None
    return dt.astimezone(ZoneInfo(tz)).date()
