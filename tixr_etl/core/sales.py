# tixr_etl/core/sales.py
"""
Agrégat des ventes par événement.

Règles heuristiques issues de l'exploitation : elles sont gardées sous forme
de table de décision (type, condition, case) plutôt que de conditions
imbriquées. Première règle qui matche pour un type donné ; aucune → la ligne
ne compte dans aucune case (elle peut quand même compter dans gross/net).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, Optional

from tixr_etl.core.models import OrderLine, SalesSummary
from tixr_etl.core.orders import BACKSTAGE, GA, GUEST, OUTLET, PHOTO, VIP

if TYPE_CHECKING:
    from tixr_etl.storage.sqlite_store import SqliteStore

log = logging.getLogger(__name__)

PAID, COMP, FREE = "paid", "comp", "free"

VIP_KEYWORDS = ("vip", "side stage")
FREE_EXCLUDED_KEYWORDS = ("comp", "physical ticket", "billet physique", "door")


def _name(line: OrderLine) -> str:
    return (line.order_sales_item_name or "").lower()


def _has_revenue(line: OrderLine) -> bool:
    return (line.order_gross or 0) > 0 or (line.order_net or 0) > 0


def _vip_keyword(line: OrderLine) -> bool:
    name = _name(line)
    return any(k in name for k in VIP_KEYWORDS)


def _category_in(*cats: str) -> Callable[[OrderLine], bool]:
    return lambda line: line.order_category in cats


def classify(line: OrderLine) -> Optional[str]:
    """paid | comp | free | None (ligne gratuite ni comp ni free, ex. billet physique)."""
    if _has_revenue(line):
        return PAID
    backstage = line.order_ref_type == BACKSTAGE
    name = _name(line)
    if backstage:
        return COMP if "comp" in name else None
    if not line.order_sales_item_name:
        return None
    if any(k in name for k in FREE_EXCLUDED_KEYWORDS):
        return None
    return FREE


@dataclass(frozen=True)
class BucketRule:
    kind: str
    condition: Callable[[OrderLine], bool]
    bucket: str
    note: str = ""


BUCKET_RULES: tuple[BucketRule, ...] = (
    BucketRule(PAID, _category_in(GA), "sales_total_ga"),
    BucketRule(PAID, _category_in(VIP, PHOTO), "sales_total_vip", "PHOTO compte comme VIP"),
    BucketRule(PAID, _category_in(OUTLET), "sales_total_coatcheck"),

    BucketRule(COMP, lambda l: _category_in(VIP, PHOTO)(l) or _vip_keyword(l), "sales_total_comp_vip",
               "VIP avant GA : catégorie ou mot-clé"),
    BucketRule(COMP, _category_in(GA, GUEST), "sales_total_comp_ga"),

    BucketRule(FREE, _category_in(GA), "sales_total_free_ga"),
    BucketRule(FREE, _category_in(VIP, PHOTO), "sales_total_free_vip"),
    BucketRule(FREE, lambda l: l.order_category == GUEST and _vip_keyword(l), "sales_total_free_vip",
               "GUEST résolu par mot-clé"),
    BucketRule(FREE, _category_in(GUEST), "sales_total_free_ga"),
)


def bucket_for(line: OrderLine, kind: Optional[str] = None) -> Optional[str]:
    kind = kind or classify(line)
    if kind is None:
        return None
    for rule in BUCKET_RULES:
        if rule.kind == kind and rule.condition(line):
            return rule.bucket
    return None


def aggregate(event_id: int, lines: Iterable[OrderLine]) -> SalesSummary:
    """Recalcul complet depuis les lignes : même entrée → même agrégat."""
    counts: Dict[str, int] = {}
    gross = 0.0
    net = 0.0
    for line in lines:
        kind = classify(line)
        if kind == PAID:
            gross += line.order_gross or 0
            net += line.order_net or 0
        bucket = bucket_for(line, kind)
        if bucket:
            counts[bucket] = counts.get(bucket, 0) + (line.order_quantity or 1)
    return SalesSummary(event_id=event_id, sales_gross=round(gross, 2), sales_net=round(net, 2), **counts)


async def recompute_sales(store: "SqliteStore", event_id: int) -> SalesSummary:
    """Relit toutes les lignes persistées de l'événement et écrase l'agrégat en bloc."""
    lines = [line async for line in store.iter_orders(event_id)]
    summary = aggregate(event_id, lines)
    await store.upsert_sales(summary)
    log.info(
        "Ventes: GA=%s VIP=%s CompGA=%s CompVIP=%s FreeGA=%s FreeVIP=%s Gross=%s Net=%s",
        summary.sales_total_ga, summary.sales_total_vip, summary.sales_total_comp_ga,
        summary.sales_total_comp_vip, summary.sales_total_free_ga, summary.sales_total_free_vip,
        summary.sales_gross, summary.sales_net,
        extra={"event_id": event_id, "lines": len(lines)},
    )
    return summary
