# tixr_etl/core/orders.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from tixr_etl.core.freshness import parse_timestamp
from tixr_etl.core.models import OrderLine

log = logging.getLogger(__name__)

GA, VIP, PHOTO, OUTLET, GUEST = "GA", "VIP", "PHOTO", "OUTLET", "GUEST"
CATEGORIES = (GA, VIP, PHOTO, OUTLET, GUEST)

# ref_type des billets émis par le canal staff (comps)
BACKSTAGE = "BACKSTAGE"


# ------------------- champs défensifs -------------------

def parse_serials(value: Any) -> List[str]:
    """
    Liste de numéros de série depuis une liste, une chaîne JSON ou une chaîne
    brute (traitée comme un seul numéro).
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(s).strip() for s in value if s is not None and str(s).strip()]
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            decoded = json.loads(text)
        except ValueError:
            return [text]
        if isinstance(decoded, list):
            return parse_serials(decoded)
        if decoded is None:
            return []
        return [str(decoded)]
    return [str(value)]


def _ticket_serials(item: Dict[str, Any]) -> List[str]:
    tickets = item.get("tickets")
    if isinstance(tickets, list):
        return parse_serials([t.get("serial_number") if isinstance(t, dict) else t for t in tickets])
    if isinstance(tickets, str):
        return parse_serials(tickets)
    return parse_serials(item.get("serials"))


def _money(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return None


def _text(v: Any) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def normalize_category(v: Any) -> Optional[str]:
    s = _text(v)
    return s.upper() if s else None


# ------------------- transformation -------------------

def transform_item(order: Dict[str, Any], item: Dict[str, Any], event_id: int) -> OrderLine:
    # montants du sale item, pas de la commande : tarification indépendante par item
    return OrderLine(
        event_id=int(event_id),
        order_sale_id=_text(item.get("sale_id")),
        order_tier_id=_text(item.get("tier_id")),
        order_category=normalize_category(item.get("category")),
        order_quantity=_int(item.get("quantity")),
        order_sales_item_name=_text(item.get("name")),
        order_serials=_ticket_serials(item),
        order_name=_text(order.get("order_id")),
        order_gross=_money(item.get("total")),
        order_net=_money(item.get("net")),
        order_purchase_date=parse_timestamp(order.get("purchase_date")),
        order_ref=_text(order.get("referrer")),
        order_ref_type=_text(order.get("ref_type")),
        order_card_type=_text(order.get("card_type")),
        order_user_agent=_text(order.get("user_agent_type")),
    )


def transform_orders(orders: Iterable[Dict[str, Any]], event_id: int) -> List[OrderLine]:
    lines: List[OrderLine] = []
    for order in orders:
        items = order.get("sale_items") or []
        if not isinstance(items, list) or not items:
            continue
        for item in items:
            if not isinstance(item, dict):
                log.warning("Sale item illisible ignoré", extra={"event_id": event_id, "order": order.get("order_id")})
                continue
            lines.append(transform_item(order, item, event_id))
    return lines
