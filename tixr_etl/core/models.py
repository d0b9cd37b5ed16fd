# tixr_etl/core/models.py

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventStatus(str, Enum):
    LIVE = "LIVE"
    PAST = "PAST"


class EventRecord(BaseModel):
    """
    Ligne de la table `events` telle que produite par la synchro des événements.
    `event_order_updated` n'est jamais écrit par cette voie : seul le pipeline
    des commandes le tamponne.
    """
    event_id: int
    event_name: str
    event_date: date                      # date locale de la salle, sans heure
    event_artist: Optional[str] = None    # nom canonique après dédoublonnage
    event_status: EventStatus = EventStatus.LIVE
    event_flyer: Optional[str] = None
    event_updated: Optional[datetime] = None
    event_order_updated: Optional[datetime] = None


class OrderLine(BaseModel):
    """
    Une ligne par sale item d'une commande Tixr.
    Clé d'idempotence : (order_name, order_sale_id).
    """
    event_id: int
    order_sale_id: Optional[str] = None
    order_tier_id: Optional[str] = None
    order_category: Optional[str] = None   # GA | VIP | PHOTO | OUTLET | GUEST | autre
    order_quantity: Optional[int] = None
    order_sales_item_name: Optional[str] = None
    order_serials: List[str] = Field(default_factory=list)
    order_name: Optional[str] = None       # identifiant de commande côté provider
    order_gross: Optional[float] = None
    order_net: Optional[float] = None
    order_purchase_date: Optional[datetime] = None
    order_ref: Optional[str] = None
    order_ref_type: Optional[str] = None
    order_card_type: Optional[str] = None
    order_user_agent: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def key(self) -> tuple[Optional[str], Optional[str]]:
        return (self.order_name, self.order_sale_id)


SALES_BUCKETS = (
    "sales_total_ga",
    "sales_total_vip",
    "sales_total_coatcheck",
    "sales_total_comp_ga",
    "sales_total_comp_vip",
    "sales_total_free_ga",
    "sales_total_free_vip",
)


class SalesSummary(BaseModel):
    """
    Agrégat par événement, toujours recalculé depuis l'ensemble des lignes
    persistées (jamais patché incrémentalement).
    """
    event_id: int
    sales_total_ga: int = 0
    sales_total_vip: int = 0
    sales_total_coatcheck: int = 0
    sales_total_comp_ga: int = 0
    sales_total_comp_vip: int = 0
    sales_total_free_ga: int = 0
    sales_total_free_vip: int = 0
    sales_gross: float = 0.0
    sales_net: float = 0.0

    @property
    def has_sales(self) -> bool:
        return any(getattr(self, b) for b in SALES_BUCKETS) or bool(self.sales_gross or self.sales_net)


class InsertResult(BaseModel):
    inserted: int = 0
    skipped: int = 0
    failed_batches: int = 0
    failed_rows: int = 0


class EventSyncResult(BaseModel):
    event_id: int
    ok: bool = True
    inserted: int = 0
    skipped: int = 0
    stamped: bool = False
    error: Optional[str] = None


class SyncReport(BaseModel):
    """Bilan d'un passage de synchro (événements ou commandes)."""
    mode: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    considered: int = 0
    excluded: int = 0
    up_to_date: int = 0
    synced: int = 0
    failed: int = 0
    results: List[EventSyncResult] = Field(default_factory=list)
    errors: Dict[int, str] = Field(default_factory=dict)
