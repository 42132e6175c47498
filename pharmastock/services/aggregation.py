"""
Roll-ups de stock par (produit, almacén).

`stock_rollups` est un cache : reconstruit entièrement depuis le ledger,
jamais lu pour se recalculer lui-même.

Règles :
    valuation   = SUM(unit_cost + freight_cost) sur unités "en main"
                  (disponibles + réservées + en transit)
    avg_cost    = valuation / nb unités en main
    vencimiento = buckets 30 / 90 j sur disponibles + réservées
    critique    = libres < product.min_stock

Propriétés :
- déterministe
- idempotent
- sans commit (transaction de l'appelant)
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pharmastock.app.config import Settings, get_settings
from pharmastock.app.db.base import utcnow
from pharmastock.app.db.models.models_v1 import Product, StockRollup, Unit, Warehouse
from pharmastock.app.db.models.core_types import Country, UnitState
from pharmastock.services.ledger import AVAILABLE_STATES, ON_HAND_STATES, landed_cost

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

QTY_FIELD_BY_STATE = {
    UnitState.received_origin: "qty_received_origin",
    UnitState.in_transit_origin: "qty_in_transit_origin",
    UnitState.in_transit_destination: "qty_in_transit_destination",
    UnitState.available_destination: "qty_available_destination",
    UnitState.reserved: "qty_reserved",
    UnitState.sold: "qty_sold",
    UnitState.expired: "qty_expired",
    UnitState.damaged: "qty_damaged",
}


@dataclass(frozen=True)
class CountrySummary:
    country: Country
    total_products: int
    total_units: int
    available: int
    in_transit: int
    reserved: int
    valuation: Decimal
    critical_products: int
    out_of_stock_products: int
    near_expiry_30: int
    near_expiry_90: int


def _scoped(stmt, model, product_id: int | None, warehouse_id: int | None):
    if product_id is not None:
        stmt = stmt.where(model.product_id == product_id)
    if warehouse_id is not None:
        stmt = stmt.where(model.warehouse_id == warehouse_id)
    return stmt


def rebuild_rollups(
    db: Session,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    today: date | None = None,
    settings: Settings | None = None,
) -> list[StockRollup]:
    """
    Rebuild des roll-ups du périmètre demandé (tout le ledger par défaut).

    Les lignes du périmètre qui n'ont plus aucune unité sont supprimées.
    """
    settings = settings or get_settings()
    today = today or date.today()

    # ---------- COMPTAGES PAR ÉTAT ----------
    count_rows = db.execute(
        _scoped(
            select(Unit.product_id, Unit.warehouse_id, Unit.state, func.count(Unit.id)),
            Unit,
            product_id,
            warehouse_id,
        ).group_by(Unit.product_id, Unit.warehouse_id, Unit.state)
    ).all()

    counts: dict[tuple[int, int], dict[UnitState, int]] = defaultdict(dict)
    for pid, wid, state, qty in count_rows:
        counts[(int(pid), int(wid))][state] = int(qty)

    # ---------- VALORISATION / VENCIMIENTOS ----------
    on_hand_units = db.execute(
        _scoped(select(Unit).where(Unit.state.in_(ON_HAND_STATES)), Unit, product_id, warehouse_id)
    ).scalars()

    valuation: dict[tuple[int, int], Decimal] = defaultdict(lambda: Decimal("0"))
    on_hand: dict[tuple[int, int], int] = defaultdict(int)
    expiry_days: dict[tuple[int, int], list[int]] = defaultdict(list)
    for unit in on_hand_units:
        key = (unit.product_id, unit.warehouse_id)
        valuation[key] += landed_cost(unit)
        on_hand[key] += 1
        if unit.state in AVAILABLE_STATES or unit.state == UnitState.reserved:
            expiry_days[key].append((unit.expiry_date - today).days)

    product_ids = {pid for pid, _ in counts}
    warehouse_ids = {wid for _, wid in counts}
    products = {
        p.id: p for p in db.execute(select(Product).where(Product.id.in_(product_ids))).scalars()
    } if product_ids else {}
    warehouses = {
        w.id: w for w in db.execute(select(Warehouse).where(Warehouse.id.in_(warehouse_ids))).scalars()
    } if warehouse_ids else {}

    existing = {
        (r.product_id, r.warehouse_id): r
        for r in db.execute(
            _scoped(select(StockRollup), StockRollup, product_id, warehouse_id).with_for_update()
        ).scalars()
    }

    # ---------- UPSERT ----------
    rows: list[StockRollup] = []
    for key in sorted(counts):
        pid, wid = key
        by_state = counts[key]

        row = existing.pop(key, None)
        if row is None:
            row = StockRollup(product_id=pid, warehouse_id=wid, country=warehouses[wid].country)
            db.add(row)

        row.country = warehouses[wid].country
        for state, field_name in QTY_FIELD_BY_STATE.items():
            setattr(row, field_name, by_state.get(state, 0))
        row.qty_total = sum(by_state.values())

        row.valuation = valuation[key].quantize(CENT, rounding=ROUND_HALF_UP)
        row.avg_unit_cost = (
            (valuation[key] / on_hand[key]).quantize(CENT, rounding=ROUND_HALF_UP)
            if on_hand[key]
            else Decimal("0")
        )

        days = expiry_days.get(key, [])
        row.near_expiry_30 = sum(1 for d in days if 0 < d <= settings.near_expiry_short_days)
        row.near_expiry_90 = sum(1 for d in days if 0 < d <= settings.near_expiry_long_days)
        row.avg_days_to_expiry = round(sum(days) / len(days)) if days else None

        free = row.qty_received_origin + row.qty_available_destination
        row.is_critical = free < products[pid].min_stock
        row.computed_at = utcnow()
        rows.append(row)

    # plus aucune unité dans le périmètre
    for stale in existing.values():
        db.delete(stale)

    db.flush()
    logger.info(
        "Rollups rebuilt (product=%s warehouse=%s): %s row(s), %s removed",
        product_id,
        warehouse_id,
        len(rows),
        len(existing),
    )
    return rows


def list_rollups(
    db: Session,
    *,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    country: Country | None = None,
    critical_only: bool = False,
) -> list[StockRollup]:
    stmt = _scoped(select(StockRollup), StockRollup, product_id, warehouse_id)
    if country is not None:
        stmt = stmt.where(StockRollup.country == country)
    if critical_only:
        stmt = stmt.where(StockRollup.is_critical.is_(True))
    stmt = stmt.order_by(StockRollup.product_id, StockRollup.warehouse_id)
    return list(db.execute(stmt).scalars().all())


def inventory_summary_by_country(db: Session) -> dict[Country, CountrySummary]:
    """Totaux par pays, dérivés des roll-ups (à reconstruire au préalable)."""
    rows = list_rollups(db)
    summaries: dict[Country, CountrySummary] = {}

    for country in Country:
        scoped = [r for r in rows if r.country == country]

        free_by_product: dict[int, int] = defaultdict(int)
        on_hand_by_product: dict[int, int] = defaultdict(int)
        for r in scoped:
            free = r.qty_received_origin + r.qty_available_destination
            in_transit = r.qty_in_transit_origin + r.qty_in_transit_destination
            free_by_product[r.product_id] += free
            on_hand_by_product[r.product_id] += free + in_transit + r.qty_reserved

        available = sum(free_by_product.values())
        in_transit = sum(r.qty_in_transit_origin + r.qty_in_transit_destination for r in scoped)
        reserved = sum(r.qty_reserved for r in scoped)

        summaries[country] = CountrySummary(
            country=country,
            total_products=sum(1 for qty in on_hand_by_product.values() if qty > 0),
            total_units=available + in_transit + reserved,
            available=available,
            in_transit=in_transit,
            reserved=reserved,
            valuation=sum((Decimal(r.valuation) for r in scoped), Decimal("0")),
            critical_products=len({r.product_id for r in scoped if r.is_critical}),
            out_of_stock_products=sum(1 for qty in free_by_product.values() if qty == 0),
            near_expiry_30=sum(r.near_expiry_30 for r in scoped),
            near_expiry_90=sum(r.near_expiry_90 for r in scoped),
        )

    return summaries
