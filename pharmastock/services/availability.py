"""
Disponibilité multi-almacén et recommandation de source.

Flux de priorité (prefer_destination_country) :
    1. pays de destination (livraison immédiate)
    2. pays d'origine, viajero avec départ programmé
    3. pays d'origine, almacén sans départ programmé (estimation forfaitaire)
    4. virtuel : faltante -> requerimiento d'achat (flux externe)

Lecture seule : sûr en concurrence avec n'importe quelle autre résolution.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmastock.app.config import Settings, get_settings
from pharmastock.app.db.models.models_v1 import Unit, Warehouse
from pharmastock.app.db.models.core_types import AvailabilityStatus, Country, StockSource, UnitState
from pharmastock.services.errors import InvalidRequestError
from pharmastock.services.ledger import AVAILABLE_STATES, get_product, is_available, landed_cost

CENT = Decimal("0.01")


@dataclass(frozen=True)
class AvailabilityRequest:
    product_id: int
    quantity: int


@dataclass
class WarehouseAvailability:
    warehouse_id: int
    warehouse_code: str
    warehouse_name: str
    country: Country
    is_traveler: bool
    on_hand: int
    reserved: int
    free: int
    unit_ids: list[int]
    avg_unit_cost: Decimal
    estimated_freight: Decimal
    transit_days: int
    next_departure: date | None = None
    nearest_expiry: date | None = None
    avg_days_to_expiry: int | None = None

    @property
    def landed_unit_cost(self) -> Decimal:
        return self.avg_unit_cost + self.estimated_freight

    @property
    def has_scheduled_traveler(self) -> bool:
        return self.is_traveler and self.next_departure is not None


@dataclass(frozen=True)
class RecommendedDraw:
    warehouse_id: int
    warehouse_name: str
    country: Country
    quantity: int
    transit_days: int
    estimated_cost: Decimal


@dataclass(frozen=True)
class Alternative:
    source: StockSource
    rationale: str
    extra_transit_days: int
    extra_cost: Decimal | None = None


@dataclass
class Recommendation:
    source: StockSource
    rationale: str
    draws: list[RecommendedDraw] = field(default_factory=list)
    shortfall: int = 0
    generates_requirement: bool = False
    alternatives: list[Alternative] = field(default_factory=list)

    @property
    def max_transit_days(self) -> int:
        return max((d.transit_days for d in self.draws), default=0)

    @property
    def estimated_cost(self) -> Decimal:
        return sum((d.estimated_cost for d in self.draws), Decimal("0"))


@dataclass
class ProductAvailability:
    product_id: int
    sku: str
    brand: str
    name: str
    presentation: str | None
    requested: int
    status: AvailabilityStatus
    total_on_hand: int
    total_reserved: int
    total_free: int
    free_destination: int
    free_origin: int
    warehouses: list[WarehouseAvailability]
    recommendation: Recommendation | None = None

    @property
    def requires_purchase(self) -> bool:
        return self.total_free < self.requested


@dataclass(frozen=True)
class AvailabilitySummary:
    all_available: bool
    any_partial: bool
    any_no_stock: bool
    max_transit_days: int
    total_estimated_cost: Decimal
    requires_requirement: bool


@dataclass
class AvailabilityResponse:
    products: list[ProductAvailability]
    summary: AvailabilitySummary


# ---------- Estimations ----------
def estimate_transit_days(warehouse: Warehouse, *, today: date, settings: Settings) -> int:
    if warehouse.country == Country.destination:
        return 0
    if warehouse.is_traveler and warehouse.next_departure is not None:
        days_to_departure = (warehouse.next_departure - today).days
        return max(0, days_to_departure) + settings.traveler_transit_days
    return settings.origin_fallback_transit_days


def estimate_freight(warehouse: Warehouse, *, settings: Settings) -> Decimal:
    if warehouse.country == Country.destination:
        return Decimal("0")
    if warehouse.avg_freight_cost is not None:
        return Decimal(warehouse.avg_freight_cost)
    return Decimal(str(settings.default_freight_cost))


def classify(total_free: int, requested: int) -> AvailabilityStatus:
    if total_free >= requested:
        return AvailabilityStatus.available
    if total_free > 0:
        return AvailabilityStatus.partial
    return AvailabilityStatus.no_stock


def _average(values: Sequence[Decimal]) -> Decimal:
    if not values:
        return Decimal("0")
    return (sum(values, Decimal("0")) / len(values)).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------- Snapshot ----------
def warehouse_breakdown(
    db: Session,
    product_id: int,
    *,
    today: date,
    settings: Settings,
) -> list[WarehouseAvailability]:
    """Stock en main du produit, groupé par almacén actif."""
    units = db.execute(
        select(Unit)
        .where(Unit.product_id == product_id)
        .where(Unit.state.in_(AVAILABLE_STATES | {UnitState.reserved}))
        .order_by(Unit.expiry_date.asc(), Unit.id.asc())
    ).scalars().all()

    by_warehouse: dict[int, list[Unit]] = defaultdict(list)
    for u in units:
        by_warehouse[u.warehouse_id].append(u)
    if not by_warehouse:
        return []

    warehouses = {
        w.id: w
        for w in db.execute(
            select(Warehouse).where(Warehouse.id.in_(by_warehouse.keys())).where(Warehouse.active.is_(True))
        ).scalars()
    }

    rows: list[WarehouseAvailability] = []
    for warehouse_id in sorted(by_warehouse):
        warehouse = warehouses.get(warehouse_id)
        if warehouse is None:
            continue

        group = by_warehouse[warehouse_id]
        available = [u for u in group if is_available(u)]
        reserved = sum(1 for u in group if u.state == UnitState.reserved)
        on_hand = len(available) + reserved
        free = max(0, on_hand - reserved)

        costed = available or group
        days_to_expiry = [(u.expiry_date - today).days for u in available]

        rows.append(
            WarehouseAvailability(
                warehouse_id=warehouse.id,
                warehouse_code=warehouse.code,
                warehouse_name=warehouse.name,
                country=warehouse.country,
                is_traveler=warehouse.is_traveler,
                on_hand=on_hand,
                reserved=reserved,
                free=free,
                unit_ids=[u.id for u in available[:free]],
                avg_unit_cost=_average([landed_cost(u) for u in costed]),
                estimated_freight=estimate_freight(warehouse, settings=settings),
                transit_days=estimate_transit_days(warehouse, today=today, settings=settings),
                next_departure=warehouse.next_departure if warehouse.is_traveler else None,
                nearest_expiry=available[0].expiry_date if available else None,
                avg_days_to_expiry=round(sum(days_to_expiry) / len(days_to_expiry)) if days_to_expiry else None,
            )
        )

    # affichage : destination, puis viajeros programmés, puis délai
    rows.sort(
        key=lambda w: (
            w.country != Country.destination,
            not w.has_scheduled_traveler,
            w.transit_days,
        )
    )
    return rows


def _source_for(w: WarehouseAvailability) -> StockSource:
    if w.country == Country.destination:
        return StockSource.destination
    if w.has_scheduled_traveler:
        return StockSource.origin_traveler
    return StockSource.origin_warehouse


def _rationale_for(w: WarehouseAvailability) -> str:
    source = _source_for(w)
    if source == StockSource.destination:
        return "Stock available in destination country (immediate delivery)"
    if source == StockSource.origin_traveler:
        return f"Stock in origin country with traveler {w.warehouse_name}, arriving in {w.transit_days} days"
    return f"Stock in origin warehouse {w.warehouse_name}, estimated {w.transit_days} days"


def recommend(
    requested: int,
    warehouses: Sequence[WarehouseAvailability],
    *,
    prefer_destination_country: bool = True,
) -> Recommendation:
    """Classe les almacenes puis puise goulûment jusqu'à couvrir la demande."""

    def rank(w: WarehouseAvailability):
        country_rank = w.country != Country.destination if prefer_destination_country else False
        return (country_rank, w.transit_days, w.landed_unit_cost)

    ranked = sorted(warehouses, key=rank)

    draws: list[RecommendedDraw] = []
    remaining = requested
    source = StockSource.virtual
    rationale = ""

    for w in ranked:
        if remaining <= 0:
            break
        if w.free <= 0:
            continue

        qty = min(remaining, w.free)
        draws.append(
            RecommendedDraw(
                warehouse_id=w.warehouse_id,
                warehouse_name=w.warehouse_name,
                country=w.country,
                quantity=qty,
                transit_days=w.transit_days,
                estimated_cost=(qty * w.landed_unit_cost).quantize(CENT),
            )
        )
        remaining -= qty

        # le premier almacén puisé donne la source principale
        if len(draws) == 1:
            source = _source_for(w)
            rationale = _rationale_for(w)

    shortfall = max(0, remaining)
    if shortfall:
        if not draws:
            source = StockSource.virtual
            rationale = "No stock available, a purchase requirement will be raised"
        else:
            rationale += f". Shortfall: {shortfall} unit(s) (purchase requirement)"

    alternatives: list[Alternative] = []
    if source == StockSource.destination:
        alt = next((w for w in ranked if w.country == Country.origin and w.free > 0), None)
        if alt is not None:
            alternatives.append(
                Alternative(
                    source=_source_for(alt),
                    rationale=f"Alternative from origin country ({alt.warehouse_name})",
                    extra_transit_days=alt.transit_days,
                    extra_cost=alt.estimated_freight,
                )
            )

    return Recommendation(
        source=source,
        rationale=rationale,
        draws=draws,
        shortfall=shortfall,
        generates_requirement=shortfall > 0,
        alternatives=alternatives,
    )


def product_availability(
    db: Session,
    product_id: int,
    requested: int,
    *,
    include_recommendation: bool = True,
    prefer_destination_country: bool = True,
    today: date | None = None,
    settings: Settings | None = None,
) -> ProductAvailability:
    if requested <= 0:
        raise InvalidRequestError(f"Requested quantity for product {product_id} must be > 0")

    settings = settings or get_settings()
    today = today or date.today()
    product = get_product(db, product_id)

    warehouses = warehouse_breakdown(db, product_id, today=today, settings=settings)

    total_on_hand = sum(w.on_hand for w in warehouses)
    total_reserved = sum(w.reserved for w in warehouses)
    free_destination = sum(w.free for w in warehouses if w.country == Country.destination)
    free_origin = sum(w.free for w in warehouses if w.country == Country.origin)
    total_free = free_destination + free_origin

    result = ProductAvailability(
        product_id=product.id,
        sku=product.sku,
        brand=product.brand,
        name=product.name,
        presentation=product.presentation,
        requested=requested,
        status=classify(total_free, requested),
        total_on_hand=total_on_hand,
        total_reserved=total_reserved,
        total_free=total_free,
        free_destination=free_destination,
        free_origin=free_origin,
        warehouses=warehouses,
    )
    if include_recommendation:
        result.recommendation = recommend(
            requested,
            warehouses,
            prefer_destination_country=prefer_destination_country,
        )
    return result


def resolve_availability(
    db: Session,
    requests: Iterable[AvailabilityRequest | tuple[int, int]],
    *,
    include_recommendation: bool = True,
    prefer_destination_country: bool = True,
    today: date | None = None,
    settings: Settings | None = None,
) -> AvailabilityResponse:
    settings = settings or get_settings()
    today = today or date.today()

    products: list[ProductAvailability] = []
    for req in requests:
        if not isinstance(req, AvailabilityRequest):
            req = AvailabilityRequest(*req)
        products.append(
            product_availability(
                db,
                req.product_id,
                req.quantity,
                include_recommendation=include_recommendation,
                prefer_destination_country=prefer_destination_country,
                today=today,
                settings=settings,
            )
        )

    recommendations = [p.recommendation for p in products if p.recommendation is not None]
    summary = AvailabilitySummary(
        all_available=all(p.status == AvailabilityStatus.available for p in products),
        any_partial=any(p.status == AvailabilityStatus.partial for p in products),
        any_no_stock=any(p.status == AvailabilityStatus.no_stock for p in products),
        max_transit_days=max((r.max_transit_days for r in recommendations), default=0),
        total_estimated_cost=sum((r.estimated_cost for r in recommendations), Decimal("0")),
        requires_requirement=any(p.requires_purchase for p in products),
    )
    return AvailabilityResponse(products=products, summary=summary)
