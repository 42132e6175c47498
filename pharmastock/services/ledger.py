"""
Unit ledger : source de vérité de tout l'état de stock.

Chaque unité physique est une ligne `units`. Toute transition d'état :
    - est gardée par LEGAL_TRANSITIONS (jamais de coercition silencieuse),
    - ajoute exactement UN mouvement (`unit_movements`, append-only),
    - est UN update atomique de la ligne (version optimiste, cf. Unit.version).

Les fonctions ne commitent jamais : la transaction appartient à l'appelant.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmastock.app.db.base import as_utc, utcnow
from pharmastock.app.db.models.models_v1 import Product, Unit, UnitMovement, Warehouse
from pharmastock.app.db.models.core_types import Country, DocumentKind, MovementType, UnitState
from pharmastock.services.errors import InvalidRequestError, InvalidTransitionError, NotFoundError

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

TERMINAL_STATES = frozenset({UnitState.sold, UnitState.expired, UnitState.damaged})
IN_TRANSIT_STATES = frozenset({UnitState.in_transit_origin, UnitState.in_transit_destination})
AVAILABLE_STATES = frozenset({UnitState.received_origin, UnitState.available_destination})
# unités physiquement "en main" et valorisées
ON_HAND_STATES = AVAILABLE_STATES | {UnitState.reserved} | IN_TRANSIT_STATES

AVAILABLE_STATE_BY_COUNTRY = {
    Country.origin: UnitState.received_origin,
    Country.destination: UnitState.available_destination,
}

LEGAL_TRANSITIONS: dict[UnitState, frozenset[UnitState]] = {
    UnitState.received_origin: frozenset(
        {UnitState.in_transit_origin, UnitState.in_transit_destination, UnitState.reserved}
    ),
    UnitState.in_transit_origin: frozenset({UnitState.received_origin}),
    UnitState.in_transit_destination: frozenset({UnitState.available_destination}),
    UnitState.available_destination: frozenset({UnitState.reserved}),
    UnitState.reserved: frozenset(
        {UnitState.sold, UnitState.available_destination, UnitState.received_origin}
    ),
    UnitState.sold: frozenset(),
    UnitState.expired: frozenset(),
    UnitState.damaged: frozenset(),
}

LEGAL_COUNTRY_STATES: dict[Country, frozenset[UnitState]] = {
    Country.origin: frozenset(
        {
            UnitState.received_origin,
            UnitState.in_transit_origin,
            UnitState.in_transit_destination,
            UnitState.reserved,
        }
    )
    | TERMINAL_STATES,
    Country.destination: frozenset({UnitState.available_destination, UnitState.reserved}) | TERMINAL_STATES,
}

CENT = Decimal("0.01")


@dataclass(frozen=True)
class DocumentRef:
    id: str
    kind: DocumentKind
    number: str = ""


@dataclass(frozen=True)
class UnitStats:
    total: int
    available: int
    reserved: int
    sold: int
    in_transit: int
    near_expiry: int
    expired: int
    valuation: Decimal


# ---------- Règles ----------
def available_state_for(country: Country) -> UnitState:
    return AVAILABLE_STATE_BY_COUNTRY[country]


def is_available(unit: Unit) -> bool:
    return unit.state == available_state_for(unit.country)


def can_transition(from_state: UnitState, to_state: UnitState) -> bool:
    if from_state in TERMINAL_STATES:
        return False
    # correction terminale : tout état non terminal -> expired / damaged
    if to_state in (UnitState.expired, UnitState.damaged):
        return True
    return to_state in LEGAL_TRANSITIONS[from_state]


def is_legal_combination(country: Country, state: UnitState) -> bool:
    return state in LEGAL_COUNTRY_STATES[country]


def is_reservation_expired(unit: Unit, now: datetime | None = None) -> bool:
    """Expiration paresseuse : aucune tâche de fond, le lecteur vérifie."""
    if unit.state != UnitState.reserved or unit.reservation_expires_at is None:
        return False
    return as_utc(unit.reservation_expires_at) <= (now or utcnow())


def landed_cost(unit: Unit) -> Decimal:
    return Decimal(unit.unit_cost) + Decimal(unit.freight_cost or 0)


# ---------- Lecture ----------
def get_unit(db: Session, unit_id: int) -> Unit:
    unit = db.get(Unit, unit_id)
    if unit is None:
        raise NotFoundError("Unit", unit_id)
    return unit


def get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product", product_id)
    return product


def get_warehouse(db: Session, warehouse_id: int) -> Warehouse:
    warehouse = db.get(Warehouse, warehouse_id)
    if warehouse is None:
        raise NotFoundError("Warehouse", warehouse_id)
    return warehouse


def load_units(db: Session, unit_ids: Iterable[int]) -> list[Unit]:
    """Charge toutes les unités demandées (ordre préservé) ; NotFound si une manque."""
    ids = list(dict.fromkeys(int(uid) for uid in unit_ids))
    if not ids:
        return []
    rows = db.execute(select(Unit).where(Unit.id.in_(ids))).scalars().all()
    by_id = {u.id: u for u in rows}
    missing = [uid for uid in ids if uid not in by_id]
    if missing:
        raise NotFoundError("Unit", missing[0])
    return [by_id[uid] for uid in ids]


def search_units(
    db: Session,
    *,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    country: Country | None = None,
    state: UnitState | None = None,
    lot_code: str | None = None,
    purchase_order_id: str | None = None,
    sale_document_id: str | None = None,
    reserved_for: str | None = None,
    expiry_from: date | None = None,
    expiry_to: date | None = None,
) -> list[Unit]:
    stmt = select(Unit).order_by(Unit.id)

    if product_id is not None:
        stmt = stmt.where(Unit.product_id == product_id)
    if warehouse_id is not None:
        stmt = stmt.where(Unit.warehouse_id == warehouse_id)
    if country is not None:
        stmt = stmt.where(Unit.country == country)
    if state is not None:
        stmt = stmt.where(Unit.state == state)
    if lot_code is not None:
        stmt = stmt.where(Unit.lot_code == lot_code)
    if purchase_order_id is not None:
        stmt = stmt.where(Unit.purchase_order_id == purchase_order_id)
    if sale_document_id is not None:
        stmt = stmt.where(Unit.sale_document_id == sale_document_id)
    if reserved_for is not None:
        stmt = stmt.where(Unit.reserved_for == reserved_for)
    if expiry_from is not None:
        stmt = stmt.where(Unit.expiry_date >= expiry_from)
    if expiry_to is not None:
        stmt = stmt.where(Unit.expiry_date <= expiry_to)

    return list(db.execute(stmt).scalars().all())


def units_near_expiry(db: Session, days: int = 30, *, today: date | None = None) -> list[Unit]:
    """Unités disponibles qui vencent dans ]today, today+days], triées FEFO."""
    today = today or date.today()
    stmt = (
        select(Unit)
        .where(Unit.state.in_(AVAILABLE_STATES))
        .where(Unit.expiry_date > today)
        .where(Unit.expiry_date <= today + timedelta(days=days))
        .order_by(Unit.expiry_date.asc(), Unit.id.asc())
    )
    return list(db.execute(stmt).scalars().all())


def unit_stats(
    db: Session,
    *,
    product_id: int | None = None,
    warehouse_id: int | None = None,
    country: Country | None = None,
    today: date | None = None,
    near_expiry_days: int = 30,
) -> UnitStats:
    today = today or date.today()
    units = search_units(db, product_id=product_id, warehouse_id=warehouse_id, country=country)

    available = [u for u in units if u.state in AVAILABLE_STATES]
    reserved = [u for u in units if u.state == UnitState.reserved]
    in_transit = [u for u in units if u.state in IN_TRANSIT_STATES]
    horizon = today + timedelta(days=near_expiry_days)

    return UnitStats(
        total=len(units),
        available=len(available),
        reserved=len(reserved),
        sold=sum(1 for u in units if u.state == UnitState.sold),
        in_transit=len(in_transit),
        near_expiry=sum(1 for u in available + reserved if today < u.expiry_date <= horizon),
        expired=sum(1 for u in units if u.state == UnitState.expired),
        valuation=sum((landed_cost(u) for u in units if u.state in ON_HAND_STATES), Decimal("0")),
    )


# ---------- Écriture ----------
def append_movement(
    db: Session,
    unit: Unit,
    movement_type: MovementType,
    *,
    actor: str,
    note: str | None = None,
    from_state: UnitState | None = None,
    to_state: UnitState | None = None,
    from_warehouse_id: int | None = None,
    to_warehouse_id: int | None = None,
    document: DocumentRef | None = None,
    happened_at: datetime | None = None,
) -> UnitMovement:
    mv = UnitMovement(
        unit=unit,
        movement_type=movement_type,
        happened_at=happened_at or utcnow(),
        from_state=from_state,
        to_state=to_state,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        actor=actor,
        note=note,
        related_document_type=document.kind if document else None,
        related_document_id=document.id if document else None,
        related_document_number=document.number if document else None,
    )
    db.add(mv)
    return mv


def clear_reservation(unit: Unit) -> None:
    unit.reserved_for = None
    unit.reserved_at = None
    unit.reservation_expires_at = None


def transition(
    db: Session,
    unit: Unit,
    new_state: UnitState,
    *,
    movement_type: MovementType,
    actor: str,
    note: str | None = None,
    document: DocumentRef | None = None,
    to_warehouse: Warehouse | None = None,
    now: datetime | None = None,
) -> UnitMovement:
    """Transition gardée + mouvement. Lève InvalidTransitionError si interdite."""
    if not can_transition(unit.state, new_state):
        raise InvalidTransitionError(unit.id, unit.state, new_state)

    now = now or utcnow()
    old_state = unit.state
    old_warehouse_id = unit.warehouse_id

    unit.state = new_state
    if to_warehouse is not None:
        unit.warehouse_id = to_warehouse.id
        unit.warehouse_name = to_warehouse.name
        unit.country = to_warehouse.country
    unit.updated_by = actor
    unit.updated_at = now

    return append_movement(
        db,
        unit,
        movement_type,
        actor=actor,
        note=note,
        from_state=old_state,
        to_state=new_state,
        from_warehouse_id=old_warehouse_id,
        to_warehouse_id=unit.warehouse_id,
        document=document,
        happened_at=now,
    )


def correct_state(
    db: Session,
    unit: Unit,
    new_state: UnitState,
    *,
    actor: str = SYSTEM_ACTOR,
    note: str,
    now: datetime | None = None,
) -> UnitMovement:
    """
    Chemin de réparation (reconciliation) : remet une unité incohérente dans
    l'état disponible de son pays. Hors table de transitions, mais jamais
    depuis un état terminal, et toujours tracé par un mouvement ADJUSTMENT.
    """
    if unit.state in TERMINAL_STATES:
        raise InvalidTransitionError(unit.id, unit.state, new_state)

    now = now or utcnow()
    old_state = unit.state
    unit.state = new_state
    if new_state != UnitState.reserved:
        clear_reservation(unit)
    unit.updated_by = actor
    unit.updated_at = now

    return append_movement(
        db,
        unit,
        MovementType.adjustment,
        actor=actor,
        note=note,
        from_state=old_state,
        to_state=new_state,
        from_warehouse_id=unit.warehouse_id,
        to_warehouse_id=unit.warehouse_id,
        happened_at=now,
    )


def receive_lot(
    db: Session,
    *,
    product_id: int,
    warehouse_id: int,
    quantity: int,
    lot_code: str,
    expiry_date: date,
    unit_cost: Decimal,
    purchase_order_id: str,
    purchase_order_number: str,
    actor: str,
    received_at: datetime | None = None,
    purchase_fx_rate: Decimal | None = None,
    payment_fx_rate: Decimal | None = None,
    reserve_for: DocumentRef | None = None,
    reservation_days: int = 30,
) -> list[Unit]:
    """
    Réception d'une OC : une ligne par unité physique (même lot/coût/vencimiento).

    Avec `reserve_for`, les unités naissent déjà réservées pour le document
    (OC issue d'un requerimiento lié à une cotización).
    """
    if quantity <= 0:
        raise InvalidRequestError("quantity must be > 0")
    if Decimal(unit_cost) < 0:
        raise InvalidRequestError("unit_cost must be >= 0")

    product = get_product(db, product_id)
    warehouse = get_warehouse(db, warehouse_id)

    now = utcnow()
    received_at = received_at or now
    initial_state = UnitState.reserved if reserve_for else available_state_for(warehouse.country)
    po_ref = DocumentRef(id=purchase_order_id, kind=DocumentKind.purchase_order, number=purchase_order_number)

    units: list[Unit] = []
    for _ in range(quantity):
        unit = Unit(
            product_id=product.id,
            product_sku=product.sku,
            product_name=product.name,
            lot_code=lot_code,
            expiry_date=expiry_date,
            warehouse_id=warehouse.id,
            warehouse_name=warehouse.name,
            country=warehouse.country,
            state=initial_state,
            unit_cost=Decimal(unit_cost),
            purchase_fx_rate=purchase_fx_rate,
            payment_fx_rate=payment_fx_rate,
            purchase_order_id=purchase_order_id,
            purchase_order_number=purchase_order_number,
            received_at=received_at,
            created_by=actor,
            created_at=now,
        )
        if reserve_for:
            unit.reserved_for = reserve_for.id
            unit.reserved_at = now
            unit.reservation_expires_at = now + timedelta(days=reservation_days)
        db.add(unit)

        append_movement(
            db,
            unit,
            MovementType.reservation if reserve_for else MovementType.receipt,
            actor=actor,
            note=(
                f"Receipt and automatic reservation for {reserve_for.kind.value} {reserve_for.id}"
                if reserve_for
                else "Initial lot receipt"
            ),
            to_state=initial_state,
            to_warehouse_id=warehouse.id,
            document=po_ref,
            happened_at=received_at,
        )
        units.append(unit)

    db.flush()
    logger.info(
        "Received %s unit(s) of %s (lot %s) into %s as %s",
        quantity,
        product.sku,
        lot_code,
        warehouse.code,
        initial_state.value,
    )
    return units


def move_within_origin(
    db: Session,
    unit_ids: Iterable[int],
    *,
    actor: str,
    document: DocumentRef | None = None,
) -> list[Unit]:
    """received_origin -> in_transit_origin (le magasin change à l'arrivée)."""
    units = load_units(db, unit_ids)
    for unit in units:
        transition(db, unit, UnitState.in_transit_origin, movement_type=MovementType.transfer, actor=actor, document=document)
    db.flush()
    return units


def complete_origin_move(
    db: Session,
    unit_ids: Iterable[int],
    *,
    warehouse_id: int,
    actor: str,
    document: DocumentRef | None = None,
) -> list[Unit]:
    warehouse = get_warehouse(db, warehouse_id)
    if warehouse.country != Country.origin:
        raise InvalidRequestError(f"Warehouse {warehouse.code} is not an origin-country warehouse")

    units = load_units(db, unit_ids)
    for unit in units:
        transition(
            db,
            unit,
            UnitState.received_origin,
            movement_type=MovementType.transfer,
            actor=actor,
            document=document,
            to_warehouse=warehouse,
        )
    db.flush()
    return units


def dispatch_to_destination(
    db: Session,
    unit_ids: Iterable[int],
    *,
    actor: str,
    document: DocumentRef | None = None,
) -> list[Unit]:
    """received_origin -> in_transit_destination. Le pays reste ORIGIN jusqu'à l'arrivée."""
    units = load_units(db, unit_ids)
    for unit in units:
        transition(
            db,
            unit,
            UnitState.in_transit_destination,
            movement_type=MovementType.transfer,
            actor=actor,
            note="Dispatched to destination country",
            document=document,
        )
    db.flush()
    return units


def receive_at_destination(
    db: Session,
    unit_ids: Iterable[int],
    *,
    warehouse_id: int,
    actor: str,
    freight_cost: Decimal | None = None,
    document: DocumentRef | None = None,
) -> list[Unit]:
    """in_transit_destination -> available_destination ; capture le flete prorrateado."""
    warehouse = get_warehouse(db, warehouse_id)
    if warehouse.country != Country.destination:
        raise InvalidRequestError(f"Warehouse {warehouse.code} is not a destination-country warehouse")
    if freight_cost is not None and Decimal(freight_cost) < 0:
        raise InvalidRequestError("freight_cost must be >= 0")

    units = load_units(db, unit_ids)
    for unit in units:
        transition(
            db,
            unit,
            UnitState.available_destination,
            movement_type=MovementType.transfer,
            actor=actor,
            note="Received in destination country",
            document=document,
            to_warehouse=warehouse,
        )
        if freight_cost is not None:
            unit.freight_cost = Decimal(freight_cost)
    db.flush()
    return units


def mark_sold(
    db: Session,
    unit_ids: Iterable[int],
    *,
    document: DocumentRef,
    total_price: Decimal,
    actor: str,
) -> list[Unit]:
    """
    reserved -> sold pour toutes les unités (tout ou rien : validation avant
    toute écriture). Le prix total est prorraté par unité.
    """
    units = load_units(db, unit_ids)
    if not units:
        raise InvalidRequestError("unit_ids must not be empty")

    for unit in units:
        if not can_transition(unit.state, UnitState.sold):
            raise InvalidTransitionError(unit.id, unit.state, UnitState.sold)
        if unit.reserved_for and unit.reserved_for != document.id:
            raise InvalidRequestError(f"Unit {unit.id} is reserved for another document ({unit.reserved_for})")

    unit_price = (Decimal(total_price) / len(units)).quantize(CENT, rounding=ROUND_HALF_UP)
    now = utcnow()
    for unit in units:
        transition(
            db,
            unit,
            UnitState.sold,
            movement_type=MovementType.sale,
            actor=actor,
            note=f"Sale registered: {document.number or document.id}",
            document=document,
            now=now,
        )
        clear_reservation(unit)
        unit.sale_document_id = document.id
        unit.sale_document_number = document.number
        unit.sold_at = now
        unit.sale_price = unit_price

    db.flush()
    logger.info("Sold %s unit(s) on %s %s", len(units), document.kind.value, document.id)
    return units


def _mark_terminal(
    db: Session,
    unit_id: int,
    new_state: UnitState,
    movement_type: MovementType,
    *,
    actor: str,
    note: str | None,
) -> Unit:
    unit = get_unit(db, unit_id)
    transition(db, unit, new_state, movement_type=movement_type, actor=actor, note=note)
    clear_reservation(unit)
    db.flush()
    return unit


def mark_expired(db: Session, unit_id: int, *, actor: str, note: str | None = None) -> Unit:
    return _mark_terminal(db, unit_id, UnitState.expired, MovementType.expiry, actor=actor, note=note)


def mark_damaged(db: Session, unit_id: int, *, actor: str, note: str | None = None) -> Unit:
    return _mark_terminal(db, unit_id, UnitState.damaged, MovementType.damage, actor=actor, note=note)
