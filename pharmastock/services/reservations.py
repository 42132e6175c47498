"""
Reservation engine.

reserve_units : engage une recommandation de disponibilité en réservant des
unités précises pour un document commercial, pour une durée de validité.

    - le document référencé doit exister (DocumentDirectory), sinon NotFoundError
    - toutes les mutations d'un appel = UN savepoint (tout ou rien)
    - conflit (version changée / unité plus disponible au relu verrouillé)
      -> rollback du savepoint, relecture fraîche, nouvel essai
      (reservation_max_attempts), puis ConcurrentModificationError
    - faltante -> stock virtuel (aucune unité créée), transmis au flux achats

release_units : jamais atomique pour le lot ; chaque unité réussit ou
échoue seule, et une unité déjà libre est un no-op.

L'expiration des réservations est paresseuse (cf. ledger.is_reservation_expired
et la reconciliation), il n'y a pas de timer.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from pharmastock.app.config import Settings, get_settings
from pharmastock.app.db.base import as_utc, utcnow
from pharmastock.app.db.models.models_v1 import Unit, UnitMovement
from pharmastock.app.db.models.core_types import Country, MovementType, UnitState
from pharmastock.services.availability import AvailabilityRequest, ProductAvailability, product_availability
from pharmastock.services.collaborators import DocumentDirectory, SqlDocumentDirectory
from pharmastock.services.errors import ConcurrentModificationError, InvalidRequestError, NotFoundError
from pharmastock.services.fefo import select_fefo
from pharmastock.services.ledger import (
    DocumentRef,
    append_movement,
    available_state_for,
    clear_reservation,
    is_available,
    transition,
)
from pharmastock.services.procurement import ProcurementGateway, RequirementRef, Shortfall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WarehouseReservation:
    warehouse_id: int
    warehouse_name: str
    country: Country
    unit_ids: list[int]
    transit_days: int
    estimated_arrival: date

    @property
    def quantity(self) -> int:
        return len(self.unit_ids)


@dataclass
class ProductReservation:
    product_id: int
    sku: str
    name: str
    requested: int
    by_warehouse: list[WarehouseReservation] = field(default_factory=list)
    shortfall: int = 0
    requirement: RequirementRef | None = None

    @property
    def reserved_quantity(self) -> int:
        return sum(w.quantity for w in self.by_warehouse)

    @property
    def quantity_destination(self) -> int:
        return sum(w.quantity for w in self.by_warehouse if w.country == Country.destination)

    @property
    def quantity_origin(self) -> int:
        return sum(w.quantity for w in self.by_warehouse if w.country == Country.origin)

    @property
    def unit_ids(self) -> list[int]:
        return [uid for w in self.by_warehouse for uid in w.unit_ids]


@dataclass
class ReservationOutcome:
    document_id: str
    reserved_at: datetime
    expires_at: datetime
    validity_hours: int
    products: list[ProductReservation]
    attempts: int = 1

    @property
    def total_requested(self) -> int:
        return sum(p.requested for p in self.products)

    @property
    def units_destination(self) -> int:
        return sum(p.quantity_destination for p in self.products)

    @property
    def units_origin(self) -> int:
        return sum(p.quantity_origin for p in self.products)

    @property
    def units_virtual(self) -> int:
        return sum(p.shortfall for p in self.products)

    @property
    def max_transit_days(self) -> int:
        return max((w.transit_days for p in self.products for w in p.by_warehouse), default=0)

    @property
    def estimated_completion(self) -> date:
        return self.reserved_at.date() + timedelta(days=self.max_transit_days)


@dataclass(frozen=True)
class ReleaseFailure:
    unit_id: int
    reason: str


@dataclass
class ReleaseResult:
    succeeded: list[int] = field(default_factory=list)
    already_released: list[int] = field(default_factory=list)
    failed: list[ReleaseFailure] = field(default_factory=list)


# ---------- Réservation ----------
def _normalize(allocations: Iterable[AvailabilityRequest | tuple[int, int]]) -> list[AvailabilityRequest]:
    items = [a if isinstance(a, AvailabilityRequest) else AvailabilityRequest(*a) for a in allocations]
    if not items:
        raise InvalidRequestError("At least one product allocation is required")
    for a in items:
        if a.quantity <= 0:
            raise InvalidRequestError(f"Quantity for product {a.product_id} must be > 0")
    return items


def _lock_units(db: Session, unit_ids: list[int]) -> list[Unit]:
    # relu frais + verrou ligne (no-op sous SQLite)
    rows = db.execute(
        select(Unit)
        .where(Unit.id.in_(unit_ids))
        .order_by(Unit.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    return list(rows)


def _reserve_product(
    db: Session,
    alloc: AvailabilityRequest,
    *,
    document: DocumentRef,
    actor: str,
    now: datetime,
    expires_at: datetime,
    prefer_destination_country: bool,
    today: date,
    settings: Settings,
) -> tuple[ProductReservation, ProductAvailability]:
    availability = product_availability(
        db,
        alloc.product_id,
        alloc.quantity,
        include_recommendation=True,
        prefer_destination_country=prefer_destination_country,
        today=today,
        settings=settings,
    )
    result = ProductReservation(
        product_id=availability.product_id,
        sku=availability.sku,
        name=f"{availability.brand} {availability.name}".strip(),
        requested=alloc.quantity,
    )

    for draw in availability.recommendation.draws:
        picks = select_fefo(db, alloc.product_id, draw.quantity, draw.warehouse_id)
        if len(picks) < draw.quantity:
            raise ConcurrentModificationError(
                f"Stock of product {alloc.product_id} in warehouse {draw.warehouse_id} changed during reservation"
            )

        units = _lock_units(db, [p.unit.id for p in picks])
        # seul l'état fait foi ; un reserved_for résiduel est écrasé plus bas
        taken = [u.id for u in units if not is_available(u)]
        if taken or len(units) != draw.quantity:
            raise ConcurrentModificationError("Units no longer available", unit_ids=taken)

        for unit in units:
            transition(
                db,
                unit,
                UnitState.reserved,
                movement_type=MovementType.reservation,
                actor=actor,
                note=f"Reserved for {document.kind.value} {document.number or document.id}",
                document=document,
                now=now,
            )
            unit.reserved_for = document.id
            unit.reserved_at = now
            unit.reservation_expires_at = expires_at

        result.by_warehouse.append(
            WarehouseReservation(
                warehouse_id=draw.warehouse_id,
                warehouse_name=draw.warehouse_name,
                country=draw.country,
                unit_ids=[u.id for u in units],
                transit_days=draw.transit_days,
                estimated_arrival=today + timedelta(days=draw.transit_days),
            )
        )

    result.shortfall = max(0, alloc.quantity - result.reserved_quantity)
    # visible pour le produit suivant (autoflush désactivé)
    db.flush()
    return result, availability


def _shortfall_descriptor(
    reservation: ProductReservation,
    availability: ProductAvailability,
    *,
    document: DocumentRef,
    settings: Settings,
) -> Shortfall:
    costs = [w.avg_unit_cost for w in availability.warehouses if w.avg_unit_cost > 0]
    estimated_cost = min(costs) if costs else Decimal("0")
    return Shortfall(
        product_id=reservation.product_id,
        quantity=reservation.shortfall,
        estimated_unit_cost=estimated_cost,
        estimated_freight=Decimal(str(settings.default_freight_cost)),
        estimated_tax=Decimal("0"),
        source_document_id=document.id,
    )


def reserve_units(
    db: Session,
    allocations: Iterable[AvailabilityRequest | tuple[int, int]],
    *,
    document: DocumentRef,
    actor: str,
    validity_hours: int | None = None,
    prefer_destination_country: bool = True,
    procurement: ProcurementGateway | None = None,
    documents: DocumentDirectory | None = None,
    today: date | None = None,
    settings: Settings | None = None,
) -> ReservationOutcome:
    settings = settings or get_settings()
    validity_hours = settings.reservation_validity_hours if validity_hours is None else validity_hours
    if validity_hours <= 0:
        raise InvalidRequestError("validity_hours must be > 0")
    if not document.id:
        raise InvalidRequestError("A referencing document id is required")

    items = _normalize(allocations)
    documents = documents or SqlDocumentDirectory(db)
    if not documents.existing({document.id}):
        raise NotFoundError("Document", document.id)
    today = today or date.today()
    max_attempts = settings.reservation_max_attempts

    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        now = utcnow()
        expires_at = now + timedelta(hours=validity_hours)
        try:
            with db.begin_nested():
                reserved = [
                    _reserve_product(
                        db,
                        alloc,
                        document=document,
                        actor=actor,
                        now=now,
                        expires_at=expires_at,
                        prefer_destination_country=prefer_destination_country,
                        today=today,
                        settings=settings,
                    )
                    for alloc in items
                ]
        except (StaleDataError, ConcurrentModificationError) as exc:
            last_error = exc
            logger.warning(
                "Reservation conflict for document %s (attempt %s/%s): %s",
                document.id,
                attempt,
                max_attempts,
                exc,
            )
            # relecture fraîche au prochain essai
            db.expire_all()
            continue
        break
    else:
        raise ConcurrentModificationError(
            f"Reservation for document {document.id} failed after {max_attempts} attempts: {last_error}",
            unit_ids=getattr(last_error, "unit_ids", None),
            attempts=max_attempts,
        )

    outcome = ReservationOutcome(
        document_id=document.id,
        reserved_at=now,
        expires_at=expires_at,
        validity_hours=validity_hours,
        products=[r for r, _ in reserved],
        attempts=attempt,
    )

    # faltantes : remis au flux achats une fois les unités engagées
    for reservation, availability in reserved:
        if reservation.shortfall and procurement is not None:
            reservation.requirement = procurement.raise_requirement(
                _shortfall_descriptor(reservation, availability, document=document, settings=settings)
            )

    logger.info(
        "Reserved %s unit(s) for %s %s (destination=%s origin=%s virtual=%s) until %s",
        outcome.units_destination + outcome.units_origin,
        document.kind.value,
        document.id,
        outcome.units_destination,
        outcome.units_origin,
        outcome.units_virtual,
        expires_at.isoformat(),
    )
    return outcome


# ---------- Libération ----------
def release_unit(
    db: Session,
    unit: Unit,
    *,
    reason: str,
    actor: str,
    now: datetime | None = None,
) -> None:
    """reserved -> état disponible du pays de l'unité, liaison effacée."""
    previous = unit.reserved_for
    transition(
        db,
        unit,
        available_state_for(unit.country),
        movement_type=MovementType.release,
        actor=actor,
        note=f"Unit released ({previous or 'no reference'}): {reason}",
        now=now,
    )
    clear_reservation(unit)


def release_units(
    db: Session,
    unit_ids: Iterable[int],
    *,
    reason: str,
    actor: str,
) -> ReleaseResult:
    result = ReleaseResult()

    for uid in dict.fromkeys(int(u) for u in unit_ids):
        try:
            with db.begin_nested():
                unit = db.get(Unit, uid, populate_existing=True)
                if unit is None:
                    result.failed.append(ReleaseFailure(uid, "unit not found"))
                elif is_available(unit):
                    result.already_released.append(uid)
                elif unit.state == UnitState.reserved:
                    release_unit(db, unit, reason=reason, actor=actor)
                    db.flush()
                    result.succeeded.append(uid)
                else:
                    result.failed.append(ReleaseFailure(uid, f"unit is {unit.state.value}, cannot be released"))
        except StaleDataError:
            logger.warning("Concurrent modification while releasing unit %s", uid)
            db.expire_all()
            result.failed.append(ReleaseFailure(uid, "concurrent modification"))

    if result.failed:
        logger.warning("Release (%s): %s unit(s) failed", reason, len(result.failed))
    logger.info(
        "Release (%s): %s released, %s already free, %s failed",
        reason,
        len(result.succeeded),
        len(result.already_released),
        len(result.failed),
    )
    return result


def reserved_unit_ids(db: Session, document_id: str) -> list[int]:
    return list(
        db.execute(
            select(Unit.id)
            .where(Unit.reserved_for == document_id)
            .where(Unit.state == UnitState.reserved)
            .order_by(Unit.id)
        ).scalars()
    )


def release_document(db: Session, document_id: str, *, reason: str, actor: str) -> ReleaseResult:
    """Annulation d'une réservation : libère toutes les unités du document."""
    return release_units(db, reserved_unit_ids(db, document_id), reason=reason, actor=actor)


def extend_reservation(
    db: Session,
    document_id: str,
    *,
    hours: int,
    reason: str,
    actor: str,
    settings: Settings | None = None,
) -> list[Unit]:
    """Prolonge la vigencia de toutes les unités réservées pour le document."""
    settings = settings or get_settings()
    if hours <= 0:
        raise InvalidRequestError("hours must be > 0")

    ids = reserved_unit_ids(db, document_id)
    if not ids:
        raise NotFoundError("Reservation", document_id)

    extensions = db.execute(
        select(func.count(UnitMovement.id))
        .where(UnitMovement.unit_id == ids[0])
        .where(UnitMovement.movement_type == MovementType.extension)
    ).scalar_one()
    if extensions >= settings.max_reservation_extensions:
        raise InvalidRequestError(
            f"Reservation {document_id} reached the maximum of {settings.max_reservation_extensions} extensions"
        )

    now = utcnow()
    units = _lock_units(db, ids)
    for unit in units:
        current = as_utc(unit.reservation_expires_at) or now
        unit.reservation_expires_at = current + timedelta(hours=hours)
        unit.updated_by = actor
        unit.updated_at = now
        append_movement(
            db,
            unit,
            MovementType.extension,
            actor=actor,
            note=f"Reservation extended by {hours}h: {reason}",
            from_state=unit.state,
            to_state=unit.state,
            happened_at=now,
        )
    db.flush()
    logger.info("Extended reservation %s by %sh (%s unit(s))", document_id, hours, len(units))
    return units
