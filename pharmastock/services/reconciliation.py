"""
Jobs de reconciliation (resync) : ramènent le ledger et les compteurs
dénormalisés vers un état cohérent.

Déclenchés à la demande (endpoint / CLI), jamais par un timer interne.

Chaque job :
    - parcourt les enregistrements par paquets (reconcile_batch_size)
    - UN savepoint par paquet : un paquet en échec est annulé, compté
      dans `errors`, et le scan continue
    - retourne un ReconciliationReport détaillé (avant / après / action)

Convergence : relancer un job sans changement du ledger = 0 correction.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pharmastock.app.config import Settings, get_settings
from pharmastock.app.db.base import utcnow
from pharmastock.app.db.models.models_v1 import Product, Unit
from pharmastock.app.db.models.core_types import Country, MovementType, UnitState
from pharmastock.services.collaborators import (
    DocumentDirectory,
    SqlDocumentDirectory,
    SqlTransferDirectory,
    TransferDirectory,
)
from pharmastock.services.errors import PharmaStockError
from pharmastock.services.ledger import (
    IN_TRANSIT_STATES,
    SYSTEM_ACTOR,
    TERMINAL_STATES,
    append_movement,
    available_state_for,
    clear_reservation,
    correct_state,
    is_legal_combination,
    is_reservation_expired,
)
from pharmastock.services.reservations import release_unit

logger = logging.getLogger(__name__)

REASON_DOCUMENT_MISSING = "referenced document missing"
REASON_RESERVATION_EXPIRED = "reservation expired"


@dataclass(frozen=True)
class CorrectionDetail:
    record_id: int
    before: str
    after: str
    action: str


@dataclass
class ReconciliationReport:
    job: str
    examined: int = 0
    corrected: int = 0
    errors: int = 0
    details: list[CorrectionDetail] = field(default_factory=list)


def _chunks(ids: Sequence[int], size: int) -> Iterable[list[int]]:
    for i in range(0, len(ids), size):
        yield list(ids[i : i + size])


def _load(db: Session, unit_ids: list[int]) -> list[Unit]:
    return list(
        db.execute(
            select(Unit)
            .where(Unit.id.in_(unit_ids))
            .order_by(Unit.id)
            .execution_options(populate_existing=True)
        ).scalars()
    )


def _run_batches(
    db: Session,
    report: ReconciliationReport,
    ids: Sequence[int],
    batch_size: int,
    process: Callable[[list[int]], list[CorrectionDetail]],
) -> ReconciliationReport:
    total_batches = (len(ids) + batch_size - 1) // batch_size
    for n, chunk in enumerate(_chunks(ids, batch_size), start=1):
        report.examined += len(chunk)
        try:
            with db.begin_nested():
                details = process(chunk)
                db.flush()
        except (SQLAlchemyError, PharmaStockError):
            logger.exception("%s: batch %s/%s failed (%s record(s))", report.job, n, total_batches, len(chunk))
            db.expire_all()
            report.errors += len(chunk)
            continue

        report.details.extend(details)
        report.corrected += len(details)
        logger.info("%s: batch %s/%s done, %s correction(s)", report.job, n, total_batches, len(details))

    logger.info(
        "%s finished: examined=%s corrected=%s errors=%s",
        report.job,
        report.examined,
        report.corrected,
        report.errors,
    )
    return report


# ---------- Réservations orphelines ----------
def reconcile_orphaned_reservations(
    db: Session,
    documents: DocumentDirectory | None = None,
    *,
    now: datetime | None = None,
    actor: str = SYSTEM_ACTOR,
    settings: Settings | None = None,
) -> ReconciliationReport:
    """
    Libère les unités `reserved` dont le document n'existe plus (ou jamais
    renseigné), ainsi que les réservations échues.
    """
    settings = settings or get_settings()
    documents = documents or SqlDocumentDirectory(db)
    now = now or utcnow()
    report = ReconciliationReport(job="orphaned-reservations")

    ids = list(db.execute(select(Unit.id).where(Unit.state == UnitState.reserved).order_by(Unit.id)).scalars())

    def process(chunk: list[int]) -> list[CorrectionDetail]:
        units = _load(db, chunk)
        live = documents.existing({u.reserved_for for u in units if u.reserved_for})
        details = []
        for unit in units:
            if unit.state != UnitState.reserved:
                continue
            if not unit.reserved_for or unit.reserved_for not in live:
                reason = REASON_DOCUMENT_MISSING
            elif is_reservation_expired(unit, now):
                reason = REASON_RESERVATION_EXPIRED
            else:
                continue

            document_id = unit.reserved_for
            release_unit(db, unit, reason=reason, actor=actor, now=now)
            details.append(
                CorrectionDetail(
                    record_id=unit.id,
                    before=f"{UnitState.reserved.value} ({document_id or 'no reference'})",
                    after=unit.state.value,
                    action=f"released: {reason}",
                )
            )
        return details

    return _run_batches(db, report, ids, settings.reconcile_batch_size, process)


# ---------- Incohérences d'état ----------
def reconcile_state_mismatches(
    db: Session,
    transfers: TransferDirectory | None = None,
    *,
    actor: str = SYSTEM_ACTOR,
    settings: Settings | None = None,
) -> ReconciliationReport:
    """
    Pour chaque unité non terminale :
        - combinaison (pays, état) illégale -> état disponible du pays
          (sauf si l'unité est dans un transfert actif)
        - en transit hors de tout transfert actif -> état disponible du pays
        - liaison de réservation sur une unité non réservée -> effacée
    """
    settings = settings or get_settings()
    transfers = transfers or SqlTransferDirectory(db)
    report = ReconciliationReport(job="state-mismatches")

    ids = list(
        db.execute(select(Unit.id).where(Unit.state.not_in(TERMINAL_STATES)).order_by(Unit.id)).scalars()
    )

    def process(chunk: list[int]) -> list[CorrectionDetail]:
        units = _load(db, chunk)
        in_transfer = transfers.active_unit_ids(u.id for u in units)
        details = []
        for unit in units:
            before = f"{unit.country.value}/{unit.state.value}"

            if not is_legal_combination(unit.country, unit.state):
                if unit.id in in_transfer:
                    continue
                action = "illegal state corrected"
            elif unit.state in IN_TRANSIT_STATES and unit.id not in in_transfer:
                action = "stale in-transit corrected"
            elif unit.state != UnitState.reserved and (
                unit.reserved_for or unit.reserved_at or unit.reservation_expires_at
            ):
                stale_ref = unit.reserved_for
                clear_reservation(unit)
                unit.updated_by = actor
                unit.updated_at = utcnow()
                append_movement(
                    db,
                    unit,
                    MovementType.adjustment,
                    actor=actor,
                    note=f"Leftover reservation linkage cleared ({stale_ref or 'no reference'})",
                    from_state=unit.state,
                    to_state=unit.state,
                    from_warehouse_id=unit.warehouse_id,
                    to_warehouse_id=unit.warehouse_id,
                )
                details.append(CorrectionDetail(unit.id, before, before, "reservation linkage cleared"))
                continue
            else:
                continue

            target = available_state_for(unit.country)
            correct_state(db, unit, target, actor=actor, note=f"Reconciliation: {action} ({before})")
            details.append(CorrectionDetail(unit.id, before, f"{unit.country.value}/{target.value}", action))
        return details

    return _run_batches(db, report, ids, settings.reconcile_batch_size, process)


# ---------- Compteurs produits ----------
def expected_counters(by_country_state: dict[tuple[Country, UnitState], int]) -> dict[str, int]:
    """Compteurs d'un produit à partir des comptages (pays, état) du ledger."""

    def qty(country: Country, state: UnitState) -> int:
        return by_country_state.get((country, state), 0)

    reserved = qty(Country.origin, UnitState.reserved) + qty(Country.destination, UnitState.reserved)
    # une unité réservée reste dans le stock de son pays
    origin = qty(Country.origin, UnitState.received_origin) + qty(Country.origin, UnitState.reserved)
    destination = qty(Country.destination, UnitState.available_destination) + qty(
        Country.destination, UnitState.reserved
    )
    in_transit = sum(qty(c, s) for c in Country for s in IN_TRANSIT_STATES)

    return {
        "stock_origin": origin,
        "stock_destination": destination,
        "stock_in_transit": in_transit,
        "stock_reserved": reserved,
        "stock_available": origin + destination - reserved,
    }


def reconcile_stock_counters(db: Session, *, settings: Settings | None = None) -> ReconciliationReport:
    """Recalcule les compteurs de chaque produit ; n'écrit que les champs qui diffèrent."""
    settings = settings or get_settings()
    report = ReconciliationReport(job="stock-counters")

    ids = list(db.execute(select(Product.id).order_by(Product.id)).scalars())

    def process(chunk: list[int]) -> list[CorrectionDetail]:
        rows = db.execute(
            select(Unit.product_id, Unit.country, Unit.state, func.count(Unit.id))
            .where(Unit.product_id.in_(chunk))
            .group_by(Unit.product_id, Unit.country, Unit.state)
        ).all()
        counts: dict[int, dict[tuple[Country, UnitState], int]] = defaultdict(dict)
        for pid, country, state, qty in rows:
            counts[int(pid)][(country, state)] = int(qty)

        products = db.execute(
            select(Product).where(Product.id.in_(chunk)).order_by(Product.id).with_for_update()
        ).scalars()

        details = []
        for product in products:
            expected = expected_counters(counts.get(product.id, {}))
            changed = {f: v for f, v in expected.items() if getattr(product, f) != v}
            if not changed:
                continue

            before = ", ".join(f"{f}={getattr(product, f)}" for f in changed)
            for f, v in changed.items():
                setattr(product, f, v)
            after = ", ".join(f"{f}={v}" for f, v in changed.items())
            details.append(CorrectionDetail(product.id, before, after, "counters updated"))
        return details

    return _run_batches(db, report, ids, settings.reconcile_batch_size, process)
