"""
Sélection FEFO (First Expired, First Out).

Lecture seule : ne modifie jamais l'état.
"""
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from pharmastock.app.db.models.models_v1 import Unit, Warehouse
from pharmastock.services.ledger import AVAILABLE_STATE_BY_COUNTRY


@dataclass(frozen=True)
class FefoPick:
    unit: Unit
    rank: int  # 1 = vence en premier


def available_units_stmt(product_id: int, warehouse_id: int | None = None):
    """Unités du produit dans l'état "disponible" de LEUR pays, en almacén actif, ordre FEFO stable."""
    available_for_country = or_(
        *(
            and_(Unit.country == country, Unit.state == state)
            for country, state in AVAILABLE_STATE_BY_COUNTRY.items()
        )
    )
    stmt = (
        select(Unit)
        .join(Warehouse, Warehouse.id == Unit.warehouse_id)
        .where(Unit.product_id == product_id)
        .where(available_for_country)
        .where(Warehouse.active.is_(True))
        # égalité de vencimiento -> ordre d'insertion dans le ledger
        .order_by(Unit.expiry_date.asc(), Unit.id.asc())
    )
    if warehouse_id is not None:
        stmt = stmt.where(Unit.warehouse_id == warehouse_id)
    return stmt


def select_fefo(
    db: Session,
    product_id: int,
    quantity: int,
    warehouse_id: int | None = None,
) -> list[FefoPick]:
    """
    Retourne au plus `quantity` unités triées par vencimiento croissant.

    Moins d'unités que demandé n'est pas une erreur : l'appelant compare
    len(résultat) à sa demande.
    """
    if quantity <= 0:
        return []

    units = db.execute(available_units_stmt(product_id, warehouse_id).limit(quantity)).scalars().all()
    return [FefoPick(unit=u, rank=i) for i, u in enumerate(units, start=1)]
