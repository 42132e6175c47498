"""
Enregistrement minimal des transferts (table miroir du flux logistique).

Une unité en transit DOIT appartenir à un transfert actif, sinon la
reconciliation la considère comme "en transit périmé".
"""
from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmastock.app.db.models.models_v1 import Transfer, TransferLine, Unit, Warehouse
from pharmastock.app.db.models.core_types import Country, TransferStatus
from pharmastock.services.collaborators import ACTIVE_TRANSFER_STATUSES
from pharmastock.services.errors import InvalidRequestError
from pharmastock.services.ledger import IN_TRANSIT_STATES, get_warehouse

logger = logging.getLogger(__name__)


def destination_warehouse(db: Session, warehouse_id: int) -> Warehouse:
    """Almacén d'arrivée d'un transfert ; seul un almacén DESTINATION peut clore le transit."""
    warehouse = get_warehouse(db, warehouse_id)
    if warehouse.country != Country.destination:
        raise InvalidRequestError(f"Warehouse {warehouse_id} is not in the destination country")
    return warehouse


def open_transfer(
    db: Session,
    *,
    number: str,
    from_warehouse_id: int,
    to_warehouse_id: int,
    unit_ids: Iterable[int],
) -> Transfer:
    ids = sorted({int(u) for u in unit_ids})
    if not ids:
        raise InvalidRequestError("A transfer needs at least one unit")

    existing = db.execute(select(Transfer).where(Transfer.number == number)).scalar_one_or_none()
    if existing is not None:
        raise InvalidRequestError(f"Transfer {number} already exists")

    get_warehouse(db, from_warehouse_id)
    destination_warehouse(db, to_warehouse_id)

    transfer = Transfer(
        number=number,
        status=TransferStatus.in_transit,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        lines=[TransferLine(unit_id=uid) for uid in ids],
    )
    db.add(transfer)
    db.flush()
    logger.info("Transfer %s opened with %s unit(s)", number, len(ids))
    return transfer


def close_completed_transfers(db: Session, unit_ids: Iterable[int]) -> list[Transfer]:
    """Passe en RECEIVED les transferts actifs dont plus aucune unité n'est en transit."""
    ids = {int(u) for u in unit_ids}
    if not ids:
        return []

    transfers = db.execute(
        select(Transfer)
        .join(TransferLine, TransferLine.transfer_id == Transfer.id)
        .where(TransferLine.unit_id.in_(ids))
        .where(Transfer.status.in_(ACTIVE_TRANSFER_STATUSES))
        .distinct()
    ).scalars().all()

    closed = []
    for transfer in transfers:
        line_ids = [line.unit_id for line in transfer.lines]
        still_moving = db.execute(
            select(Unit.id).where(Unit.id.in_(line_ids)).where(Unit.state.in_(IN_TRANSIT_STATES)).limit(1)
        ).first()
        if still_moving is None:
            transfer.status = TransferStatus.received
            closed.append(transfer)

    db.flush()
    for transfer in closed:
        logger.info("Transfer %s received", transfer.number)
    return closed
