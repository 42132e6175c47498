from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmastock.app.api.deps import get_db
from pharmastock.app.api.v1.serializers import release_payload, reservation_payload
from pharmastock.app.api.v1.endpoints.availability import ProductQuantity
from pharmastock.app.db.models.models_v1 import Unit
from pharmastock.app.db.models.core_types import DocumentKind
from pharmastock.services.aggregation import rebuild_rollups
from pharmastock.services.availability import AvailabilityRequest
from pharmastock.services.ledger import DocumentRef
from pharmastock.services.procurement import RequirementOutbox
from pharmastock.services.reservations import (
    extend_reservation,
    release_document,
    release_units,
    reserve_units,
)

router = APIRouter(prefix="/reservations")


class ReservationCreate(BaseModel):
    document_id: str = Field(min_length=1, max_length=64)
    document_kind: DocumentKind = DocumentKind.quote
    document_number: str = Field(default="", max_length=64)
    actor: str = Field(min_length=1, max_length=64)
    validity_hours: int | None = Field(default=None, gt=0)
    prefer_destination_country: bool = True
    # faltante -> requerimiento d'achat (outbox)
    raise_requirements: bool = True
    products: list[ProductQuantity] = Field(min_length=1)


class ReleaseRequest(BaseModel):
    unit_ids: list[int] = Field(min_length=1)
    reason: str = Field(min_length=1)
    actor: str = Field(min_length=1, max_length=64)


class ExtendRequest(BaseModel):
    hours: int = Field(gt=0)
    reason: str = Field(min_length=1)
    actor: str = Field(min_length=1, max_length=64)


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1)
    actor: str = Field(min_length=1, max_length=64)


def refresh_rollups(db: Session, product_ids) -> None:
    """Le cache suit le ledger après chaque mutation."""
    for pid in sorted(set(product_ids)):
        rebuild_rollups(db, product_id=pid)


def _product_ids_of(db: Session, unit_ids) -> list[int]:
    ids = list(unit_ids)
    if not ids:
        return []
    return list(db.execute(select(Unit.product_id).where(Unit.id.in_(ids)).distinct()).scalars())


@router.post("")
def create_reservation(payload: ReservationCreate, db: Session = Depends(get_db)):
    outcome = reserve_units(
        db,
        [AvailabilityRequest(p.product_id, p.quantity) for p in payload.products],
        document=DocumentRef(payload.document_id, payload.document_kind, payload.document_number),
        actor=payload.actor,
        validity_hours=payload.validity_hours,
        prefer_destination_country=payload.prefer_destination_country,
        procurement=RequirementOutbox(db) if payload.raise_requirements else None,
    )
    refresh_rollups(db, [p.product_id for p in outcome.products])

    db.commit()
    return reservation_payload(outcome)


@router.post("/release")
def release(payload: ReleaseRequest, db: Session = Depends(get_db)):
    """Libération unité par unité : jamais tout-ou-rien, rejouable."""
    result = release_units(db, payload.unit_ids, reason=payload.reason, actor=payload.actor)
    refresh_rollups(db, _product_ids_of(db, result.succeeded))

    db.commit()
    return release_payload(result)


@router.post("/{document_id}/extend")
def extend(document_id: str, payload: ExtendRequest, db: Session = Depends(get_db)):
    units = extend_reservation(db, document_id, hours=payload.hours, reason=payload.reason, actor=payload.actor)

    db.commit()
    return {
        "document_id": document_id,
        "unit_ids": [u.id for u in units],
        "expires_at": max(u.reservation_expires_at for u in units),
    }


@router.post("/{document_id}/cancel")
def cancel(document_id: str, payload: CancelRequest, db: Session = Depends(get_db)):
    result = release_document(db, document_id, reason=payload.reason, actor=payload.actor)
    refresh_rollups(db, _product_ids_of(db, result.succeeded))

    db.commit()
    return release_payload(result)
