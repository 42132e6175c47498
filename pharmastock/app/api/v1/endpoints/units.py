from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from pharmastock.app.api.deps import get_db
from pharmastock.app.api.v1.endpoints.reservations import refresh_rollups
from pharmastock.app.config import get_settings
from pharmastock.app.db.models.core_types import Country, DocumentKind, UnitState
from pharmastock.app.schemas.unit import UnitDetail, UnitRead
from pharmastock.services.fefo import select_fefo
from pharmastock.services.ledger import (
    DocumentRef,
    dispatch_to_destination,
    get_unit,
    load_units,
    mark_damaged,
    mark_expired,
    mark_sold,
    receive_at_destination,
    receive_lot,
    search_units,
    unit_stats,
    units_near_expiry,
)
from pharmastock.services.transfers import close_completed_transfers, destination_warehouse, open_transfer

router = APIRouter(prefix="/units")


class LotReceipt(BaseModel):
    product_id: int
    warehouse_id: int
    quantity: int = Field(gt=0)
    lot_code: str = Field(min_length=1, max_length=64)
    expiry_date: date
    unit_cost: Decimal = Field(ge=0)
    purchase_order_id: str = Field(min_length=1, max_length=64)
    purchase_order_number: str = Field(min_length=1, max_length=64)
    purchase_fx_rate: Decimal | None = Field(default=None, gt=0)
    payment_fx_rate: Decimal | None = Field(default=None, gt=0)
    # OC issue d'un requerimiento : unités nées réservées
    reserve_for_document_id: str | None = None
    reserve_for_document_kind: DocumentKind = DocumentKind.quote
    actor: str = Field(min_length=1, max_length=64)


class SaleCreate(BaseModel):
    unit_ids: list[int] = Field(min_length=1)
    document_id: str = Field(min_length=1, max_length=64)
    document_number: str = Field(default="", max_length=64)
    total_price: Decimal = Field(ge=0)
    actor: str = Field(min_length=1, max_length=64)


class WriteOff(BaseModel):
    actor: str = Field(min_length=1, max_length=64)
    note: str | None = None


class Dispatch(BaseModel):
    unit_ids: list[int] = Field(min_length=1)
    transfer_number: str = Field(min_length=1, max_length=64)
    to_warehouse_id: int
    actor: str = Field(min_length=1, max_length=64)


class Arrival(BaseModel):
    unit_ids: list[int] = Field(min_length=1)
    warehouse_id: int
    # flete prorrateado par unité
    freight_cost: Decimal | None = Field(default=None, ge=0)
    actor: str = Field(min_length=1, max_length=64)


@router.get("/fefo")
def fefo(product_id: int, quantity: int, warehouse_id: int | None = None, db: Session = Depends(get_db)):
    """Unités disponibles, vencimiento le plus proche d'abord (READ ONLY)."""
    picks = select_fefo(db, product_id, quantity, warehouse_id)
    return [
        {
            "rank": p.rank,
            "unit_id": p.unit.id,
            "lot_code": p.unit.lot_code,
            "expiry_date": p.unit.expiry_date,
            "warehouse_id": p.unit.warehouse_id,
            "country": p.unit.country,
        }
        for p in picks
    ]


@router.get("/near-expiry", response_model=list[UnitRead])
def near_expiry(days: int = 30, db: Session = Depends(get_db)):
    return units_near_expiry(db, days)


@router.get("/stats")
def stats(
    product_id: int | None = None,
    warehouse_id: int | None = None,
    country: Country | None = None,
    db: Session = Depends(get_db),
):
    s = unit_stats(db, product_id=product_id, warehouse_id=warehouse_id, country=country)
    return {
        "total": s.total,
        "available": s.available,
        "reserved": s.reserved,
        "sold": s.sold,
        "in_transit": s.in_transit,
        "near_expiry": s.near_expiry,
        "expired": s.expired,
        "valuation": s.valuation,
    }


@router.get("", response_model=list[UnitRead])
def list_units(
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
    db: Session = Depends(get_db),
):
    return search_units(
        db,
        product_id=product_id,
        warehouse_id=warehouse_id,
        country=country,
        state=state,
        lot_code=lot_code,
        purchase_order_id=purchase_order_id,
        sale_document_id=sale_document_id,
        reserved_for=reserved_for,
        expiry_from=expiry_from,
        expiry_to=expiry_to,
    )


@router.get("/{unit_id}", response_model=UnitDetail)
def get_one(unit_id: int, db: Session = Depends(get_db)):
    return get_unit(db, unit_id)


@router.post("/receive")
def receive(payload: LotReceipt, db: Session = Depends(get_db)):
    reserve_for = None
    if payload.reserve_for_document_id:
        reserve_for = DocumentRef(payload.reserve_for_document_id, payload.reserve_for_document_kind)

    units = receive_lot(
        db,
        product_id=payload.product_id,
        warehouse_id=payload.warehouse_id,
        quantity=payload.quantity,
        lot_code=payload.lot_code,
        expiry_date=payload.expiry_date,
        unit_cost=payload.unit_cost,
        purchase_order_id=payload.purchase_order_id,
        purchase_order_number=payload.purchase_order_number,
        purchase_fx_rate=payload.purchase_fx_rate,
        payment_fx_rate=payload.payment_fx_rate,
        reserve_for=reserve_for,
        reservation_days=get_settings().requirement_reservation_days,
        actor=payload.actor,
    )
    refresh_rollups(db, [payload.product_id])

    db.commit()
    return {"unit_ids": [u.id for u in units], "state": units[0].state}


@router.post("/sell")
def sell(payload: SaleCreate, db: Session = Depends(get_db)):
    units = mark_sold(
        db,
        payload.unit_ids,
        document=DocumentRef(payload.document_id, DocumentKind.sale, payload.document_number),
        total_price=payload.total_price,
        actor=payload.actor,
    )
    refresh_rollups(db, [u.product_id for u in units])

    db.commit()
    return {
        "unit_ids": [u.id for u in units],
        "unit_price": units[0].sale_price,
        "sold_at": units[0].sold_at,
    }


@router.post("/{unit_id}/expire")
def expire(unit_id: int, payload: WriteOff, db: Session = Depends(get_db)):
    unit = mark_expired(db, unit_id, actor=payload.actor, note=payload.note)
    refresh_rollups(db, [unit.product_id])

    db.commit()
    return {"id": unit.id, "state": unit.state}


@router.post("/{unit_id}/damage")
def damage(unit_id: int, payload: WriteOff, db: Session = Depends(get_db)):
    unit = mark_damaged(db, unit_id, actor=payload.actor, note=payload.note)
    refresh_rollups(db, [unit.product_id])

    db.commit()
    return {"id": unit.id, "state": unit.state}


@router.post("/dispatch")
def dispatch(payload: Dispatch, db: Session = Depends(get_db)):
    """Envoi ORIGIN -> DESTINATION : ouvre le transfert qui couvre ces unités."""
    units = load_units(db, payload.unit_ids)
    from_ids = {u.warehouse_id for u in units}
    if len(from_ids) != 1:
        raise HTTPException(status_code=400, detail="All units must leave from the same warehouse")
    destination_warehouse(db, payload.to_warehouse_id)

    transfer_ref = DocumentRef(payload.transfer_number, DocumentKind.transfer, payload.transfer_number)
    dispatch_to_destination(db, payload.unit_ids, actor=payload.actor, document=transfer_ref)
    transfer = open_transfer(
        db,
        number=payload.transfer_number,
        from_warehouse_id=from_ids.pop(),
        to_warehouse_id=payload.to_warehouse_id,
        unit_ids=payload.unit_ids,
    )
    refresh_rollups(db, [u.product_id for u in units])

    db.commit()
    return {"transfer_id": transfer.id, "number": transfer.number, "unit_ids": [u.id for u in units]}


@router.post("/arrival")
def arrival(payload: Arrival, db: Session = Depends(get_db)):
    units = receive_at_destination(
        db,
        payload.unit_ids,
        warehouse_id=payload.warehouse_id,
        actor=payload.actor,
        freight_cost=payload.freight_cost,
    )
    closed = close_completed_transfers(db, payload.unit_ids)
    # ancien et nouvel almacén
    refresh_rollups(db, [u.product_id for u in units])

    db.commit()
    return {"unit_ids": [u.id for u in units], "closed_transfers": [t.number for t in closed]}
