from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmastock.app.api.deps import get_db
from pharmastock.app.db.models.models_v1 import Warehouse
from pharmastock.app.db.models.core_types import Country

router = APIRouter(prefix="/warehouses")


class WarehouseCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=200)
    country: Country
    is_traveler: bool = False
    next_departure: date | None = None
    avg_freight_cost: Decimal | None = Field(default=None, ge=0)
    active: bool = True


class DepartureUpdate(BaseModel):
    next_departure: date | None = None


def _payload(w: Warehouse):
    return {
        "id": w.id,
        "code": w.code,
        "name": w.name,
        "country": w.country,
        "is_traveler": w.is_traveler,
        "next_departure": w.next_departure,
        "avg_freight_cost": w.avg_freight_cost,
        "active": w.active,
    }


@router.get("")
def list_warehouses(
    country: Country | None = None,
    db: Session = Depends(get_db),
):
    stmt = select(Warehouse).order_by(Warehouse.country, Warehouse.code)
    if country is not None:
        stmt = stmt.where(Warehouse.country == country)

    rows = db.execute(stmt).scalars().all()
    return [_payload(w) for w in rows]


@router.post("")
def create_warehouse(payload: WarehouseCreate, db: Session = Depends(get_db)):
    exists = db.execute(select(Warehouse).where(Warehouse.code == payload.code)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Warehouse code already exists")
    if payload.is_traveler and payload.country != Country.origin:
        raise HTTPException(status_code=400, detail="A traveler warehouse must be in the origin country")

    w = Warehouse(**payload.model_dump())
    db.add(w)
    db.commit()
    db.refresh(w)
    return _payload(w)


@router.patch("/{warehouse_id}/departure")
def set_departure(warehouse_id: int, payload: DepartureUpdate, db: Session = Depends(get_db)):
    """Date du prochain départ d'un viajero (estimation du délai)."""
    w = db.get(Warehouse, warehouse_id)
    if not w:
        raise HTTPException(status_code=404, detail="Warehouse not found")
    if not w.is_traveler:
        raise HTTPException(status_code=400, detail="Only traveler warehouses have departures")

    w.next_departure = payload.next_departure
    db.commit()
    db.refresh(w)
    return _payload(w)
