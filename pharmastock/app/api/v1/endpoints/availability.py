from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from pharmastock.app.api.deps import get_db
from pharmastock.app.api.v1.serializers import availability_payload
from pharmastock.services.availability import AvailabilityRequest, resolve_availability

router = APIRouter(prefix="/availability")


class ProductQuantity(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class AvailabilityQuery(BaseModel):
    products: list[ProductQuantity] = Field(min_length=1)
    include_recommendation: bool = True
    prefer_destination_country: bool = True


@router.post("")
def resolve(payload: AvailabilityQuery, db: Session = Depends(get_db)):
    """
    Disponibilité multi-almacén (READ ONLY)
    - rien n'est réservé ici : voir POST /reservations
    """
    resp = resolve_availability(
        db,
        [AvailabilityRequest(p.product_id, p.quantity) for p in payload.products],
        include_recommendation=payload.include_recommendation,
        prefer_destination_country=payload.prefer_destination_country,
    )
    return availability_payload(resp)
