from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmastock.app.api.deps import get_db
from pharmastock.app.db.models.models_v1 import Product

router = APIRouter(prefix="/products")


class ProductCreate(BaseModel):
    sku: str = Field(min_length=1, max_length=64)
    brand: str = Field(default="", max_length=128)
    name: str = Field(min_length=1, max_length=255)
    presentation: str | None = Field(default=None, max_length=128)
    min_stock: int = Field(default=0, ge=0)
    max_stock: int = Field(default=0, ge=0)
    active: bool = True


@router.get("")
def list_products(db: Session = Depends(get_db)):
    rows = db.execute(select(Product).order_by(Product.sku)).scalars().all()
    return [
        {
            "id": p.id,
            "sku": p.sku,
            "brand": p.brand,
            "name": p.name,
            "presentation": p.presentation,
            "min_stock": p.min_stock,
            "max_stock": p.max_stock,
            "active": p.active,
            # compteurs READ ONLY, écrits par la resync
            "stock_origin": p.stock_origin,
            "stock_destination": p.stock_destination,
            "stock_in_transit": p.stock_in_transit,
            "stock_reserved": p.stock_reserved,
            "stock_available": p.stock_available,
        }
        for p in rows
    ]


@router.post("")
def create_product(payload: ProductCreate, db: Session = Depends(get_db)):
    exists = db.execute(select(Product).where(Product.sku == payload.sku)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="SKU already exists")

    p = Product(
        sku=payload.sku,
        brand=payload.brand,
        name=payload.name,
        presentation=payload.presentation,
        min_stock=payload.min_stock,
        max_stock=payload.max_stock,
        active=payload.active,
    )
    db.add(p)
    db.commit()
    db.refresh(p)

    return {"id": p.id, "sku": p.sku, "name": p.name}
