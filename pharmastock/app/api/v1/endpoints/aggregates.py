from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from pharmastock.app.api.deps import get_db
from pharmastock.app.db.models.core_types import Country
from pharmastock.app.schemas.rollup import StockRollupRead
from pharmastock.services.aggregation import inventory_summary_by_country, list_rollups, rebuild_rollups

router = APIRouter(prefix="/aggregates")


class RebuildRequest(BaseModel):
    product_id: int | None = None
    warehouse_id: int | None = None


@router.post("/rebuild", response_model=list[StockRollupRead])
def rebuild(payload: RebuildRequest | None = None, db: Session = Depends(get_db)):
    """Reconstruit le cache depuis le ledger (tout, ou un produit / almacén)."""
    payload = payload or RebuildRequest()
    rows = rebuild_rollups(db, product_id=payload.product_id, warehouse_id=payload.warehouse_id)

    db.commit()
    return rows


@router.get("", response_model=list[StockRollupRead])
def get_rollups(
    product_id: int | None = None,
    warehouse_id: int | None = None,
    country: Country | None = None,
    critical_only: bool = False,
    db: Session = Depends(get_db),
):
    """Roll-ups (READ ONLY) : lus tels quels, sans recalcul."""
    return list_rollups(
        db,
        product_id=product_id,
        warehouse_id=warehouse_id,
        country=country,
        critical_only=critical_only,
    )


@router.get("/by-country")
def by_country(db: Session = Depends(get_db)):
    summaries = inventory_summary_by_country(db)
    return {
        country.value: {
            "total_products": s.total_products,
            "total_units": s.total_units,
            "available": s.available,
            "in_transit": s.in_transit,
            "reserved": s.reserved,
            "valuation": s.valuation,
            "critical_products": s.critical_products,
            "out_of_stock_products": s.out_of_stock_products,
            "near_expiry_30": s.near_expiry_30,
            "near_expiry_90": s.near_expiry_90,
        }
        for country, s in summaries.items()
    }
