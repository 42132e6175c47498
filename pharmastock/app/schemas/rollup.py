from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from pharmastock.app.db.models.core_types import Country


class StockRollupRead(BaseModel):
    product_id: int
    warehouse_id: int
    country: Country

    qty_received_origin: int
    qty_in_transit_origin: int
    qty_in_transit_destination: int
    qty_available_destination: int
    qty_reserved: int
    qty_sold: int
    qty_expired: int
    qty_damaged: int
    qty_total: int

    valuation: Decimal
    avg_unit_cost: Decimal
    near_expiry_30: int
    near_expiry_90: int
    avg_days_to_expiry: int | None
    is_critical: bool  # READ ONLY, cache reconstruit depuis le ledger
    computed_at: datetime

    class Config:
        from_attributes = True
