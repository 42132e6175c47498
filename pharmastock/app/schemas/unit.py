from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from pharmastock.app.db.models.core_types import Country, DocumentKind, MovementType, UnitState


class UnitMovementRead(BaseModel):
    id: int
    movement_type: MovementType
    happened_at: datetime
    from_state: UnitState | None
    to_state: UnitState | None
    from_warehouse_id: int | None
    to_warehouse_id: int | None
    actor: str
    note: str | None
    related_document_type: DocumentKind | None
    related_document_id: str | None
    related_document_number: str | None

    class Config:
        from_attributes = True


class UnitRead(BaseModel):
    id: int
    product_id: int
    product_sku: str
    product_name: str

    lot_code: str
    expiry_date: date

    warehouse_id: int
    warehouse_name: str
    country: Country
    state: UnitState

    unit_cost: Decimal
    freight_cost: Decimal | None
    purchase_fx_rate: Decimal | None
    payment_fx_rate: Decimal | None

    purchase_order_id: str
    purchase_order_number: str
    received_at: datetime

    sale_document_id: str | None
    sale_document_number: str | None
    sold_at: datetime | None
    sale_price: Decimal | None

    reserved_for: str | None
    reserved_at: datetime | None
    reservation_expires_at: datetime | None

    version: int  # verrou optimiste, READ ONLY

    class Config:
        from_attributes = True


class UnitDetail(UnitRead):
    movements: list[UnitMovementRead] = []
