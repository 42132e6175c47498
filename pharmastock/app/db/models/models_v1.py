from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Numeric,
    Text,
    Enum,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pharmastock.app.db.base import Base, BigIntPK, utcnow
from pharmastock.app.db.models.core_types import (
    Country,
    UnitState,
    MovementType,
    DocumentKind,
    TransferStatus,
    RequirementStatus,
)

# ---------- MASTER DATA ----------
class Warehouse(Base):
    __tablename__ = "warehouses"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    country: Mapped[Country] = mapped_column(Enum(Country, name="country"), nullable=False)

    # un "viajero" transporte le stock ORIGIN -> DESTINATION dans ses bagages
    is_traveler: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    next_departure: Mapped[date | None] = mapped_column(Date)
    avg_freight_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("avg_freight_cost IS NULL OR avg_freight_cost >= 0", name="ck_warehouse_freight_nonneg"),
    )


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    brand: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    presentation: Mapped[str | None] = mapped_column(String(128))
    min_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Compteurs dénormalisés : écrits UNIQUEMENT par la resync (reconciliation)
    stock_origin: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_destination: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_in_transit: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stock_available: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        CheckConstraint("min_stock >= 0", name="ck_product_min_stock_nonneg"),
        CheckConstraint("max_stock >= 0", name="ck_product_max_stock_nonneg"),
    )


# ---------- UNIT LEDGER ----------
class Unit(Base):
    __tablename__ = "units"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    product_sku: Mapped[str] = mapped_column(String(64), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)

    lot_code: Mapped[str] = mapped_column(String(64), nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)

    warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False)
    warehouse_name: Mapped[str] = mapped_column(String(200), nullable=False)
    country: Mapped[Country] = mapped_column(Enum(Country, name="country"), nullable=False)

    state: Mapped[UnitState] = mapped_column(Enum(UnitState, name="unit_state"), nullable=False)

    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    freight_cost: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    # deux taux distincts, conservés pour l'audit
    purchase_fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 6))
    payment_fx_rate: Mapped[Decimal | None] = mapped_column(Numeric(12, 6))

    purchase_order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    purchase_order_number: Mapped[str] = mapped_column(String(64), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    sale_document_id: Mapped[str | None] = mapped_column(String(64))
    sale_document_number: Mapped[str | None] = mapped_column(String(64))
    sold_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sale_price: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))

    reserved_for: Mapped[str | None] = mapped_column(String(64), index=True)
    reserved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reservation_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String(64))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # verrou optimiste : UPDATE ... WHERE version = :lu
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    movements: Mapped[list["UnitMovement"]] = relationship(
        back_populates="unit",
        order_by="UnitMovement.id",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("unit_cost >= 0", name="ck_unit_cost_nonneg"),
        CheckConstraint("freight_cost IS NULL OR freight_cost >= 0", name="ck_unit_freight_nonneg"),
        Index("ix_units_product_state", "product_id", "state"),
        Index("ix_units_warehouse_state", "warehouse_id", "state"),
    )


class UnitMovement(Base):
    """Historique append-only : jamais d'UPDATE ni de DELETE."""

    __tablename__ = "unit_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    unit_id: Mapped[int] = mapped_column(
        ForeignKey("units.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    movement_type: Mapped[MovementType] = mapped_column(Enum(MovementType, name="movement_type"), nullable=False)
    happened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    from_state: Mapped[UnitState | None] = mapped_column(Enum(UnitState, name="unit_state"))
    to_state: Mapped[UnitState | None] = mapped_column(Enum(UnitState, name="unit_state"))
    from_warehouse_id: Mapped[int | None] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"))
    to_warehouse_id: Mapped[int | None] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"))

    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    note: Mapped[str | None] = mapped_column(Text)

    related_document_type: Mapped[DocumentKind | None] = mapped_column(Enum(DocumentKind, name="document_kind"))
    related_document_id: Mapped[str | None] = mapped_column(String(64))
    related_document_number: Mapped[str | None] = mapped_column(String(64))

    unit: Mapped[Unit] = relationship(back_populates="movements")

    __table_args__ = (Index("ix_unit_movements_unit_time", "unit_id", "happened_at"),)


# ---------- DERIVED CACHE ----------
class StockRollup(Base):
    """Cache re-dérivable du ledger. Jamais source de vérité."""

    __tablename__ = "stock_rollups"
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True)
    warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"), primary_key=True)
    country: Mapped[Country] = mapped_column(Enum(Country, name="country"), nullable=False)

    qty_received_origin: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_in_transit_origin: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_in_transit_destination: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_available_destination: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_sold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_expired: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_damaged: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    valuation: Mapped[Decimal] = mapped_column(Numeric(16, 2), default=0, nullable=False)
    avg_unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)

    near_expiry_30: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    near_expiry_90: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_days_to_expiry: Mapped[int | None] = mapped_column(Integer)

    is_critical: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


# ---------- EXTERNAL BOUNDARIES ----------
class CommercialDocument(Base):
    """Miroir des cotizations/ventes vivantes (maintenu par le flux commercial)."""

    __tablename__ = "commercial_documents"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[DocumentKind] = mapped_column(Enum(DocumentKind, name="document_kind"), nullable=False)
    number: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Transfer(Base):
    __tablename__ = "transfers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, name="transfer_status"),
        default=TransferStatus.preparing,
        nullable=False,
    )
    from_warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False)
    to_warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    lines: Mapped[list["TransferLine"]] = relationship(back_populates="transfer", cascade="all, delete-orphan")


class TransferLine(Base):
    __tablename__ = "transfer_lines"
    transfer_id: Mapped[int] = mapped_column(ForeignKey("transfers.id", ondelete="CASCADE"), primary_key=True)
    unit_id: Mapped[int] = mapped_column(ForeignKey("units.id", ondelete="RESTRICT"), primary_key=True)

    transfer: Mapped[Transfer] = relationship(back_populates="lines")


class PurchaseRequirement(Base):
    """Outbox vers le flux achats : un faltante = une ligne PENDING."""

    __tablename__ = "purchase_requirements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    estimated_freight: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    estimated_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0, nullable=False)
    source_document_id: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[RequirementStatus] = mapped_column(
        Enum(RequirementStatus, name="requirement_status"),
        default=RequirementStatus.pending,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_requirement_qty_pos"),
        UniqueConstraint("number", name="uq_requirement_number"),
    )
