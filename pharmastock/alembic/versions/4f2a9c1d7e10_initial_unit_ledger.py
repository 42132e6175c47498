"""initial unit ledger

Revision ID: 4f2a9c1d7e10
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from pharmastock.app.db.models.core_types import (
    Country,
    DocumentKind,
    MovementType,
    RequirementStatus,
    TransferStatus,
    UnitState,
)

# revision identifiers, used by Alembic.
revision: str = "4f2a9c1d7e10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUM_TYPES = {
    "country": Country,
    "unit_state": UnitState,
    "movement_type": MovementType,
    "document_kind": DocumentKind,
    "transfer_status": TransferStatus,
    "requirement_status": RequirementStatus,
}

BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _enum(name: str):
    # type Postgres créé une seule fois (cf. upgrade), partagé entre tables
    enum_cls = ENUM_TYPES[name]
    return sa.Enum(enum_cls, name=name).with_variant(
        postgresql.ENUM(enum_cls, name=name, create_type=False), "postgresql"
    )


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, enum_cls in ENUM_TYPES.items():
            postgresql.ENUM(enum_cls, name=name).create(bind, checkfirst=True)

    op.create_table(
        "warehouses",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(32), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("country", _enum("country"), nullable=False),
        sa.Column("is_traveler", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("next_departure", sa.Date()),
        sa.Column("avg_freight_cost", sa.Numeric(14, 2)),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("avg_freight_cost IS NULL OR avg_freight_cost >= 0", name="ck_warehouse_freight_nonneg"),
    )

    op.create_table(
        "products",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("sku", sa.String(64), nullable=False, unique=True),
        sa.Column("brand", sa.String(128), nullable=False, server_default=""),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("presentation", sa.String(128)),
        sa.Column("min_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stock_origin", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_destination", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_in_transit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stock_available", sa.Integer(), nullable=False, server_default="0"),
        sa.CheckConstraint("min_stock >= 0", name="ck_product_min_stock_nonneg"),
        sa.CheckConstraint("max_stock >= 0", name="ck_product_max_stock_nonneg"),
    )

    op.create_table(
        "units",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_sku", sa.String(64), nullable=False),
        sa.Column("product_name", sa.String(255), nullable=False),
        sa.Column("lot_code", sa.String(64), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("warehouse_id", sa.BigInteger(), sa.ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("warehouse_name", sa.String(200), nullable=False),
        sa.Column("country", _enum("country"), nullable=False),
        sa.Column("state", _enum("unit_state"), nullable=False),
        sa.Column("unit_cost", sa.Numeric(14, 2), nullable=False),
        sa.Column("freight_cost", sa.Numeric(14, 2)),
        sa.Column("purchase_fx_rate", sa.Numeric(12, 6)),
        sa.Column("payment_fx_rate", sa.Numeric(12, 6)),
        sa.Column("purchase_order_id", sa.String(64), nullable=False),
        sa.Column("purchase_order_number", sa.String(64), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sale_document_id", sa.String(64)),
        sa.Column("sale_document_number", sa.String(64)),
        sa.Column("sold_at", sa.DateTime(timezone=True)),
        sa.Column("sale_price", sa.Numeric(14, 2)),
        sa.Column("reserved_for", sa.String(64)),
        sa.Column("reserved_at", sa.DateTime(timezone=True)),
        sa.Column("reservation_expires_at", sa.DateTime(timezone=True)),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_by", sa.String(64)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.CheckConstraint("unit_cost >= 0", name="ck_unit_cost_nonneg"),
        sa.CheckConstraint("freight_cost IS NULL OR freight_cost >= 0", name="ck_unit_freight_nonneg"),
    )
    op.create_index("ix_units_product_id", "units", ["product_id"])
    op.create_index("ix_units_reserved_for", "units", ["reserved_for"])
    op.create_index("ix_units_product_state", "units", ["product_id", "state"])
    op.create_index("ix_units_warehouse_state", "units", ["warehouse_id", "state"])

    op.create_table(
        "unit_movements",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("unit_id", sa.BigInteger(), sa.ForeignKey("units.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("movement_type", _enum("movement_type"), nullable=False),
        sa.Column("happened_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("from_state", _enum("unit_state")),
        sa.Column("to_state", _enum("unit_state")),
        sa.Column("from_warehouse_id", sa.BigInteger(), sa.ForeignKey("warehouses.id", ondelete="RESTRICT")),
        sa.Column("to_warehouse_id", sa.BigInteger(), sa.ForeignKey("warehouses.id", ondelete="RESTRICT")),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("related_document_type", _enum("document_kind")),
        sa.Column("related_document_id", sa.String(64)),
        sa.Column("related_document_number", sa.String(64)),
    )
    op.create_index("ix_unit_movements_unit_id", "unit_movements", ["unit_id"])
    op.create_index("ix_unit_movements_unit_time", "unit_movements", ["unit_id", "happened_at"])

    op.create_table(
        "stock_rollups",
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("warehouse_id", sa.BigInteger(), sa.ForeignKey("warehouses.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("country", _enum("country"), nullable=False),
        sa.Column("qty_received_origin", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_in_transit_origin", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_in_transit_destination", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_available_destination", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_reserved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_sold", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_expired", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_damaged", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("qty_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valuation", sa.Numeric(16, 2), nullable=False, server_default="0"),
        sa.Column("avg_unit_cost", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("near_expiry_30", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("near_expiry_90", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_days_to_expiry", sa.Integer()),
        sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "commercial_documents",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("kind", _enum("document_kind"), nullable=False),
        sa.Column("number", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "transfers",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("number", sa.String(64), nullable=False, unique=True),
        sa.Column("status", _enum("transfer_status"), nullable=False),
        sa.Column("from_warehouse_id", sa.BigInteger(), sa.ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("to_warehouse_id", sa.BigInteger(), sa.ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "transfer_lines",
        sa.Column("transfer_id", sa.BigInteger(), sa.ForeignKey("transfers.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("unit_id", sa.BigInteger(), sa.ForeignKey("units.id", ondelete="RESTRICT"), primary_key=True),
    )

    op.create_table(
        "purchase_requirements",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("number", sa.String(32), nullable=False),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("estimated_unit_cost", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("estimated_freight", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("estimated_tax", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("source_document_id", sa.String(64)),
        sa.Column("status", _enum("requirement_status"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_requirement_qty_pos"),
        sa.UniqueConstraint("number", name="uq_requirement_number"),
    )


def downgrade() -> None:
    for table in (
        "purchase_requirements",
        "transfer_lines",
        "transfers",
        "commercial_documents",
        "stock_rollups",
        "unit_movements",
        "units",
        "products",
        "warehouses",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name, enum_cls in ENUM_TYPES.items():
            postgresql.ENUM(enum_cls, name=name).drop(bind, checkfirst=True)
