"""
Procurement boundary.

Le moteur ne contient AUCUNE logique d'achat : il signale un faltante
(stock virtuel) au flux achats, qui répond avec un numéro de requerimiento.

L'implémentation par défaut est une outbox (`purchase_requirements`,
statut PENDING) lue par le flux achats.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pharmastock.app.db.base import utcnow
from pharmastock.app.db.models.models_v1 import PurchaseRequirement
from pharmastock.app.db.models.core_types import RequirementStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Shortfall:
    product_id: int
    quantity: int
    estimated_unit_cost: Decimal
    estimated_freight: Decimal
    estimated_tax: Decimal = Decimal("0")
    source_document_id: str | None = None


@dataclass(frozen=True)
class RequirementRef:
    id: int
    number: str


class ProcurementGateway(Protocol):
    def raise_requirement(self, shortfall: Shortfall) -> RequirementRef | None:
        ...


class RequirementOutbox:
    def __init__(self, db: Session):
        self.db = db

    def _next_number(self) -> str:
        year = utcnow().year
        prefix = f"REQ-{year}-"
        count = self.db.execute(
            select(func.count(PurchaseRequirement.id)).where(PurchaseRequirement.number.like(f"{prefix}%"))
        ).scalar_one()
        return f"{prefix}{int(count) + 1:04d}"

    def raise_requirement(self, shortfall: Shortfall) -> RequirementRef:
        req = PurchaseRequirement(
            number=self._next_number(),
            product_id=shortfall.product_id,
            quantity=shortfall.quantity,
            estimated_unit_cost=shortfall.estimated_unit_cost,
            estimated_freight=shortfall.estimated_freight,
            estimated_tax=shortfall.estimated_tax,
            source_document_id=shortfall.source_document_id,
            status=RequirementStatus.pending,
        )
        self.db.add(req)
        self.db.flush()

        logger.info(
            "Purchase requirement %s raised: product=%s qty=%s (document %s)",
            req.number,
            shortfall.product_id,
            shortfall.quantity,
            shortfall.source_document_id,
        )
        return RequirementRef(id=int(req.id), number=req.number)


__all__ = ["Shortfall", "RequirementRef", "ProcurementGateway", "RequirementOutbox"]
