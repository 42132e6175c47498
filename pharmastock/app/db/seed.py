from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from pharmastock.app.db.session import SessionLocal
from pharmastock.app.db.models.models_v1 import Warehouse
from pharmastock.app.db.models.core_types import Country

# almacenes de base : un dépôt par pays + un viajero
WAREHOUSES = [
    {"code": "ORG-MAIN", "name": "Origin main warehouse", "country": Country.origin, "avg_freight_cost": Decimal("5.00")},
    {"code": "ORG-TRAV1", "name": "Traveler 1", "country": Country.origin, "is_traveler": True, "avg_freight_cost": Decimal("3.50")},
    {"code": "DST-MAIN", "name": "Destination main warehouse", "country": Country.destination},
]


def seed_warehouses(db: Session) -> list[str]:
    """Idempotent : ne crée que les codes absents."""
    created = []
    for data in WAREHOUSES:
        exists = db.scalar(select(Warehouse).where(Warehouse.code == data["code"]))
        if not exists:
            db.add(Warehouse(**data))
            created.append(data["code"])
    db.flush()
    return created


def run_seed():
    db = SessionLocal()
    try:
        created = seed_warehouses(db)
        db.commit()

        print(f"SEED OK: warehouses created={created or 'none'}")
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
