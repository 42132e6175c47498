from fastapi import APIRouter

from pharmastock.app.api.v1.endpoints.health import router as health_router
from pharmastock.app.api.v1.endpoints.availability import router as availability_router
from pharmastock.app.api.v1.endpoints.reservations import router as reservations_router
from pharmastock.app.api.v1.endpoints.units import router as units_router
from pharmastock.app.api.v1.endpoints.products import router as products_router
from pharmastock.app.api.v1.endpoints.warehouses import router as warehouses_router
from pharmastock.app.api.v1.endpoints.documents import router as documents_router
from pharmastock.app.api.v1.endpoints.aggregates import router as aggregates_router
from pharmastock.app.api.v1.endpoints.reconciliation import router as reconciliation_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(availability_router, tags=["availability"])
router.include_router(reservations_router, tags=["reservations"])
router.include_router(units_router, tags=["units"])
router.include_router(products_router, tags=["products"])
router.include_router(warehouses_router, tags=["warehouses"])
router.include_router(documents_router, tags=["documents"])
router.include_router(aggregates_router, tags=["aggregates"])
router.include_router(reconciliation_router, tags=["reconciliation"])
