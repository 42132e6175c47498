"""Résultats des services (dataclasses) -> dicts JSON des endpoints."""
from __future__ import annotations

from dataclasses import asdict

from pharmastock.services.availability import AvailabilityResponse, ProductAvailability, Recommendation
from pharmastock.services.reconciliation import ReconciliationReport
from pharmastock.services.reservations import ReleaseResult, ReservationOutcome


def recommendation_payload(rec: Recommendation | None):
    if rec is None:
        return None
    return {
        "source": rec.source,
        "rationale": rec.rationale,
        "draws": [asdict(d) for d in rec.draws],
        "shortfall": rec.shortfall,
        "generates_requirement": rec.generates_requirement,
        "max_transit_days": rec.max_transit_days,
        "estimated_cost": rec.estimated_cost,
        "alternatives": [asdict(a) for a in rec.alternatives],
    }


def product_availability_payload(p: ProductAvailability):
    return {
        "product_id": p.product_id,
        "sku": p.sku,
        "brand": p.brand,
        "name": p.name,
        "presentation": p.presentation,
        "requested": p.requested,
        "status": p.status,
        "total_on_hand": p.total_on_hand,
        "total_reserved": p.total_reserved,
        "total_free": p.total_free,
        "free_destination": p.free_destination,
        "free_origin": p.free_origin,
        "requires_purchase": p.requires_purchase,
        "warehouses": [
            {**asdict(w), "landed_unit_cost": w.landed_unit_cost} for w in p.warehouses
        ],
        "recommendation": recommendation_payload(p.recommendation),
    }


def availability_payload(resp: AvailabilityResponse):
    return {
        "products": [product_availability_payload(p) for p in resp.products],
        "summary": asdict(resp.summary),
    }


def reservation_payload(outcome: ReservationOutcome):
    return {
        "document_id": outcome.document_id,
        "reserved_at": outcome.reserved_at,
        "expires_at": outcome.expires_at,
        "validity_hours": outcome.validity_hours,
        "attempts": outcome.attempts,
        "total_requested": outcome.total_requested,
        "units_destination": outcome.units_destination,
        "units_origin": outcome.units_origin,
        "units_virtual": outcome.units_virtual,
        "max_transit_days": outcome.max_transit_days,
        "estimated_completion": outcome.estimated_completion,
        "products": [
            {
                "product_id": p.product_id,
                "sku": p.sku,
                "name": p.name,
                "requested": p.requested,
                "reserved_quantity": p.reserved_quantity,
                "quantity_destination": p.quantity_destination,
                "quantity_origin": p.quantity_origin,
                "shortfall": p.shortfall,
                "requirement": asdict(p.requirement) if p.requirement else None,
                "by_warehouse": [
                    {**asdict(w), "quantity": w.quantity} for w in p.by_warehouse
                ],
            }
            for p in outcome.products
        ],
    }


def release_payload(result: ReleaseResult):
    return {
        "succeeded": result.succeeded,
        "already_released": result.already_released,
        "failed": [asdict(f) for f in result.failed],
    }


def report_payload(report: ReconciliationReport):
    return asdict(report)
