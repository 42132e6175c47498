from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from pharmastock.app.api.deps import get_db
from pharmastock.app.api.v1.serializers import report_payload
from pharmastock.services.aggregation import rebuild_rollups
from pharmastock.services.reconciliation import (
    reconcile_orphaned_reservations,
    reconcile_state_mismatches,
    reconcile_stock_counters,
)

router = APIRouter(prefix="/reconciliation")


@router.post("/orphaned-reservations")
def orphaned_reservations(db: Session = Depends(get_db)):
    report = reconcile_orphaned_reservations(db)
    if report.corrected:
        rebuild_rollups(db)

    db.commit()
    return report_payload(report)


@router.post("/state-mismatches")
def state_mismatches(db: Session = Depends(get_db)):
    report = reconcile_state_mismatches(db)
    if report.corrected:
        rebuild_rollups(db)

    db.commit()
    return report_payload(report)


@router.post("/stock-counters")
def stock_counters(db: Session = Depends(get_db)):
    report = reconcile_stock_counters(db)

    db.commit()
    return report_payload(report)
