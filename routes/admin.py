from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from database import get_db
from models.transaction import EntityType
from services.cod_ledger_service import CODLedgerService
from services.reconciliation_service import ReconciliationService
from services.settlement_service import SettlementService
from utils.money import as_float
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


def _report_payload(report) -> dict:
    return {
        "entity_type": report.entity_type,
        "entity_id": report.entity_id,
        "drifted": report.drifted,
        "deltas": {k: as_float(v) for k, v in report.deltas.items()},
        "corrected_orders": report.corrected_orders,
        "adjustment_transaction_id": report.adjustment_transaction_id,
    }


@router.post("/reconcile")
def reconcile_all(db: Session = Depends(get_db)):
    """Run the full reconciliation batch now"""
    summary = ReconciliationService(db).run_batch()
    return {
        "success": True,
        "message": f"Reconciled {summary['riders_checked']} riders and {summary['restaurants_checked']} restaurants",
        "data": {
            "pending_settlement": summary["pending_settlement"],
            "status_changes": summary["status_changes"],
            "riders_checked": summary["riders_checked"],
            "restaurants_checked": summary["restaurants_checked"],
            "drifted": [_report_payload(r) for r in summary["drifted"]],
            "failed": summary["failed"],
        },
    }


@router.post("/reconcile/{entity_type}/{entity_id}")
def reconcile_entity(entity_type: EntityType, entity_id: int, db: Session = Depends(get_db)):
    if entity_type == EntityType.customer:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Customers have no wallet to reconcile")

    report = ReconciliationService(db).reconcile(entity_type, entity_id)
    return {
        "success": True,
        "message": "Drift corrected" if report.drifted else "No drift found",
        "data": _report_payload(report),
    }


@router.post("/cod/refresh-statuses")
def refresh_cod_statuses(db: Session = Depends(get_db)):
    changes = CODLedgerService(db).refresh_all_statuses()
    return {
        "success": True,
        "message": f"{len(changes)} rider statuses changed",
        "data": changes,
    }


@router.post("/settle-pending")
def settle_pending_orders(db: Session = Depends(get_db)):
    """Retry settlement for delivered orders that never settled"""
    summary = SettlementService(db).settle_pending()
    return {
        "success": True,
        "message": f"{len(summary['settled'])} of {summary['found']} pending orders settled",
        "data": summary,
    }
