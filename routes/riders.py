from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional
from datetime import date
from database import get_db
from config import settings
from models.rider import Rider, RiderStatus
from models.cod_ledger import CODEntryStatus
from services.bonus_service import BonusService
from services.cod_ledger_service import CODLedgerService
from services.errors import RiderNotFoundError
from utils.serializers import serialize_cod_entry, serialize_bonus_record, enum_val, iso, pagination
from utils.money import as_float
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/riders", tags=["Riders"])


# Schemas
class CreateRiderRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    phone_number: Optional[str] = None
    vehicle_type: Optional[str] = None


class SettleCODRequest(BaseModel):
    upto: Optional[date] = None
    reference: str = ""


def _rider_payload(rider: Rider) -> dict:
    return {
        "rider_id": rider.rider_id,
        "full_name": rider.full_name,
        "phone_number": rider.phone_number,
        "vehicle_type": rider.vehicle_type,
        "availability_status": enum_val(rider.availability_status),
        "settlement_status": enum_val(rider.settlement_status),
        "cod_balance": as_float(rider.cod_balance),
        "last_settlement_date": iso(rider.last_settlement_date),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_rider(request: CreateRiderRequest, db: Session = Depends(get_db)):
    rider = Rider(
        full_name=request.full_name,
        phone_number=request.phone_number,
        vehicle_type=request.vehicle_type,
        availability_status=RiderStatus.offline,
    )
    try:
        db.add(rider)
        db.commit()
        db.refresh(rider)
    except Exception:
        db.rollback()
        raise

    logger.info(f"Rider profile created: {rider.rider_id}")
    return {
        "success": True,
        "message": "Rider profile created successfully",
        "data": _rider_payload(rider),
    }


@router.get("/{rider_id}")
def get_rider(rider_id: int, db: Session = Depends(get_db)):
    rider = db.query(Rider).filter(Rider.rider_id == rider_id).first()
    if not rider:
        raise RiderNotFoundError(rider_id)
    return {"success": True, "data": _rider_payload(rider)}


@router.get("/{rider_id}/cod/outstanding")
def get_cod_outstanding(rider_id: int, db: Session = Depends(get_db)):
    """Cash the rider still owes the platform across pending COD entries"""
    summary = CODLedgerService(db).get_outstanding(rider_id)
    return {
        "success": True,
        "data": {
            "rider_id": rider_id,
            "outstanding": as_float(summary["outstanding"]),
            "pending_entries": summary["pending_entries"],
            "cod_collected": as_float(summary["cod_collected"]),
            "rider_earning": as_float(summary["rider_earning"]),
            "oldest_pending_date": iso(summary["oldest_pending_date"]),
            "cod_balance": as_float(summary["cod_balance"]),
            "settlement_status": enum_val(summary["settlement_status"]),
            "last_settlement_date": iso(summary["last_settlement_date"]),
        },
    }


@router.get("/{rider_id}/cod/ledger")
def get_cod_ledger(
    rider_id: int,
    entry_status: Optional[CODEntryStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    rows, total = CODLedgerService(db).list_entries(rider_id, status=entry_status, page=page, page_size=page_size)
    return {
        "success": True,
        "data": [serialize_cod_entry(e) for e in rows],
        "pagination": pagination(page, page_size, total),
    }


@router.post("/{rider_id}/cod/settle")
def settle_cod(rider_id: int, request: SettleCODRequest, db: Session = Depends(get_db)):
    """Mark the rider's pending COD entries up to a date as paid"""
    result = CODLedgerService(db).mark_paid(rider_id, upto=request.upto, reference=request.reference)
    paid = result["entries_paid"]
    return {
        "success": True,
        "message": f"{paid} COD entries settled" if paid else "No pending COD entries to settle",
        "data": {
            "rider_id": rider_id,
            "entries_paid": paid,
            "cod_cleared": as_float(result["cod_cleared"]),
            "amount_deposited": as_float(result["amount_deposited"]),
            "credited_to_rider": as_float(result["credited_to_rider"]),
            "transaction_id": result["transaction_id"],
            "settlement_status": enum_val(result["settlement_status"]),
        },
    }


@router.get("/{rider_id}/bonus")
def get_bonus_progress(rider_id: int, db: Session = Depends(get_db)):
    """Today's delivery count against the bonus target, plus the last week"""
    if not db.query(Rider.rider_id).filter(Rider.rider_id == rider_id).first():
        raise RiderNotFoundError(rider_id)

    progress = BonusService(db).get_status(rider_id)
    return {
        "success": True,
        "data": {
            "rider_id": rider_id,
            "date": iso(progress["date"]),
            "daily_delivery_count": progress["daily_delivery_count"],
            "target_deliveries": progress["target_deliveries"],
            "remaining": progress["remaining"],
            "bonus_amount": as_float(progress["bonus_amount"]),
            "is_bonus_achieved": progress["is_bonus_achieved"],
            "bonus_credited_at": iso(progress["bonus_credited_at"]),
            "history": [serialize_bonus_record(r) for r in progress["history"]],
        },
    }
