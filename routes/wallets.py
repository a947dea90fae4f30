from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional
from datetime import date
from decimal import Decimal
from database import get_db
from config import settings
from models.rider import Rider
from models.transaction import EntityType
from services.wallet_service import WalletLedger
from services.errors import RiderNotFoundError
from utils.cache import wallet_cache
from utils.serializers import (
    serialize_rider_wallet,
    serialize_restaurant_wallet,
    serialize_platform_wallet,
    serialize_transaction,
    pagination,
)
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallets", tags=["Wallets"])


# Schemas
class PenaltyRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=255)
    order_id: Optional[int] = None


class PayoutRequest(BaseModel):
    entity_type: EntityType
    entity_id: int
    amount: Decimal = Field(gt=0)
    reference: str = ""


class RefundRequest(BaseModel):
    order_id: int
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=255)


@router.get("/riders/{rider_id}")
def get_rider_wallet(rider_id: int, db: Session = Depends(get_db)):
    cached = wallet_cache.get_wallet(EntityType.rider.value, rider_id)
    if cached is not None:
        return {"success": True, "data": cached}

    if not db.query(Rider.rider_id).filter(Rider.rider_id == rider_id).first():
        raise RiderNotFoundError(rider_id)
    wallet = WalletLedger(db).get_or_create_rider_wallet(rider_id)
    data = serialize_rider_wallet(wallet)
    wallet_cache.set_wallet(EntityType.rider.value, rider_id, data)
    return {"success": True, "data": data}


@router.get("/restaurants/{restaurant_id}")
def get_restaurant_wallet(restaurant_id: int, db: Session = Depends(get_db)):
    cached = wallet_cache.get_wallet(EntityType.restaurant.value, restaurant_id)
    if cached is not None:
        return {"success": True, "data": cached}

    wallet = WalletLedger(db).get_or_create_restaurant_wallet(restaurant_id)
    data = serialize_restaurant_wallet(wallet)
    wallet_cache.set_wallet(EntityType.restaurant.value, restaurant_id, data)
    return {"success": True, "data": data}


@router.get("/platform")
def get_platform_wallet(db: Session = Depends(get_db)):
    wallet = WalletLedger(db).get_or_create_platform_wallet()
    return {"success": True, "data": serialize_platform_wallet(wallet)}


@router.get("/{entity_type}/{entity_id}/transactions")
def list_transactions(
    entity_type: EntityType,
    entity_id: int,
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
):
    """Ledger lines for one entity, newest first"""
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="date_from must be before date_to")

    rows, total = WalletLedger(db).list_transactions(
        entity_type, entity_id, date_from=date_from, date_to=date_to, page=page, page_size=page_size
    )
    return {
        "success": True,
        "data": [serialize_transaction(t) for t in rows],
        "pagination": pagination(page, page_size, total),
    }


@router.post("/riders/{rider_id}/penalties", status_code=status.HTTP_201_CREATED)
def apply_penalty(rider_id: int, request: PenaltyRequest, db: Session = Depends(get_db)):
    if not db.query(Rider.rider_id).filter(Rider.rider_id == rider_id).first():
        raise RiderNotFoundError(rider_id)
    txn = WalletLedger(db).apply_penalty(rider_id, request.amount, request.reason, order_id=request.order_id)
    return {
        "success": True,
        "message": "Penalty applied",
        "data": serialize_transaction(txn),
    }


@router.post("/payouts", status_code=status.HTTP_201_CREATED)
def record_payout(request: PayoutRequest, db: Session = Depends(get_db)):
    if request.entity_type not in (EntityType.rider, EntityType.restaurant):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payouts are only made to riders and restaurants")
    if request.entity_type == EntityType.rider and not db.query(Rider.rider_id).filter(Rider.rider_id == request.entity_id).first():
        raise RiderNotFoundError(request.entity_id)

    txn = WalletLedger(db).record_payout(request.entity_type, request.entity_id, request.amount, request.reference)
    return {
        "success": True,
        "message": "Payout recorded",
        "data": serialize_transaction(txn),
    }


@router.post("/refunds", status_code=status.HTTP_201_CREATED)
def record_refund(request: RefundRequest, db: Session = Depends(get_db)):
    """Refund a customer against one order"""
    txn = WalletLedger(db).record_refund(request.order_id, request.amount, request.reason)
    return {
        "success": True,
        "message": "Refund recorded",
        "data": serialize_transaction(txn),
    }
