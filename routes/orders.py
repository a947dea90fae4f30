from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal
from database import get_db
from models.order import OrderStatus, PaymentMethod
from services.order_service import OrderService
from utils.serializers import serialize_order
from utils.money import as_float
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


# Schemas
class CreateOrderRequest(BaseModel):
    customer_id: int
    restaurant_id: int
    subtotal: Decimal = Field(ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    payment_method: PaymentMethod


class AssignRiderRequest(BaseModel):
    rider_id: int
    rider_latitude: Optional[float] = None
    rider_longitude: Optional[float] = None
    destination_latitude: Optional[float] = None
    destination_longitude: Optional[float] = None


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None


def _settlement_payload(result) -> Optional[dict]:
    if result is None:
        return None
    payload = {
        "settled": result.settled,
        "already_settled": result.already_settled,
        "bonus_unlocked": result.bonus_unlocked,
        "cod_entry_id": result.cod_entry_id,
    }
    if result.split is not None:
        payload["split"] = {k: as_float(v) for k, v in result.split.model_dump().items()}
    return payload


@router.post("", status_code=status.HTTP_201_CREATED)
def create_order(request: CreateOrderRequest, db: Session = Depends(get_db)):
    """Create a pending order"""
    try:
        order = OrderService(db).create_order(
            customer_id=request.customer_id,
            restaurant_id=request.restaurant_id,
            subtotal=request.subtotal,
            discount=request.discount,
            payment_method=request.payment_method,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {
        "success": True,
        "message": "Order created successfully",
        "data": serialize_order(order),
    }


@router.get("/{order_id}")
def get_order(order_id: int, db: Session = Depends(get_db)):
    order = OrderService(db).get_order(order_id)
    return {
        "success": True,
        "data": serialize_order(order),
    }


@router.post("/{order_id}/assign")
def assign_rider(order_id: int, request: AssignRiderRequest, db: Session = Depends(get_db)):
    """Assign a rider; trip distance is computed from the coordinates (fallback when missing)"""
    order = OrderService(db).assign_rider(
        order_id,
        request.rider_id,
        rider_lat=request.rider_latitude,
        rider_lng=request.rider_longitude,
        dest_lat=request.destination_latitude,
        dest_lng=request.destination_longitude,
    )
    return {
        "success": True,
        "message": "Rider assigned",
        "data": serialize_order(order),
    }


@router.patch("/{order_id}/status")
def update_order_status(order_id: int, request: UpdateOrderStatusRequest, db: Session = Depends(get_db)):
    """Move an order through its lifecycle. Delivered settles the order, cancelled releases its hold."""
    outcome = OrderService(db).transition(order_id, request.status, reason=request.reason)
    return {
        "success": True,
        "message": f"Order status updated to {request.status.value}",
        "data": {
            "order": serialize_order(outcome["order"]),
            "settlement": _settlement_payload(outcome["settlement"]),
        },
    }


@router.post("/{order_id}/settle")
def settle_order(order_id: int, db: Session = Depends(get_db)):
    """Explicit settlement retry; settling an already-settled order is a no-op"""
    service = OrderService(db)
    result = service.settle(order_id)
    return {
        "success": True,
        "message": "Order already settled" if result.already_settled else "Order settled",
        "data": {
            "order": serialize_order(service.get_order(order_id)),
            "settlement": _settlement_payload(result),
        },
    }
