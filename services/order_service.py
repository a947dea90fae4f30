"""
services/order_service.py  –  Order lifecycle

Drives the order state machine and hands the two terminal transitions to
the settlement engine:

    pending -> accepted -> preparing -> ready -> on_the_way -> delivered
    pending / accepted -> cancelled

Each transition is a conditional UPDATE on the expected prior status, so
two concurrent requests cannot both move the same order.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import settings as app_settings
from models.order import Order, OrderStatus, PaymentMethod, SettlementState
from models.rider import Rider, SettlementStatus
from models.transaction import EntityType
from services.errors import (
    InvalidStateError,
    OrderNotFoundError,
    RiderBlockedError,
    RiderNotFoundError,
)
from services.settlement_config import resolve_settlement_config
from services.settlement_service import SettlementService, projected_restaurant_earning
from services.wallet_service import WalletLedger
from utils.cache import wallet_cache
from utils.distance import calculate_delivery_fee, resolve_trip_distance
from utils.money import to_decimal

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.accepted, OrderStatus.cancelled},
    OrderStatus.accepted: {OrderStatus.preparing, OrderStatus.cancelled},
    OrderStatus.preparing: {OrderStatus.ready},
    OrderStatus.ready: {OrderStatus.on_the_way},
    OrderStatus.on_the_way: {OrderStatus.delivered},
}

# A rider can be (re)assigned until the order leaves the restaurant
ASSIGNABLE_STATUSES = (OrderStatus.pending, OrderStatus.accepted, OrderStatus.preparing, OrderStatus.ready)

TIMESTAMP_FIELDS = {
    OrderStatus.accepted: "accepted_at",
    OrderStatus.on_the_way: "picked_up_at",
    OrderStatus.delivered: "delivered_at",
}


class OrderService:
    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings or app_settings
        self.ledger = WalletLedger(db)
        self.settlement = SettlementService(db, settings)

    def get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.order_id == order_id).first()
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    def create_order(
        self,
        customer_id: int,
        restaurant_id: int,
        subtotal,
        payment_method: PaymentMethod,
        discount=0,
    ) -> Order:
        subtotal = to_decimal(subtotal)
        discount = to_decimal(discount)
        if subtotal < 0 or discount < 0:
            raise ValueError("subtotal and discount must be non-negative")
        if discount > subtotal:
            raise ValueError("discount cannot exceed subtotal")

        order = Order(
            customer_id=customer_id,
            restaurant_id=restaurant_id,
            subtotal=subtotal,
            discount=discount,
            delivery_fee=0,
            total_price=subtotal - discount,
            payment_method=PaymentMethod(payment_method),
            status=OrderStatus.pending,
            settlement_status=SettlementState.unsettled,
        )
        try:
            self.db.add(order)
            self.db.commit()
            self.db.refresh(order)
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"📦 Order #{order.order_id} created for restaurant {restaurant_id}: subtotal {subtotal}")
        return order

    def assign_rider(
        self,
        order_id: int,
        rider_id: int,
        rider_lat=None,
        rider_lng=None,
        dest_lat=None,
        dest_lng=None,
    ) -> Order:
        """
        Assign a rider and record the trip distance used for their pay.

        Missing coordinates fall back to FALLBACK_DISTANCE_KM. Blocked riders
        are refused with RiderBlockedError.
        """
        order = self.get_order(order_id)
        rider = self.db.query(Rider).filter(Rider.rider_id == rider_id).first()
        if not rider:
            raise RiderNotFoundError(rider_id)
        if rider.settlement_status == SettlementStatus.blocked:
            raise RiderBlockedError(rider_id)
        if order.status not in ASSIGNABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot assign a rider to order {order_id} in status {order.status.value}",
                order_id=order_id,
                status=order.status.value,
            )

        distance = resolve_trip_distance(
            rider_lat, rider_lng, dest_lat, dest_lng,
            fallback_km=self.settings.FALLBACK_DISTANCE_KM,
        )
        config = resolve_settlement_config(self.db, order.restaurant_id, self.settings)
        fee = calculate_delivery_fee(distance, config.rider_base_pay, config.rider_per_km_rate, config.rider_pay_cap)
        total = to_decimal(order.subtotal) - to_decimal(order.discount) + fee

        try:
            result = self.db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.status.in_(ASSIGNABLE_STATUSES))
                .values(rider_id=rider_id, distance_km=distance, delivery_fee=fee, total_price=total)
            )
            if result.rowcount != 1:
                raise InvalidStateError(f"Order {order_id} changed state during assignment", order_id=order_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"🛵 Rider {rider_id} assigned to order #{order_id}: {distance} km, fee {fee}")
        return self.get_order(order_id)

    def transition(self, order_id: int, new_status, reason: Optional[str] = None) -> dict:
        """
        Move an order to `new_status`.

        Delivered triggers settlement. A failed settlement is logged and the
        order stays delivered but unsettled, to be picked up by the
        pending-settlement sweep. Returns {"order": Order, "settlement": SettlementResult | None}.
        """
        new_status = OrderStatus(new_status)
        if new_status == OrderStatus.completed:
            raise InvalidStateError("completed is a legacy status and cannot be set", order_id=order_id)
        if new_status == OrderStatus.cancelled:
            return {"order": self.settlement.cancel(order_id, reason), "settlement": None}

        order = self.get_order(order_id)
        current = order.status
        if new_status not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidStateError(
                f"Invalid transition {current.value} -> {new_status.value} for order {order_id}",
                order_id=order_id,
                status=current.value,
            )
        if new_status in (OrderStatus.on_the_way, OrderStatus.delivered) and order.rider_id is None:
            raise InvalidStateError(f"Order {order_id} has no rider assigned", order_id=order_id, status=current.value)

        values = {"status": new_status}
        if new_status in TIMESTAMP_FIELDS:
            values[TIMESTAMP_FIELDS[new_status]] = datetime.utcnow()

        hold = Decimal("0")
        if new_status == OrderStatus.accepted:
            config = resolve_settlement_config(self.db, order.restaurant_id, self.settings)
            hold = projected_restaurant_earning(order.subtotal, order.discount, config.commission_rate)
            values["held_amount"] = hold
            self.ledger.get_or_create_restaurant_wallet(order.restaurant_id)

        try:
            result = self.db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.status == current)
                .values(**values)
            )
            if result.rowcount != 1:
                raise InvalidStateError(f"Order {order_id} changed state concurrently", order_id=order_id)
            if hold:
                self.ledger.reserve_hold(order.restaurant_id, order_id, hold)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if hold:
            wallet_cache.invalidate(EntityType.restaurant.value, order.restaurant_id)
        logger.info(f"Order #{order_id}: {current.value} -> {new_status.value}")

        settlement = None
        if new_status == OrderStatus.delivered:
            try:
                settlement = self.settlement.settle(order_id)
            except Exception:
                logger.exception(f"⚠️ Order #{order_id} delivered but settlement failed, left for the pending sweep")

        return {"order": self.get_order(order_id), "settlement": settlement}

    def settle(self, order_id: int):
        """Explicit settlement retry."""
        return self.settlement.settle(order_id)
