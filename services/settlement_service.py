"""
services/settlement_service.py  –  Order settlement

Splits a delivered order's money between restaurant, rider and platform,
exactly once per order.

The settlement marker (`orders.settlement_status`) is claimed with a single
conditional UPDATE keyed on the order id, an earning status and
`settlement_status = 'unsettled'`. The claim, the order's split fields,
every wallet increment, every ledger row, the COD entry and the bonus
counter are committed together or not at all.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import logging

from pydantic import BaseModel, ConfigDict
from sqlalchemy import update
from sqlalchemy.orm import Session

from models.order import Order, OrderStatus, PaymentMethod, SettlementState, EARNING_STATUSES
from models.transaction import EntityType, TransactionType
from services.bonus_service import BonusService
from services.cod_ledger_service import CODLedgerService
from services.errors import (
    AlreadySettledError,
    InvalidStateError,
    OrderNotFoundError,
    SettlementError,
)
from services.settlement_config import SettlementConfig, resolve_settlement_config
from services.wallet_service import WalletLedger
from utils.cache import wallet_cache
from utils.distance import calculate_delivery_fee, calculate_rider_earning
from utils.money import ZERO, round_amount, round_cents, to_decimal
from utils.notification_helper import (
    safe_notify,
    notify_bonus_achieved,
    notify_order_settled,
    notify_settlement_status_changed,
)

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (OrderStatus.pending, OrderStatus.accepted)


class SettlementSplit(BaseModel):
    model_config = ConfigDict(frozen=True)

    commission_rate: Decimal
    commission_amount: Decimal
    restaurant_earning: Decimal
    rider_earning: Decimal
    delivery_fee: Decimal
    gateway_fee: Decimal
    platform_revenue: Decimal
    total_price: Decimal


class SettlementResult(BaseModel):
    order_id: int
    settled: bool
    already_settled: bool = False
    split: Optional[SettlementSplit] = None
    cod_entry_id: Optional[int] = None
    bonus_unlocked: bool = False


def projected_restaurant_earning(subtotal, discount, commission_rate) -> Decimal:
    """subtotal - discount - round(subtotal * rate / 100), floored at 0."""
    subtotal = to_decimal(subtotal)
    commission = round_amount(subtotal * to_decimal(commission_rate) / 100)
    return max(subtotal - to_decimal(discount) - commission, ZERO)


def compute_settlement_split(subtotal, discount, distance_km, payment_method, config: SettlementConfig) -> SettlementSplit:
    """
    Pure split calculation for one order.

    Rider earning and delivery fee both come from the capped distance
    formula; COD orders carry no gateway fee.
    """
    subtotal = to_decimal(subtotal)
    discount = to_decimal(discount)
    if subtotal < 0 or discount < 0:
        raise ValueError("subtotal and discount must be non-negative")

    commission = round_amount(subtotal * config.commission_rate / 100)
    restaurant_earning = max(subtotal - discount - commission, ZERO)

    pay_rules = (config.rider_base_pay, config.rider_per_km_rate, config.rider_pay_cap)
    rider_earning = calculate_rider_earning(distance_km, *pay_rules)
    delivery_fee = calculate_delivery_fee(distance_km, *pay_rules)

    gateway_fee = ZERO
    if PaymentMethod(payment_method) == PaymentMethod.prepaid:
        gateway_fee = round_cents(subtotal * config.gateway_fee_percent / 100)

    return SettlementSplit(
        commission_rate=config.commission_rate,
        commission_amount=commission,
        restaurant_earning=restaurant_earning,
        rider_earning=rider_earning,
        delivery_fee=delivery_fee,
        gateway_fee=gateway_fee,
        platform_revenue=commission + delivery_fee - rider_earning - gateway_fee,
        total_price=subtotal - discount + delivery_fee,
    )


class SettlementService:
    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings
        self.ledger = WalletLedger(db)

    def _get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.order_id == order_id).first()
        if not order:
            raise OrderNotFoundError(order_id)
        return order

    def _claim_failure(self, order_id: int) -> SettlementError:
        # Re-read outside the identity map: the claim matched no row
        status, marker = self.db.query(Order.status, Order.settlement_status).filter(Order.order_id == order_id).one()
        if marker == SettlementState.settled:
            return AlreadySettledError(order_id)
        return InvalidStateError(
            f"Order {order_id} cannot be settled from status {status.value}/{marker.value}",
            order_id=order_id,
            status=status.value,
        )

    def settle(self, order_id: int) -> SettlementResult:
        """
        Settle a delivered order. Re-invoking on a settled order is a no-op
        reported as already_settled.

        Raises InvalidStateError for orders that are not delivered (or have no
        rider), and re-raises any failure after rolling the whole unit back.
        """
        order = self._get_order(order_id)
        if order.settlement_status == SettlementState.settled:
            logger.info(f"Order #{order_id} already settled, nothing to do")
            return SettlementResult(order_id=order_id, settled=False, already_settled=True)
        if order.status not in EARNING_STATUSES or order.settlement_status != SettlementState.unsettled:
            raise InvalidStateError(
                f"Order {order_id} is {order.status.value}, only delivered orders can be settled",
                order_id=order_id,
                status=order.status.value,
            )
        if order.rider_id is None:
            raise InvalidStateError(f"Order {order_id} has no rider assigned", order_id=order_id, status=order.status.value)

        config = resolve_settlement_config(self.db, order.restaurant_id, self.settings)
        split = compute_settlement_split(
            order.subtotal, order.discount, order.distance_km, order.payment_method, config
        )
        rider_id = order.rider_id
        restaurant_id = order.restaurant_id
        is_cod = order.payment_method == PaymentMethod.cod
        held = to_decimal(order.held_amount)
        delivered_on = (order.delivered_at or datetime.utcnow()).date()

        # Lazily created rows commit on their own, before the settlement unit
        self.ledger.get_or_create_restaurant_wallet(restaurant_id)
        self.ledger.get_or_create_rider_wallet(rider_id)
        self.ledger.get_or_create_platform_wallet()
        bonus = BonusService(self.db, config)
        bonus.ensure_record(rider_id, delivered_on)

        cod_entry_id = None
        try:
            claimed = self.db.execute(
                update(Order)
                .where(
                    Order.order_id == order_id,
                    Order.status.in_(EARNING_STATUSES),
                    Order.settlement_status == SettlementState.unsettled,
                )
                .values(
                    settlement_status=SettlementState.settled,
                    settled_at=datetime.utcnow(),
                    commission_rate=split.commission_rate,
                    commission_amount=split.commission_amount,
                    restaurant_earning=split.restaurant_earning,
                    rider_earning=split.rider_earning,
                    delivery_fee=split.delivery_fee,
                    gateway_fee=split.gateway_fee,
                    platform_revenue=split.platform_revenue,
                    total_price=split.total_price,
                    held_amount=ZERO,
                )
            )
            if claimed.rowcount != 1:
                raise self._claim_failure(order_id)

            self.ledger.post_restaurant_earning(
                restaurant_id, order_id, split.restaurant_earning, split.commission_amount, released_hold=held
            )
            self.ledger.post_platform_commission(order_id, split.commission_amount, split.platform_revenue)
            self.ledger.post_rider_earning(rider_id, order_id, split.rider_earning, withdrawable=not is_cod)

            if is_cod:
                cod = CODLedgerService(self.db, config)
                entry = cod.record_cod(rider_id, order_id, split.total_price, split.rider_earning, delivered_on)
                cod_entry_id = entry.entry_id
                old_status, new_status = cod.evaluate_settlement_status(rider_id)
            else:
                old_status = new_status = None

            bonus_unlocked = bonus.track_delivery(rider_id, delivered_on, order_id)
            self.db.commit()
        except AlreadySettledError:
            self.db.rollback()
            logger.info(f"Order #{order_id} was settled concurrently, nothing to do")
            return SettlementResult(order_id=order_id, settled=False, already_settled=True)
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Settlement failed for order #{order_id}: {e}")
            raise

        logger.info(
            f"✅ Order #{order_id} settled: commission={split.commission_amount} "
            f"restaurant={split.restaurant_earning} rider={split.rider_earning} "
            f"platform={split.platform_revenue} ({'COD' if is_cod else 'prepaid'})"
        )

        wallet_cache.invalidate(EntityType.restaurant.value, restaurant_id)
        wallet_cache.invalidate(EntityType.rider.value, rider_id)

        order = self._get_order(order_id)
        safe_notify(self.db, notify_order_settled, order)
        if bonus_unlocked:
            safe_notify(self.db, notify_bonus_achieved, rider_id, config.bonus_target_deliveries, config.bonus_amount)
        if old_status != new_status:
            outstanding = CODLedgerService(self.db, config).get_outstanding(rider_id)["outstanding"]
            safe_notify(self.db, notify_settlement_status_changed, rider_id, old_status.value, new_status.value, outstanding)

        return SettlementResult(
            order_id=order_id,
            settled=True,
            split=split,
            cod_entry_id=cod_entry_id,
            bonus_unlocked=bonus_unlocked,
        )

    def cancel(self, order_id: int, reason: Optional[str] = None) -> Order:
        """
        Cancel a pending or accepted order: release its hold and record an
        audit-only adjustment. No earnings are posted.
        """
        order = self._get_order(order_id)
        if order.status not in CANCELLABLE_STATUSES or order.settlement_status != SettlementState.unsettled:
            raise InvalidStateError(
                f"Order {order_id} cannot be cancelled from status {order.status.value}",
                order_id=order_id,
                status=order.status.value,
            )
        restaurant_id = order.restaurant_id
        held = to_decimal(order.held_amount)
        self.ledger.get_or_create_restaurant_wallet(restaurant_id)

        try:
            result = self.db.execute(
                update(Order)
                .where(
                    Order.order_id == order_id,
                    Order.status.in_(CANCELLABLE_STATUSES),
                    Order.settlement_status == SettlementState.unsettled,
                )
                .values(
                    status=OrderStatus.cancelled,
                    settlement_status=SettlementState.cancelled,
                    cancelled_at=datetime.utcnow(),
                    cancellation_reason=reason,
                    held_amount=ZERO,
                )
            )
            if result.rowcount != 1:
                raise InvalidStateError(f"Order {order_id} changed state during cancellation", order_id=order_id)

            if held:
                self.ledger.release_hold(restaurant_id, order_id, held)
            self.ledger.record_transaction(
                EntityType.restaurant, restaurant_id, TransactionType.adjustment,
                ZERO, self.ledger.restaurant_balance(restaurant_id),
                order_id=order_id,
                description=f"Order #{order_id} cancelled",
                details={"released_hold": str(held), "reason": reason or ""},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        wallet_cache.invalidate(EntityType.restaurant.value, restaurant_id)
        logger.info(f"🚫 Order #{order_id} cancelled, released hold {held}")
        return self._get_order(order_id)

    def settle_pending(self, limit: Optional[int] = None) -> dict:
        """Retry settlement for delivered orders whose settlement never committed."""
        q = (
            self.db.query(Order.order_id)
            .filter(
                Order.status.in_(EARNING_STATUSES),
                Order.settlement_status == SettlementState.unsettled,
                Order.rider_id.isnot(None),
            )
            .order_by(Order.order_id)
        )
        if limit:
            q = q.limit(limit)
        order_ids: List[int] = [oid for (oid,) in q.all()]

        settled, failed = [], []
        for order_id in order_ids:
            try:
                result = self.settle(order_id)
                if result.settled:
                    settled.append(order_id)
            except Exception:
                logger.exception(f"Pending settlement failed for order #{order_id}")
                failed.append(order_id)

        if order_ids:
            logger.info(f"Pending settlement sweep: {len(settled)} settled, {len(failed)} failed of {len(order_ids)}")
        return {"found": len(order_ids), "settled": settled, "failed": failed}
