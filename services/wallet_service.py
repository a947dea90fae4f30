"""
services/wallet_service.py  –  Wallet ledger

Every balance change is an append to `transactions` plus an atomic
`col = col + delta` update of the cached wallet row. Wallet rows are never
written with read-modify-write, so concurrent postings for the same rider,
restaurant or the platform cannot lose an update.

Posting methods do not commit; they run inside the caller's unit of work.
`apply_penalty`, `record_payout` and `record_refund` are standalone
operations and commit.
"""

from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.order import Order
from models.rider import Rider
from models.transaction import Transaction, EntityType, TransactionType, PLATFORM_ENTITY_ID
from models.wallet import RiderWallet, RestaurantWallet, PlatformWallet
from services.errors import ConcurrentUpdateError, NegativeBalanceError, OrderNotFoundError, RiderNotFoundError
from utils.cache import wallet_cache
from utils.money import ZERO, to_decimal

logger = logging.getLogger(__name__)


class WalletLedger:
    def __init__(self, db: Session):
        self.db = db

    # ── Wallet rows ────────────────────────────────────────────

    def get_or_create_rider_wallet(self, rider_id: int) -> RiderWallet:
        """Lazily create the wallet in its own short transaction."""
        wallet = self.db.query(RiderWallet).filter(RiderWallet.rider_id == rider_id).first()
        if wallet:
            return wallet
        try:
            self.db.add(RiderWallet(rider_id=rider_id))
            self.db.commit()
        except IntegrityError:
            # A concurrent request created it first
            self.db.rollback()
        return self.db.query(RiderWallet).filter(RiderWallet.rider_id == rider_id).one()

    def get_or_create_restaurant_wallet(self, restaurant_id: int) -> RestaurantWallet:
        wallet = self.db.query(RestaurantWallet).filter(RestaurantWallet.restaurant_id == restaurant_id).first()
        if wallet:
            return wallet
        try:
            self.db.add(RestaurantWallet(restaurant_id=restaurant_id))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
        return self.db.query(RestaurantWallet).filter(RestaurantWallet.restaurant_id == restaurant_id).one()

    def get_or_create_platform_wallet(self) -> PlatformWallet:
        wallet = self.get_platform_wallet()
        if wallet:
            return wallet
        try:
            self.db.add(PlatformWallet(platform_id=PLATFORM_ENTITY_ID))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
        return self.db.query(PlatformWallet).filter(PlatformWallet.platform_id == PLATFORM_ENTITY_ID).one()

    def get_rider_wallet(self, rider_id: int) -> Optional[RiderWallet]:
        return self.db.query(RiderWallet).filter(RiderWallet.rider_id == rider_id).first()

    def get_restaurant_wallet(self, restaurant_id: int) -> Optional[RestaurantWallet]:
        return self.db.query(RestaurantWallet).filter(RestaurantWallet.restaurant_id == restaurant_id).first()

    def get_platform_wallet(self) -> Optional[PlatformWallet]:
        return self.db.query(PlatformWallet).filter(PlatformWallet.platform_id == PLATFORM_ENTITY_ID).first()

    def get_wallet(self, entity_type: EntityType, entity_id: int):
        if EntityType(entity_type) == EntityType.rider:
            return self.get_rider_wallet(entity_id)
        if EntityType(entity_type) == EntityType.restaurant:
            return self.get_restaurant_wallet(entity_id)
        if EntityType(entity_type) == EntityType.platform and entity_id == PLATFORM_ENTITY_ID:
            return self.get_platform_wallet()
        raise ValueError(f"No wallet kept for entity type {entity_type}")

    # ── Atomic increments ──────────────────────────────────────

    def increment_rider(self, rider_id: int, **deltas) -> None:
        self._increment(RiderWallet, RiderWallet.rider_id, rider_id, deltas)

    def increment_restaurant(self, restaurant_id: int, **deltas) -> None:
        self._increment(RestaurantWallet, RestaurantWallet.restaurant_id, restaurant_id, deltas)

    def increment_platform(self, **deltas) -> None:
        self._increment(PlatformWallet, PlatformWallet.platform_id, PLATFORM_ENTITY_ID, deltas)

    @staticmethod
    def _delta_values(model, deltas: dict) -> dict:
        return {
            name: getattr(model, name) + to_decimal(delta)
            for name, delta in deltas.items()
            if to_decimal(delta) != 0
        }

    def _increment(self, model, key_column, key, deltas: dict) -> None:
        values = self._delta_values(model, deltas)
        if not values:
            return
        result = self.db.execute(update(model).where(key_column == key).values(**values))
        if result.rowcount != 1:
            raise LookupError(f"{model.__tablename__} row for {key} not found")

    def increment_if_unchanged(self, entity_type: EntityType, entity_id: int, observed: dict, **deltas) -> None:
        """
        Apply deltas only while every column in `observed` still holds the
        value that was read. Raises ConcurrentUpdateError if the row moved.
        """
        model, key_column = {
            EntityType.rider: (RiderWallet, RiderWallet.rider_id),
            EntityType.restaurant: (RestaurantWallet, RestaurantWallet.restaurant_id),
            EntityType.platform: (PlatformWallet, PlatformWallet.platform_id),
        }[EntityType(entity_type)]
        values = self._delta_values(model, deltas)
        values["updated_at"] = datetime.utcnow()
        unchanged = [getattr(model, name) == value for name, value in observed.items()]
        result = self.db.execute(update(model).where(key_column == entity_id, *unchanged).values(**values))
        if result.rowcount != 1:
            raise ConcurrentUpdateError(f"{model.__tablename__} row for {entity_id} changed since it was read")

    def rider_balance(self, rider_id: int) -> Decimal:
        return to_decimal(self.db.execute(
            select(RiderWallet.available_withdraw).where(RiderWallet.rider_id == rider_id)
        ).scalar_one())

    def rider_withdrawable(self, rider_id: int) -> Decimal:
        """available_withdraw, further capped by total earnings less cash still owed."""
        available, total, owed = self.db.execute(
            select(RiderWallet.available_withdraw, RiderWallet.total_earnings, Rider.cod_balance)
            .join(Rider, Rider.rider_id == RiderWallet.rider_id)
            .where(RiderWallet.rider_id == rider_id)
        ).one()
        return max(min(to_decimal(available), to_decimal(total) - to_decimal(owed)), ZERO)

    def restaurant_balance(self, restaurant_id: int) -> Decimal:
        return to_decimal(self.db.execute(
            select(RestaurantWallet.available_balance).where(RestaurantWallet.restaurant_id == restaurant_id)
        ).scalar_one())

    def platform_balance(self) -> Decimal:
        return to_decimal(self.db.execute(
            select(PlatformWallet.balance).where(PlatformWallet.platform_id == PLATFORM_ENTITY_ID)
        ).scalar_one())

    # ── Ledger append ──────────────────────────────────────────

    def record_transaction(
        self,
        entity_type: EntityType,
        entity_id: int,
        transaction_type: TransactionType,
        amount,
        balance_after,
        order_id: Optional[int] = None,
        description: str = "",
        reference: str = "",
        details: Optional[dict] = None,
    ) -> Transaction:
        txn = Transaction(
            entity_type=entity_type,
            entity_id=entity_id,
            order_id=order_id,
            transaction_type=transaction_type,
            amount=to_decimal(amount),
            balance_after=to_decimal(balance_after),
            description=description,
            reference=reference,
            details=details or {},
        )
        self.db.add(txn)
        self.db.flush()
        return txn

    # ── Settlement postings (caller commits) ───────────────────

    def post_restaurant_earning(self, restaurant_id: int, order_id: int, earning, commission, released_hold=ZERO) -> Transaction:
        earning = to_decimal(earning)
        self.increment_restaurant(
            restaurant_id,
            available_balance=earning,
            pending_payout=earning,
            total_earnings=earning,
            total_commission_collected=commission,
            on_hold_amount=-to_decimal(released_hold),
        )
        return self.record_transaction(
            EntityType.restaurant, restaurant_id, TransactionType.earning,
            earning, self.restaurant_balance(restaurant_id),
            order_id=order_id,
            description=f"Earning for order #{order_id}",
            details={"commission": str(commission), "released_hold": str(released_hold)},
        )

    def post_platform_commission(self, order_id: int, commission, platform_revenue) -> Transaction:
        commission = to_decimal(commission)
        self.increment_platform(balance=commission, total_platform_revenue=platform_revenue)
        return self.record_transaction(
            EntityType.platform, PLATFORM_ENTITY_ID, TransactionType.commission,
            commission, self.platform_balance(),
            order_id=order_id,
            description=f"Commission on order #{order_id}",
            details={"platform_revenue": str(platform_revenue)},
        )

    def post_rider_earning(self, rider_id: int, order_id: int, earning, withdrawable: bool) -> Transaction:
        """COD earnings are not withdrawable: the rider already holds them in cash."""
        earning = to_decimal(earning)
        self.increment_rider(
            rider_id,
            delivery_earnings=earning,
            total_earnings=earning,
            available_withdraw=earning if withdrawable else ZERO,
        )
        return self.record_transaction(
            EntityType.rider, rider_id, TransactionType.earning,
            earning, self.rider_balance(rider_id),
            order_id=order_id,
            description=f"Delivery earning for order #{order_id}",
            details={"withdrawable": withdrawable},
        )

    def post_rider_cash_collected(self, rider_id: int, order_id: int, amount) -> Transaction:
        self.increment_rider(rider_id, cash_collected=amount)
        return self.record_transaction(
            EntityType.rider, rider_id, TransactionType.cash_collected,
            amount, self.rider_balance(rider_id),
            order_id=order_id,
            description=f"Cash collected for order #{order_id}",
        )

    def post_rider_bonus(self, rider_id: int, amount, description: str) -> Transaction:
        amount = to_decimal(amount)
        self.increment_rider(rider_id, bonuses=amount, total_earnings=amount, available_withdraw=amount)
        return self.record_transaction(
            EntityType.rider, rider_id, TransactionType.bonus,
            amount, self.rider_balance(rider_id),
            description=description,
        )

    def reserve_hold(self, restaurant_id: int, order_id: int, amount) -> None:
        self.increment_restaurant(restaurant_id, on_hold_amount=amount)

    def release_hold(self, restaurant_id: int, order_id: int, amount) -> None:
        self.increment_restaurant(restaurant_id, on_hold_amount=-to_decimal(amount))

    # ── Guarded debits (commit) ────────────────────────────────

    def apply_penalty(self, rider_id: int, amount, reason: str = "", order_id: Optional[int] = None) -> Transaction:
        """
        Deduct a penalty from the rider's withdrawable balance.

        Raises NegativeBalanceError if the penalty exceeds availableWithdraw;
        the balance is never clamped.
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError("Penalty amount must be positive")
        self.get_or_create_rider_wallet(rider_id)

        try:
            result = self.db.execute(
                update(RiderWallet)
                .where(RiderWallet.rider_id == rider_id, RiderWallet.available_withdraw >= amount)
                .values(
                    penalties=RiderWallet.penalties + amount,
                    total_earnings=RiderWallet.total_earnings - amount,
                    available_withdraw=RiderWallet.available_withdraw - amount,
                )
            )
            if result.rowcount != 1:
                raise NegativeBalanceError("rider", rider_id, amount, self.rider_balance(rider_id))

            txn = self.record_transaction(
                EntityType.rider, rider_id, TransactionType.penalty,
                amount, self.rider_balance(rider_id),
                order_id=order_id,
                description=reason or "Penalty",
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        wallet_cache.invalidate(EntityType.rider.value, rider_id)
        logger.info(f"Penalty {amount} applied to rider {rider_id}: {reason}")
        return txn

    def record_payout(self, entity_type: EntityType, entity_id: int, amount, reference: str = "") -> Transaction:
        """Pay out from a rider's or restaurant's withdrawable balance."""
        entity_type = EntityType(entity_type)
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError("Payout amount must be positive")

        now = datetime.utcnow()
        if entity_type == EntityType.rider:
            if not self.db.query(Rider.rider_id).filter(Rider.rider_id == entity_id).first():
                raise RiderNotFoundError(entity_id)
            self.get_or_create_rider_wallet(entity_id)
            # Cash the rider still owes is netted against what they earned
            owed = select(Rider.cod_balance).where(Rider.rider_id == entity_id).scalar_subquery()
            stmt = (
                update(RiderWallet)
                .where(
                    RiderWallet.rider_id == entity_id,
                    RiderWallet.available_withdraw >= amount,
                    RiderWallet.total_earnings - owed >= amount,
                )
                .values(
                    available_withdraw=RiderWallet.available_withdraw - amount,
                    last_withdraw_date=now,
                )
                .execution_options(synchronize_session=False)
            )
            balance, limit = self.rider_balance, self.rider_withdrawable
        elif entity_type == EntityType.restaurant:
            self.get_or_create_restaurant_wallet(entity_id)
            stmt = (
                update(RestaurantWallet)
                .where(RestaurantWallet.restaurant_id == entity_id, RestaurantWallet.available_balance >= amount)
                .values(
                    available_balance=RestaurantWallet.available_balance - amount,
                    pending_payout=RestaurantWallet.pending_payout - amount,
                    last_payout_date=now,
                )
            )
            balance = limit = self.restaurant_balance
        else:
            raise ValueError(f"Payouts are not supported for {entity_type.value}")

        try:
            result = self.db.execute(stmt)
            if result.rowcount != 1:
                raise NegativeBalanceError(entity_type.value, entity_id, amount, limit(entity_id))
            txn = self.record_transaction(
                entity_type, entity_id, TransactionType.payout,
                amount, balance(entity_id),
                description="Payout",
                reference=reference,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        wallet_cache.invalidate(entity_type.value, entity_id)
        logger.info(f"Payout {amount} recorded for {entity_type.value} {entity_id} ref={reference!r}")
        return txn

    def record_refund(self, order_id: int, amount, reason: str = "") -> Transaction:
        """
        Refund part or all of an order to its customer.

        Refunds on one order add up to at most its total_price; the line's
        balance_after is the order's running refunded total. Wallets are
        not touched.
        """
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValueError("Refund amount must be positive")
        order = self.db.get(Order, order_id)
        if not order:
            raise OrderNotFoundError(order_id)
        customer_id = order.customer_id

        try:
            result = self.db.execute(
                update(Order)
                .where(Order.order_id == order_id, Order.refunded_amount + amount <= Order.total_price)
                .values(refunded_amount=Order.refunded_amount + amount)
                .execution_options(synchronize_session=False)
            )
            total_price, refunded = self.db.execute(
                select(Order.total_price, Order.refunded_amount).where(Order.order_id == order_id)
            ).one()
            total_price, refunded = to_decimal(total_price), to_decimal(refunded)
            if result.rowcount != 1:
                raise NegativeBalanceError("order", order_id, amount, total_price - refunded)

            txn = self.record_transaction(
                EntityType.customer, customer_id, TransactionType.refund,
                amount, refunded,
                order_id=order_id,
                description=f"Refund for order #{order_id}: {reason}" if reason else f"Refund for order #{order_id}",
                details={"reason": reason, "refundable": str(total_price - refunded)},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Refund {amount} recorded on order #{order_id} for customer {customer_id}: {reason}")
        return txn

    # ── Queries ────────────────────────────────────────────────

    def list_transactions(
        self,
        entity_type: EntityType,
        entity_id: int,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        page: int = 1,
        page_size: int = 50,
    ):
        """Newest first. Returns (rows, total)."""
        q = self.db.query(Transaction).filter(
            Transaction.entity_type == EntityType(entity_type),
            Transaction.entity_id == entity_id,
        )
        if date_from:
            q = q.filter(Transaction.created_at >= datetime.combine(date_from, time.min))
        if date_to:
            q = q.filter(Transaction.created_at <= datetime.combine(date_to, time.max))

        total = q.count()
        rows = (
            q.order_by(Transaction.created_at.desc(), Transaction.transaction_id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return rows, total
