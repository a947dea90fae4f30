"""
services/reconciliation_service.py  –  Wallet reconciliation

Rebuilds every cached wallet total from order history, COD entries, bonus
records and the transaction log, and corrects any drift.

Corrections are written as increments of (expected - observed), guarded on
the wallet row still holding the observed values. A posting that lands
between the read and the correction makes the guard miss; the pass is then
rolled back and re-run from fresh reads, so the posting is neither lost
nor counted twice.

Orders persisted with an uncapped rider earning or delivery fee, or a
restaurant earning that disagrees with its own subtotal and commission,
are corrected before the totals are rebuilt.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from pydantic import BaseModel, Field
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from models.cod_ledger import CODLedgerEntry, CODEntryStatus
from models.order import Order, PaymentMethod, SettlementState, EARNING_STATUSES
from models.rider import Rider
from models.rider_bonus import RiderBonusRecord
from models.transaction import Transaction, EntityType, TransactionType, PLATFORM_ENTITY_ID
from models.wallet import RiderWallet, RestaurantWallet, PlatformWallet
from services.cod_ledger_service import CODLedgerService
from services.errors import ConcurrentUpdateError, ReconciliationDriftDetected, RiderNotFoundError
from services.settlement_config import SettlementConfig
from services.settlement_service import SettlementService
from services.wallet_service import WalletLedger
from utils.cache import wallet_cache
from utils.money import ZERO, round_cents, to_decimal

logger = logging.getLogger(__name__)

RIDER_FIELDS = ("cash_collected", "delivery_earnings", "penalties", "bonuses", "available_withdraw", "total_earnings")
RESTAURANT_FIELDS = ("available_balance", "pending_payout", "on_hold_amount", "total_commission_collected", "total_earnings")
PLATFORM_FIELDS = ("balance", "total_platform_revenue")
RECONCILE_ATTEMPTS = 3


class ReconciliationReport(BaseModel):
    entity_type: str
    entity_id: int
    deltas: Dict[str, Decimal] = Field(default_factory=dict)
    corrected_orders: List[int] = Field(default_factory=list)
    adjustment_transaction_id: Optional[int] = None

    @property
    def drifted(self) -> bool:
        return bool(self.deltas)


class ReconciliationService:
    def __init__(self, db: Session, settings=None):
        self.db = db
        self.settings = settings
        self.config = SettlementConfig.from_settings(settings)
        self.ledger = WalletLedger(db)

    # ── Sums ───────────────────────────────────────────────────

    def _sum(self, column, *criteria) -> Decimal:
        value = self.db.query(func.coalesce(func.sum(column), 0)).filter(*criteria).scalar()
        return round_cents(value)

    def _settled_orders(self, *criteria):
        return (
            Order.status.in_(EARNING_STATUSES),
            Order.settlement_status == SettlementState.settled,
            *criteria,
        )

    def _txn_sum(self, entity_type: EntityType, entity_id: int, txn_type: TransactionType, *criteria) -> Decimal:
        return self._sum(
            Transaction.amount,
            Transaction.entity_type == entity_type,
            Transaction.entity_id == entity_id,
            Transaction.transaction_type == txn_type,
            *criteria,
        )

    # ── Order corrections ──────────────────────────────────────

    def _cap_rider_orders(self, rider_id: int) -> List[int]:
        cap = self.config.rider_pay_cap
        inflated = (
            self.db.query(Order)
            .filter(Order.rider_id == rider_id, (Order.rider_earning > cap) | (Order.delivery_fee > cap))
            .all()
        )
        corrected = []
        for order in inflated:
            old_earning = to_decimal(order.rider_earning)
            earning = min(old_earning, cap)
            fee = min(to_decimal(order.delivery_fee), cap)
            order.rider_earning = earning
            order.delivery_fee = fee
            order.total_price = to_decimal(order.subtotal) - to_decimal(order.discount) + fee
            order.platform_revenue = (
                to_decimal(order.commission_amount) + fee - earning - to_decimal(order.gateway_fee)
            )

            entry = order.cod_entry
            if entry is not None and entry.status == CODEntryStatus.pending:
                entry.rider_earning = earning
                entry.admin_balance = to_decimal(entry.cod_collected) - earning

            corrected.append(order.order_id)
            logger.warning(f"Capped order #{order.order_id} rider earning {old_earning} -> {earning}")
        self.db.flush()
        return corrected

    def _fix_restaurant_orders(self, restaurant_id: int) -> List[int]:
        orders = self.db.query(Order).filter(*self._settled_orders(Order.restaurant_id == restaurant_id)).all()
        corrected = []
        for order in orders:
            expected = max(
                to_decimal(order.subtotal) - to_decimal(order.discount) - to_decimal(order.commission_amount),
                ZERO,
            )
            if round_cents(order.restaurant_earning) != round_cents(expected):
                logger.warning(
                    f"Corrected order #{order.order_id} restaurant earning {order.restaurant_earning} -> {expected}"
                )
                order.restaurant_earning = expected
                corrected.append(order.order_id)
        self.db.flush()
        return corrected

    # ── Expected totals ────────────────────────────────────────

    def expected_rider_totals(self, rider_id: int) -> Dict[str, Decimal]:
        delivery = self._sum(Order.rider_earning, *self._settled_orders(Order.rider_id == rider_id))
        prepaid = self._sum(
            Order.rider_earning,
            *self._settled_orders(Order.rider_id == rider_id, Order.payment_method == PaymentMethod.prepaid),
        )
        bonuses = self._sum(
            RiderBonusRecord.bonus_amount,
            RiderBonusRecord.rider_id == rider_id,
            RiderBonusRecord.is_bonus_achieved.is_(True),
        )
        penalties = self._txn_sum(EntityType.rider, rider_id, TransactionType.penalty)
        payouts = self._txn_sum(EntityType.rider, rider_id, TransactionType.payout)
        # Negative deposits are settle-ups where the platform owed the rider
        owed_credits = -self._txn_sum(
            EntityType.rider, rider_id, TransactionType.cash_deposit, Transaction.amount < 0
        )
        pending = (CODLedgerEntry.rider_id == rider_id, CODLedgerEntry.status == CODEntryStatus.pending)

        return {
            "cash_collected": self._sum(CODLedgerEntry.cod_collected, *pending),
            "delivery_earnings": delivery,
            "penalties": penalties,
            "bonuses": bonuses,
            "available_withdraw": prepaid + bonuses - penalties - payouts + owed_credits,
            "total_earnings": delivery + bonuses - penalties,
            "cod_balance": self._sum(CODLedgerEntry.admin_balance, *pending),
        }

    def expected_restaurant_totals(self, restaurant_id: int) -> Dict[str, Decimal]:
        earnings = self._sum(Order.restaurant_earning, *self._settled_orders(Order.restaurant_id == restaurant_id))
        payouts = self._txn_sum(EntityType.restaurant, restaurant_id, TransactionType.payout)
        return {
            "available_balance": earnings - payouts,
            "pending_payout": earnings - payouts,
            "on_hold_amount": self._sum(
                Order.held_amount,
                Order.restaurant_id == restaurant_id,
                Order.settlement_status == SettlementState.unsettled,
            ),
            "total_commission_collected": self._sum(
                Order.commission_amount, *self._settled_orders(Order.restaurant_id == restaurant_id)
            ),
            "total_earnings": earnings,
        }

    def expected_platform_totals(self) -> Dict[str, Decimal]:
        return {
            "balance": self._sum(Order.commission_amount, *self._settled_orders()),
            "total_platform_revenue": self._sum(Order.platform_revenue, *self._settled_orders()),
        }

    @staticmethod
    def _deltas(expected: dict, observed: dict) -> Dict[str, Decimal]:
        deltas = {}
        for name, value in expected.items():
            delta = round_cents(value - to_decimal(observed.get(name)))
            if delta != 0:
                deltas[name] = delta
        return deltas

    # ── Per-entity passes ──────────────────────────────────────

    def _run_pass(self, entity_type: EntityType, entity_id: int, one_pass) -> ReconciliationReport:
        """
        Run one reconciliation pass in its own transaction. A pass whose
        wallet moved between the read and the correction is rolled back
        and re-run from fresh reads.
        """
        for attempt in range(1, RECONCILE_ATTEMPTS + 1):
            report = ReconciliationReport(entity_type=entity_type.value, entity_id=entity_id)
            try:
                one_pass(report)
                self.db.commit()
            except ConcurrentUpdateError as e:
                self.db.rollback()
                logger.info(f"{e}; re-reading {entity_type.value} {entity_id} (attempt {attempt}/{RECONCILE_ATTEMPTS})")
                continue
            except Exception:
                self.db.rollback()
                raise

            if report.drifted:
                logger.warning(str(ReconciliationDriftDetected(report.entity_type, entity_id, report.deltas)))
                wallet_cache.invalidate(entity_type.value, entity_id)
            return report

        raise ConcurrentUpdateError(
            f"{entity_type.value} {entity_id} kept changing during reconciliation, gave up after {RECONCILE_ATTEMPTS} attempts"
        )

    def _adjust(self, report: ReconciliationReport, deltas: dict, balance_after) -> None:
        txn = self.ledger.record_transaction(
            EntityType(report.entity_type), report.entity_id, TransactionType.adjustment,
            deltas.get("total_earnings", deltas.get("balance", ZERO)), balance_after,
            description="Reconciliation adjustment",
            details={
                "deltas": {k: str(v) for k, v in deltas.items()},
                "corrected_orders": report.corrected_orders,
            },
        )
        report.deltas = deltas
        report.adjustment_transaction_id = txn.transaction_id

    def reconcile_rider(self, rider_id: int) -> ReconciliationReport:
        if not self.db.query(Rider.rider_id).filter(Rider.rider_id == rider_id).first():
            raise RiderNotFoundError(rider_id)
        self.ledger.get_or_create_rider_wallet(rider_id)

        def one_pass(report: ReconciliationReport):
            report.corrected_orders = self._cap_rider_orders(rider_id)

            row = self.db.query(RiderWallet).populate_existing().filter(RiderWallet.rider_id == rider_id).one()
            observed = {name: getattr(row, name) for name in RIDER_FIELDS}
            owed = self.db.query(Rider.cod_balance).filter(Rider.rider_id == rider_id).scalar()

            deltas = self._deltas(self.expected_rider_totals(rider_id), {**observed, "cod_balance": owed})
            if not deltas:
                return
            wallet_deltas = {k: v for k, v in deltas.items() if k != "cod_balance"}
            self.ledger.increment_if_unchanged(EntityType.rider, rider_id, observed, **wallet_deltas)
            if "cod_balance" in deltas:
                moved = self.db.execute(
                    update(Rider)
                    .where(Rider.rider_id == rider_id, Rider.cod_balance == owed)
                    .values(cod_balance=Rider.cod_balance + deltas["cod_balance"])
                )
                if moved.rowcount != 1:
                    raise ConcurrentUpdateError(f"riders row for {rider_id} changed since it was read")
            self._adjust(report, deltas, self.ledger.rider_balance(rider_id))
            CODLedgerService(self.db, self.config).evaluate_settlement_status(rider_id)

        return self._run_pass(EntityType.rider, rider_id, one_pass)

    def reconcile_restaurant(self, restaurant_id: int) -> ReconciliationReport:
        self.ledger.get_or_create_restaurant_wallet(restaurant_id)

        def one_pass(report: ReconciliationReport):
            report.corrected_orders = self._fix_restaurant_orders(restaurant_id)

            row = self.db.query(RestaurantWallet).populate_existing().filter(RestaurantWallet.restaurant_id == restaurant_id).one()
            observed = {name: getattr(row, name) for name in RESTAURANT_FIELDS}

            deltas = self._deltas(self.expected_restaurant_totals(restaurant_id), observed)
            if not deltas:
                return
            self.ledger.increment_if_unchanged(EntityType.restaurant, restaurant_id, observed, **deltas)
            self._adjust(report, deltas, self.ledger.restaurant_balance(restaurant_id))

        return self._run_pass(EntityType.restaurant, restaurant_id, one_pass)

    def reconcile_platform(self) -> ReconciliationReport:
        self.ledger.get_or_create_platform_wallet()

        def one_pass(report: ReconciliationReport):
            row = self.db.query(PlatformWallet).populate_existing().filter(
                PlatformWallet.platform_id == PLATFORM_ENTITY_ID
            ).one()
            observed = {name: getattr(row, name) for name in PLATFORM_FIELDS}

            deltas = self._deltas(self.expected_platform_totals(), observed)
            if not deltas:
                return
            self.ledger.increment_if_unchanged(EntityType.platform, PLATFORM_ENTITY_ID, observed, **deltas)
            self._adjust(report, deltas, self.ledger.platform_balance())

        return self._run_pass(EntityType.platform, PLATFORM_ENTITY_ID, one_pass)

    def reconcile(self, entity_type, entity_id: int) -> ReconciliationReport:
        entity_type = EntityType(entity_type)
        if entity_type == EntityType.rider:
            return self.reconcile_rider(entity_id)
        if entity_type == EntityType.restaurant:
            return self.reconcile_restaurant(entity_id)
        if entity_type == EntityType.platform and entity_id == PLATFORM_ENTITY_ID:
            return self.reconcile_platform()
        raise ValueError(f"Cannot reconcile {entity_type.value} {entity_id}")

    # ── Batch ──────────────────────────────────────────────────

    def run_batch(self) -> dict:
        """
        Settle stragglers, refresh COD statuses, then reconcile every rider
        and restaurant one at a time, and the platform last since rider order
        corrections move its revenue. A failing entity is logged and skipped;
        the batch can be re-run at any point.
        """
        started = datetime.utcnow()
        pending = SettlementService(self.db, self.settings).settle_pending()
        status_changes = CODLedgerService(self.db, self.config).refresh_all_statuses()

        rider_ids = [rid for (rid,) in self.db.query(Rider.rider_id).order_by(Rider.rider_id).all()]
        restaurant_ids = sorted(
            {rid for (rid,) in self.db.query(RestaurantWallet.restaurant_id).all()}
            | {rid for (rid,) in self.db.query(Order.restaurant_id).distinct().all()}
        )

        drifted, failed = [], []
        passes = (
            (EntityType.rider, rider_ids),
            (EntityType.restaurant, restaurant_ids),
            (EntityType.platform, [PLATFORM_ENTITY_ID]),
        )
        for entity_type, ids in passes:
            for entity_id in ids:
                try:
                    report = self.reconcile(entity_type, entity_id)
                except Exception:
                    logger.exception(f"Reconciliation failed for {entity_type.value} {entity_id}")
                    failed.append({"entity_type": entity_type.value, "entity_id": entity_id})
                    continue
                if report.drifted:
                    drifted.append(report)

        elapsed = (datetime.utcnow() - started).total_seconds()
        logger.info(
            f"🔁 Reconciliation batch: {len(rider_ids)} riders, {len(restaurant_ids)} restaurants, "
            f"{len(drifted)} corrected, {len(failed)} failed in {elapsed:.1f}s"
        )
        return {
            "pending_settlement": pending,
            "status_changes": status_changes,
            "riders_checked": len(rider_ids),
            "restaurants_checked": len(restaurant_ids),
            "drifted": drifted,
            "failed": failed,
        }
