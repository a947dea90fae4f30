"""
Wallet reconciliation
"""
from decimal import Decimal

import pytest
from sqlalchemy import update

from models.cod_ledger import CODLedgerEntry
from models.order import Order, OrderStatus, PaymentMethod, SettlementState
from models.rider import Rider
from models.transaction import Transaction, TransactionType, PLATFORM_ENTITY_ID
from models.wallet import RiderWallet, RestaurantWallet
from services.errors import ConcurrentUpdateError, RiderNotFoundError
from services.reconciliation_service import RECONCILE_ATTEMPTS, ReconciliationService
from services.settlement_service import SettlementService
from services.wallet_service import WalletLedger


def _rider_wallet(db, rider_id):
    wallet = db.query(RiderWallet).filter(RiderWallet.rider_id == rider_id).one()
    db.refresh(wallet)
    return wallet


def _adjustments(db):
    return db.query(Transaction).filter(Transaction.transaction_type == TransactionType.adjustment).all()


class TestFixedPoint:

    def test_clean_ledgers_need_no_correction(self, db, make_rider, deliver_order):
        rider = make_rider()
        deliver_order(rider.rider_id, subtotal=1000, distance_km=5.0)
        deliver_order(rider.rider_id, subtotal=400, payment_method=PaymentMethod.prepaid, distance_km=2.0)
        WalletLedger(db).apply_penalty(rider.rider_id, 30, reason="Late delivery")

        service = ReconciliationService(db)
        rider_report = service.reconcile_rider(rider.rider_id)
        restaurant_report = service.reconcile_restaurant(1)

        assert rider_report.deltas == {}
        assert restaurant_report.deltas == {}
        assert not rider_report.drifted
        assert _adjustments(db) == []

    def test_open_hold_matches_unsettled_orders(self, db, make_rider, ready_order):
        rider = make_rider()
        ready_order(rider.rider_id, subtotal=1000)

        report = ReconciliationService(db).reconcile_restaurant(1)

        assert report.deltas == {}
        wallet = db.query(RestaurantWallet).filter(RestaurantWallet.restaurant_id == 1).one()
        assert wallet.on_hold_amount == Decimal("900")


class TestRiderDrift:

    def test_drifted_totals_are_restored(self, db, make_rider, deliver_order):
        rider = make_rider()
        deliver_order(rider.rider_id, subtotal=1000, distance_km=5.0)
        WalletLedger(db).increment_rider(rider.rider_id, delivery_earnings=40, cash_collected=-100)
        db.commit()

        report = ReconciliationService(db).reconcile_rider(rider.rider_id)

        assert report.deltas == {"delivery_earnings": Decimal("-40"), "cash_collected": Decimal("100")}
        wallet = _rider_wallet(db, rider.rider_id)
        assert wallet.delivery_earnings == Decimal("160")
        assert wallet.cash_collected == Decimal("1160")

        again = ReconciliationService(db).reconcile_rider(rider.rider_id)
        assert again.deltas == {}
        assert len(_adjustments(db)) == 1

    def test_uncapped_earning_is_capped_and_adjusted(self, db, make_rider, deliver_order):
        rider = make_rider()
        order_id, _ = deliver_order(rider.rider_id, payment_method=PaymentMethod.prepaid, distance_km=2.0)
        # Persisted before the cap existed
        db.execute(update(Order).where(Order.order_id == order_id).values(rider_earning=460, delivery_fee=460))
        WalletLedger(db).increment_rider(
            rider.rider_id, delivery_earnings=360, total_earnings=360, available_withdraw=360
        )
        db.commit()

        report = ReconciliationService(db).reconcile_rider(rider.rider_id)

        assert report.corrected_orders == [order_id]
        assert report.deltas["delivery_earnings"] == Decimal("-260")
        assert report.deltas["total_earnings"] == Decimal("-260")
        assert report.deltas["available_withdraw"] == Decimal("-260")

        db.expire_all()
        order = db.get(Order, order_id)
        assert order.rider_earning == Decimal("200")
        assert order.delivery_fee == Decimal("200")
        assert order.total_price == Decimal("1200")

        adjustment = db.get(Transaction, report.adjustment_transaction_id)
        assert adjustment.transaction_type == TransactionType.adjustment
        assert adjustment.amount == Decimal("-260")
        assert adjustment.details["corrected_orders"] == [order_id]

        wallet = _rider_wallet(db, rider.rider_id)
        assert wallet.delivery_earnings == Decimal("200")
        assert wallet.available_withdraw == Decimal("200")

        assert ReconciliationService(db).reconcile_rider(rider.rider_id).deltas == {}

    def test_capping_cod_order_fixes_pending_entry(self, db, make_rider, deliver_order):
        rider = make_rider()
        order_id, _ = deliver_order(rider.rider_id, subtotal=1000, distance_km=5.0)
        db.execute(update(Order).where(Order.order_id == order_id).values(rider_earning=460))
        db.execute(
            update(CODLedgerEntry).where(CODLedgerEntry.order_id == order_id).values(rider_earning=460, admin_balance=700)
        )
        db.commit()

        ReconciliationService(db).reconcile_rider(rider.rider_id)

        db.expire_all()
        entry = db.query(CODLedgerEntry).filter(CODLedgerEntry.order_id == order_id).one()
        assert entry.cod_collected == Decimal("1160")
        assert entry.rider_earning == Decimal("200")
        assert entry.admin_balance == Decimal("960")
        assert db.get(Rider, rider.rider_id).cod_balance == Decimal("960")

    def test_unknown_rider(self, db):
        with pytest.raises(RiderNotFoundError):
            ReconciliationService(db).reconcile_rider(55)


class TestRestaurantDrift:

    def test_balance_drift_corrected(self, db, make_rider, deliver_order):
        rider = make_rider()
        deliver_order(rider.rider_id, subtotal=1000)
        WalletLedger(db).increment_restaurant(1, available_balance=50)
        db.commit()

        report = ReconciliationService(db).reconcile("restaurant", 1)

        assert report.deltas == {"available_balance": Decimal("-50")}
        assert db.get(Transaction, report.adjustment_transaction_id).amount == 0
        wallet = db.query(RestaurantWallet).filter(RestaurantWallet.restaurant_id == 1).one()
        db.refresh(wallet)
        assert wallet.available_balance == Decimal("900")

    def test_inconsistent_order_earning_corrected(self, db, make_rider, deliver_order):
        rider = make_rider()
        order_id, _ = deliver_order(rider.rider_id, subtotal=1000)
        db.execute(update(Order).where(Order.order_id == order_id).values(restaurant_earning=950))
        db.commit()

        report = ReconciliationService(db).reconcile_restaurant(1)

        assert report.corrected_orders == [order_id]
        assert report.deltas == {}
        db.expire_all()
        assert db.get(Order, order_id).restaurant_earning == Decimal("900")


class TestPlatformDrift:

    def test_platform_totals_restored(self, db, make_rider, deliver_order):
        rider = make_rider()
        deliver_order(rider.rider_id, subtotal=1000)
        WalletLedger(db).increment_platform(balance=-40)
        db.commit()

        report = ReconciliationService(db).reconcile("platform", PLATFORM_ENTITY_ID)

        assert report.deltas == {"balance": Decimal("40")}
        adjustment = db.get(Transaction, report.adjustment_transaction_id)
        assert adjustment.amount == Decimal("40")
        assert adjustment.balance_after == Decimal("100")
        assert ReconciliationService(db).reconcile_platform().deltas == {}

    def test_customer_cannot_be_reconciled(self, db):
        with pytest.raises(ValueError):
            ReconciliationService(db).reconcile("customer", 11)


class TestBatch:

    def test_batch_settles_stragglers_and_corrects(self, db, make_rider, deliver_order, ready_order):
        steady = make_rider()
        drifting = make_rider(full_name="Maria Santos")
        deliver_order(steady.rider_id)
        deliver_order(drifting.rider_id)
        WalletLedger(db).increment_rider(drifting.rider_id, bonuses=500)
        db.commit()

        straggler = ready_order(steady.rider_id)
        db.execute(update(Order).where(Order.order_id == straggler).values(status=OrderStatus.delivered))
        db.commit()

        summary = ReconciliationService(db).run_batch()

        assert summary["pending_settlement"]["settled"] == [straggler]
        assert summary["riders_checked"] == 2
        assert summary["restaurants_checked"] == 1
        assert summary["failed"] == []
        assert [(r.entity_type, r.entity_id) for r in summary["drifted"]] == [("rider", drifting.rider_id)]

        db.expire_all()
        assert db.get(Order, straggler).settlement_status == SettlementState.settled
        assert _rider_wallet(db, drifting.rider_id).bonuses == 0


def _delivered_unsettled(db, ready_order, rider_id, **kwargs):
    order_id = ready_order(rider_id, **kwargs)
    db.execute(update(Order).where(Order.order_id == order_id).values(status=OrderStatus.delivered))
    db.commit()
    return order_id


class TestInterleavedSettlement:

    def test_settlement_between_reads_is_counted_once(self, db, make_rider, deliver_order, ready_order, monkeypatch):
        rider = make_rider()
        deliver_order(rider.rider_id, payment_method=PaymentMethod.prepaid, subtotal=1000, distance_km=5.0)
        late_order = _delivered_unsettled(
            db, ready_order, rider.rider_id, payment_method=PaymentMethod.prepaid, subtotal=1000, distance_km=2.0
        )
        original = ReconciliationService.expected_rider_totals
        calls = []

        def settle_in_between(self, rider_id):
            # Lands after the wallet is read, before the expected totals are summed
            calls.append(rider_id)
            if len(calls) == 1:
                SettlementService(self.db).settle(late_order)
            return original(self, rider_id)

        monkeypatch.setattr(ReconciliationService, "expected_rider_totals", settle_in_between)
        report = ReconciliationService(db).reconcile_rider(rider.rider_id)

        assert len(calls) == 2
        assert report.deltas == {}
        assert _adjustments(db) == []
        wallet = _rider_wallet(db, rider.rider_id)
        assert wallet.delivery_earnings == Decimal("260")
        assert wallet.total_earnings == Decimal("260")
        assert wallet.available_withdraw == Decimal("260")

        monkeypatch.undo()
        assert ReconciliationService(db).reconcile_rider(rider.rider_id).deltas == {}

    def test_gives_up_when_wallet_keeps_moving(self, db, make_rider, ready_order, monkeypatch):
        rider = make_rider()
        waiting = [
            _delivered_unsettled(db, ready_order, rider.rider_id, payment_method=PaymentMethod.prepaid, distance_km=2.0)
            for _ in range(RECONCILE_ATTEMPTS)
        ]
        original = ReconciliationService.expected_rider_totals

        def settle_every_time(self, rider_id):
            SettlementService(self.db).settle(waiting.pop(0))
            return original(self, rider_id)

        monkeypatch.setattr(ReconciliationService, "expected_rider_totals", settle_every_time)
        with pytest.raises(ConcurrentUpdateError):
            ReconciliationService(db).reconcile_rider(rider.rider_id)

        assert waiting == []
        assert _adjustments(db) == []
        assert _rider_wallet(db, rider.rider_id).delivery_earnings == Decimal("300")

        monkeypatch.undo()
        assert ReconciliationService(db).reconcile_rider(rider.rider_id).deltas == {}
