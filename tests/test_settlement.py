"""
Settlement split and exactly-once posting
"""
from decimal import Decimal

import pytest
from sqlalchemy import update

from models.cod_ledger import CODLedgerEntry, CODEntryStatus
from models.notification import Notification
from models.order import Order, OrderStatus, PaymentMethod, SettlementState
from models.transaction import Transaction, EntityType, TransactionType, PLATFORM_ENTITY_ID
from models.wallet import RiderWallet, RestaurantWallet
from services.errors import InvalidStateError, OrderNotFoundError
from services.settlement_config import SettlementConfig
from services.settlement_service import SettlementService, compute_settlement_split
from utils import notification_helper


def _config(**overrides):
    return SettlementConfig.from_settings().model_copy(update=overrides)


class TestComputeSplit:

    def test_cod_scenario(self):
        split = compute_settlement_split(1000, 0, 5, PaymentMethod.cod, _config(commission_rate=Decimal("15")))
        assert split.commission_amount == Decimal("150")
        assert split.restaurant_earning == Decimal("850")
        assert split.rider_earning == Decimal("160")
        assert split.delivery_fee == Decimal("160")
        assert split.gateway_fee == Decimal("0")
        assert split.platform_revenue == Decimal("150")
        assert split.total_price == Decimal("1160")

    def test_prepaid_carries_gateway_fee(self):
        split = compute_settlement_split(1000, 0, 2, PaymentMethod.prepaid, _config())
        assert split.gateway_fee == Decimal("25.00")
        # 100 commission + 100 fee - 100 rider - 25 gateway
        assert split.platform_revenue == Decimal("75.00")

    def test_discount_reduces_restaurant_earning_only(self):
        split = compute_settlement_split(1000, 100, 5, PaymentMethod.cod, _config())
        assert split.commission_amount == Decimal("100")
        assert split.restaurant_earning == Decimal("800")
        assert split.commission_amount + split.restaurant_earning == Decimal("900")
        assert split.total_price == Decimal("1060")

    def test_commission_is_rounded_to_whole_units(self):
        split = compute_settlement_split(333, 0, 0, PaymentMethod.cod, _config(commission_rate=Decimal("15")))
        # 49.95 -> 50
        assert split.commission_amount == Decimal("50")
        assert split.restaurant_earning == Decimal("283")

    def test_restaurant_earning_floors_at_zero(self):
        split = compute_settlement_split(100, 95, 0, PaymentMethod.cod, _config(commission_rate=Decimal("10")))
        assert split.restaurant_earning == Decimal("0")

    def test_long_trip_capped(self):
        split = compute_settlement_split(500, 0, 20, PaymentMethod.cod, _config())
        assert split.rider_earning == Decimal("200")
        assert split.delivery_fee == Decimal("200")

    def test_negative_subtotal_rejected(self):
        with pytest.raises(ValueError):
            compute_settlement_split(-1, 0, 1, PaymentMethod.cod, _config())


class TestSettle:

    def test_cod_order_posts_every_ledger(self, db, make_rider, set_commission, deliver_order):
        rider = make_rider()
        set_commission(1, 15)

        order_id, result = deliver_order(rider.rider_id, restaurant_id=1, subtotal=1000, distance_km=5.0)

        assert result.settled
        order = db.get(Order, order_id)
        assert order.settlement_status == SettlementState.settled
        assert order.commission_amount == Decimal("150")
        assert order.restaurant_earning == Decimal("850")
        assert order.rider_earning == Decimal("160")
        assert order.delivery_fee == Decimal("160")
        assert order.total_price == Decimal("1160")
        assert order.held_amount == 0

        entry = db.query(CODLedgerEntry).filter(CODLedgerEntry.order_id == order_id).one()
        assert entry.cod_collected == Decimal("1160")
        assert entry.rider_earning == Decimal("160")
        assert entry.admin_balance == Decimal("1000")
        assert entry.status == CODEntryStatus.pending

        rider_wallet = db.query(RiderWallet).filter(RiderWallet.rider_id == rider.rider_id).one()
        assert rider_wallet.delivery_earnings == Decimal("160")
        assert rider_wallet.total_earnings == Decimal("160")
        assert rider_wallet.cash_collected == Decimal("1160")
        # Cash already in hand: nothing withdrawable
        assert rider_wallet.available_withdraw == 0

        restaurant_wallet = db.query(RestaurantWallet).filter(RestaurantWallet.restaurant_id == 1).one()
        assert restaurant_wallet.total_earnings == Decimal("850")
        assert restaurant_wallet.available_balance == Decimal("850")
        assert restaurant_wallet.total_commission_collected == Decimal("150")
        assert restaurant_wallet.on_hold_amount == 0

        db.refresh(rider)
        assert rider.cod_balance == Decimal("1000")

        types = sorted(
            (t.entity_type.value, t.transaction_type.value)
            for t in db.query(Transaction).filter(Transaction.order_id == order_id).all()
        )
        assert types == [
            ("platform", "commission"),
            ("restaurant", "earning"),
            ("rider", "cash_collected"),
            ("rider", "earning"),
        ]

    def test_prepaid_earning_is_withdrawable(self, db, make_rider, deliver_order):
        rider = make_rider()
        _, result = deliver_order(rider.rider_id, payment_method=PaymentMethod.prepaid, distance_km=2.0)

        assert result.split.gateway_fee == Decimal("25.00")
        wallet = db.query(RiderWallet).filter(RiderWallet.rider_id == rider.rider_id).one()
        assert wallet.available_withdraw == Decimal("100")
        assert wallet.cash_collected == 0
        assert db.query(CODLedgerEntry).count() == 0

    def test_settle_twice_is_a_noop(self, db, make_rider, deliver_order):
        rider = make_rider()
        order_id, _ = deliver_order(rider.rider_id)
        txn_count = db.query(Transaction).count()

        again = SettlementService(db).settle(order_id)

        assert again.already_settled
        assert not again.settled
        assert db.query(Transaction).count() == txn_count
        assert db.query(CODLedgerEntry).count() == 1
        wallet = db.query(RiderWallet).filter(RiderWallet.rider_id == rider.rider_id).one()
        db.refresh(wallet)
        assert wallet.total_earnings == Decimal("160")

    def test_marker_not_fields_decides_idempotence(self, db, make_rider, deliver_order):
        rider = make_rider()
        order_id, _ = deliver_order(rider.rider_id)
        # Fields mutated after settlement do not make the order settle again
        db.execute(update(Order).where(Order.order_id == order_id).values(rider_earning=0, restaurant_earning=0))
        db.commit()

        assert SettlementService(db).settle(order_id).already_settled

    def test_platform_balance_accumulates(self, db, make_rider, deliver_order):
        rider = make_rider()
        deliver_order(rider.rider_id, subtotal=1000)
        deliver_order(rider.rider_id, subtotal=500)

        platform = (
            db.query(Transaction)
            .filter(Transaction.entity_type == EntityType.platform, Transaction.entity_id == PLATFORM_ENTITY_ID)
            .order_by(Transaction.transaction_id)
            .all()
        )
        assert [t.amount for t in platform] == [Decimal("100"), Decimal("50")]
        assert platform[-1].balance_after == Decimal("150")

    def test_undelivered_order_rejected(self, db, make_rider, ready_order):
        rider = make_rider()
        order_id = ready_order(rider.rider_id)

        with pytest.raises(InvalidStateError):
            SettlementService(db).settle(order_id)
        assert db.query(Transaction).filter(Transaction.transaction_type == TransactionType.earning).count() == 0

    def test_missing_order(self, db):
        with pytest.raises(OrderNotFoundError):
            SettlementService(db).settle(12345)

    def test_failure_rolls_back_whole_unit(self, db, make_rider, ready_order, monkeypatch):
        from services.order_service import OrderService
        from services.wallet_service import WalletLedger

        rider = make_rider()
        order_id = ready_order(rider.rider_id)

        def boom(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(WalletLedger, "post_rider_earning", boom)
        outcome = OrderService(db).transition(order_id, OrderStatus.delivered)

        assert outcome["settlement"] is None
        order = db.get(Order, order_id)
        assert order.status == OrderStatus.delivered
        assert order.settlement_status == SettlementState.unsettled
        assert db.query(Transaction).filter(Transaction.order_id == order_id).count() == 0
        restaurant_wallet = db.query(RestaurantWallet).filter(RestaurantWallet.restaurant_id == 1).one()
        assert restaurant_wallet.total_earnings == 0

        monkeypatch.undo()
        summary = SettlementService(db).settle_pending()

        assert summary["settled"] == [order_id]
        db.refresh(order)
        assert order.settlement_status == SettlementState.settled


class TestNotifications:

    def test_settled_order_notifies_restaurant_and_rider(self, db, make_rider, deliver_order):
        rider = make_rider()
        order_id, _ = deliver_order(rider.rider_id)

        rows = db.query(Notification).filter(Notification.reference_id == order_id).all()
        assert sorted(n.recipient_type for n in rows) == ["restaurant", "rider"]

    def test_notification_failure_keeps_settlement(self, db, make_rider, deliver_order, monkeypatch):
        def unavailable(*args, **kwargs):
            raise RuntimeError("notification store unavailable")

        monkeypatch.setattr(notification_helper, "create_notification", unavailable)
        monkeypatch.setattr(notification_helper, "_build_notification", unavailable)
        rider = make_rider()

        order_id, result = deliver_order(rider.rider_id, subtotal=1000, distance_km=5.0)

        assert result.settled
        db.expire_all()
        assert db.get(Order, order_id).settlement_status == SettlementState.settled
        rider_wallet = db.query(RiderWallet).filter(RiderWallet.rider_id == rider.rider_id).one()
        assert rider_wallet.delivery_earnings == Decimal("160")
        assert rider_wallet.cash_collected == Decimal("1160")
        restaurant_wallet = db.query(RestaurantWallet).filter(RestaurantWallet.restaurant_id == 1).one()
        assert restaurant_wallet.available_balance == Decimal("900")
        assert db.query(CODLedgerEntry).filter(CODLedgerEntry.order_id == order_id).count() == 1
        assert db.query(Notification).count() == 0

    def test_order_notifications_commit_together(self, db, make_rider, deliver_order, monkeypatch):
        build = notification_helper._build_notification

        def fail_for_rider(recipient_type, *args, **kwargs):
            if recipient_type == "rider":
                raise RuntimeError("rider inbox unavailable")
            return build(recipient_type, *args, **kwargs)

        monkeypatch.setattr(notification_helper, "_build_notification", fail_for_rider)
        rider = make_rider()

        _, result = deliver_order(rider.rider_id)

        assert result.settled
        assert db.query(Notification).filter(Notification.recipient_type == "restaurant").count() == 0
