"""
Daily delivery bonus
"""
from datetime import datetime, timedelta
from decimal import Decimal

from models.rider_bonus import RiderBonusRecord
from models.transaction import Transaction, TransactionType
from models.wallet import RiderWallet
from services.bonus_service import BonusService
from services.settlement_config import SettlementConfig
from services.settlement_service import SettlementService
from services.wallet_service import WalletLedger


def _service(db, target=3, amount=200):
    config = SettlementConfig.from_settings().model_copy(
        update={"bonus_target_deliveries": target, "bonus_amount": Decimal(amount)}
    )
    return BonusService(db, config)


def _deliveries(db, service, rider_id, day, count):
    unlocked = []
    for _ in range(count):
        unlocked.append(service.track_delivery(rider_id, day))
        db.commit()
    return unlocked


class TestBonusAccrual:

    def test_record_created_with_configured_target(self, db, make_rider):
        rider = make_rider()
        day = datetime.utcnow().date()

        record = _service(db, target=3, amount=150).ensure_record(rider.rider_id, day)

        assert record.daily_delivery_count == 0
        assert record.target_deliveries == 3
        assert record.bonus_amount == Decimal("150")
        assert record.is_bonus_achieved is False

    def test_ensure_record_is_idempotent(self, db, make_rider):
        rider = make_rider()
        day = datetime.utcnow().date()
        service = _service(db)

        first = service.ensure_record(rider.rider_id, day)
        second = service.ensure_record(rider.rider_id, day)

        assert first.record_id == second.record_id
        assert db.query(RiderBonusRecord).count() == 1

    def test_bonus_credited_once_at_target(self, db, make_rider):
        rider = make_rider()
        day = datetime.utcnow().date()
        service = _service(db, target=3)
        WalletLedger(db).get_or_create_rider_wallet(rider.rider_id)
        service.ensure_record(rider.rider_id, day)

        unlocked = _deliveries(db, service, rider.rider_id, day, 5)

        assert unlocked == [False, False, True, False, False]
        record = db.query(RiderBonusRecord).one()
        assert record.daily_delivery_count == 5
        assert record.is_bonus_achieved
        assert record.bonus_credited_at is not None

        wallet = db.query(RiderWallet).filter(RiderWallet.rider_id == rider.rider_id).one()
        db.refresh(wallet)
        assert wallet.bonuses == Decimal("200")
        assert wallet.total_earnings == Decimal("200")
        assert wallet.available_withdraw == Decimal("200")
        assert db.query(Transaction).filter(Transaction.transaction_type == TransactionType.bonus).count() == 1

    def test_days_are_counted_separately(self, db, make_rider):
        rider = make_rider()
        today = datetime.utcnow().date()
        yesterday = today - timedelta(days=1)
        service = _service(db, target=2)
        WalletLedger(db).get_or_create_rider_wallet(rider.rider_id)
        service.ensure_record(rider.rider_id, today)
        service.ensure_record(rider.rider_id, yesterday)

        # Yesterday's late event processed after today's
        assert _deliveries(db, service, rider.rider_id, today, 1) == [False]
        assert _deliveries(db, service, rider.rider_id, yesterday, 2) == [False, True]
        assert _deliveries(db, service, rider.rider_id, today, 1) == [True]

        assert db.query(Transaction).filter(Transaction.transaction_type == TransactionType.bonus).count() == 2

    def test_duplicate_settlement_does_not_count_twice(self, db, make_rider, deliver_order):
        rider = make_rider()
        order_id, _ = deliver_order(rider.rider_id)

        SettlementService(db).settle(order_id)
        SettlementService(db).settle(order_id)

        record = db.query(RiderBonusRecord).filter(RiderBonusRecord.rider_id == rider.rider_id).one()
        db.refresh(record)
        assert record.daily_delivery_count == 1

    def test_status_reports_progress(self, db, make_rider, deliver_order):
        rider = make_rider()
        deliver_order(rider.rider_id)
        deliver_order(rider.rider_id)

        status = BonusService(db).get_status(rider.rider_id)

        assert status["daily_delivery_count"] == 2
        assert status["target_deliveries"] == 10
        assert status["remaining"] == 8
        assert status["is_bonus_achieved"] is False
        assert status["history"] == []
