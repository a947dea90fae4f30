"""
services/bonus_service.py  –  Daily rider bonus

One counter row per rider per day. The bonus is credited when the
`is_bonus_achieved` flag flips from False to True, which happens in a
single conditional UPDATE, so it pays out at most once per day no matter
how many deliveries race past the target.
"""

from datetime import date, datetime, timedelta
from typing import Optional
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.rider_bonus import RiderBonusRecord
from services.settlement_config import SettlementConfig
from services.wallet_service import WalletLedger
from utils.money import round_cents

logger = logging.getLogger(__name__)


class BonusService:
    def __init__(self, db: Session, config: Optional[SettlementConfig] = None):
        self.db = db
        self.config = config or SettlementConfig.from_settings()
        self.ledger = WalletLedger(db)

    def _find(self, rider_id: int, day: date) -> Optional[RiderBonusRecord]:
        return self.db.query(RiderBonusRecord).filter(
            RiderBonusRecord.rider_id == rider_id,
            RiderBonusRecord.bonus_date == day,
        ).first()

    def ensure_record(self, rider_id: int, day: date) -> RiderBonusRecord:
        """Create the day's record if missing. Commits its own short transaction."""
        record = self._find(rider_id, day)
        if record:
            return record
        try:
            self.db.add(RiderBonusRecord(
                rider_id=rider_id,
                bonus_date=day,
                daily_delivery_count=0,
                target_deliveries=self.config.bonus_target_deliveries,
                bonus_amount=self.config.bonus_amount,
                is_bonus_achieved=False,
            ))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
        return self._find(rider_id, day)

    def track_delivery(self, rider_id: int, day: date, order_id: Optional[int] = None) -> bool:
        """
        Count one delivery. Does not commit.

        Returns True if this delivery unlocked the day's bonus.
        """
        self.db.execute(
            update(RiderBonusRecord)
            .where(RiderBonusRecord.rider_id == rider_id, RiderBonusRecord.bonus_date == day)
            .values(daily_delivery_count=RiderBonusRecord.daily_delivery_count + 1)
        )
        unlocked = self.db.execute(
            update(RiderBonusRecord)
            .where(
                RiderBonusRecord.rider_id == rider_id,
                RiderBonusRecord.bonus_date == day,
                RiderBonusRecord.is_bonus_achieved.is_(False),
                RiderBonusRecord.daily_delivery_count >= RiderBonusRecord.target_deliveries,
            )
            .values(is_bonus_achieved=True, bonus_credited_at=datetime.utcnow())
        )
        if unlocked.rowcount != 1:
            return False

        record = self._find(rider_id, day)
        self.db.refresh(record)
        self.ledger.post_rider_bonus(
            rider_id,
            record.bonus_amount,
            description=f"Daily bonus for {record.target_deliveries} deliveries on {day.isoformat()}",
        )
        logger.info(f"🎉 Rider {rider_id} unlocked the {day} bonus of {record.bonus_amount} (order #{order_id})")
        return True

    def get_status(self, rider_id: int, day: Optional[date] = None, history_days: int = 7) -> dict:
        day = day or datetime.utcnow().date()
        today = self._find(rider_id, day)
        history = (
            self.db.query(RiderBonusRecord)
            .filter(
                RiderBonusRecord.rider_id == rider_id,
                RiderBonusRecord.bonus_date < day,
                RiderBonusRecord.bonus_date >= day - timedelta(days=history_days),
            )
            .order_by(RiderBonusRecord.bonus_date.desc())
            .all()
        )
        count = today.daily_delivery_count if today else 0
        target = today.target_deliveries if today else self.config.bonus_target_deliveries
        return {
            "rider_id": rider_id,
            "date": day,
            "daily_delivery_count": count,
            "target_deliveries": target,
            "remaining": max(target - count, 0),
            "bonus_amount": round_cents(today.bonus_amount if today else self.config.bonus_amount),
            "is_bonus_achieved": bool(today and today.is_bonus_achieved),
            "bonus_credited_at": today.bonus_credited_at if today else None,
            "history": history,
        }
