"""
services/cod_ledger_service.py  –  Cash-on-delivery ledger

For every delivered COD order the rider holds the customer's cash. The
entry records how much of it the rider keeps (their earning) and how much
is owed back to the platform (`admin_balance`, negative when the platform
owes the rider). The sum of pending `admin_balance` is the rider's cash
debt and drives their settlement status:

    active   -> debt within limits
    overdue  -> debt above COD_OVERDUE_THRESHOLD, oldest entry unpaid for
                COD_OVERDUE_DAYS or more
    blocked  -> debt above COD_BLOCK_THRESHOLD (no new assignments)

`mark_paid` is the only path that moves an entry from pending to paid.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Tuple
import logging

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from models.cod_ledger import CODLedgerEntry, CODEntryStatus
from models.rider import Rider, SettlementStatus
from models.transaction import EntityType, TransactionType
from services.errors import ConcurrentUpdateError, RiderNotFoundError
from services.settlement_config import SettlementConfig
from services.wallet_service import WalletLedger
from utils.cache import wallet_cache
from utils.money import ZERO, round_cents, to_decimal
from utils.notification_helper import safe_notify, notify_settlement_status_changed

logger = logging.getLogger(__name__)


class CODLedgerService:
    def __init__(self, db: Session, config: Optional[SettlementConfig] = None):
        self.db = db
        self.config = config or SettlementConfig.from_settings()
        self.ledger = WalletLedger(db)

    def _get_rider(self, rider_id: int) -> Rider:
        rider = self.db.query(Rider).filter(Rider.rider_id == rider_id).first()
        if not rider:
            raise RiderNotFoundError(rider_id)
        return rider

    def _pending_totals(self, rider_id: int, upto: Optional[date] = None):
        q = self.db.query(
            func.count(CODLedgerEntry.entry_id),
            func.coalesce(func.sum(CODLedgerEntry.cod_collected), 0),
            func.coalesce(func.sum(CODLedgerEntry.rider_earning), 0),
            func.coalesce(func.sum(CODLedgerEntry.admin_balance), 0),
            func.min(CODLedgerEntry.settlement_date),
        ).filter(
            CODLedgerEntry.rider_id == rider_id,
            CODLedgerEntry.status == CODEntryStatus.pending,
        )
        if upto is not None:
            q = q.filter(CODLedgerEntry.settlement_date <= upto)
        count, cod, earning, admin, oldest = q.one()
        return count, round_cents(cod), round_cents(earning), round_cents(admin), oldest

    # ── Posting (runs inside the settlement unit) ──────────────

    def record_cod(self, rider_id: int, order_id: int, cod_collected, rider_earning, settlement_date: date) -> CODLedgerEntry:
        """
        Record the cash a rider collected for one COD order. Does not commit.

        admin_balance is kept as-is when negative; it nets out at settle-up.
        """
        cod_collected = to_decimal(cod_collected)
        rider_earning = to_decimal(rider_earning)
        admin_balance = cod_collected - rider_earning

        entry = CODLedgerEntry(
            rider_id=rider_id,
            order_id=order_id,
            cod_collected=cod_collected,
            rider_earning=rider_earning,
            admin_balance=admin_balance,
            status=CODEntryStatus.pending,
            settlement_date=settlement_date,
        )
        self.db.add(entry)
        self.db.flush()

        self.ledger.post_rider_cash_collected(rider_id, order_id, cod_collected)
        self.db.execute(
            update(Rider)
            .where(Rider.rider_id == rider_id)
            .values(cod_balance=Rider.cod_balance + admin_balance)
        )
        logger.info(
            f"💵 COD entry for order #{order_id}: rider {rider_id} collected {cod_collected}, "
            f"keeps {rider_earning}, owes {admin_balance}"
        )
        return entry

    # ── Settlement status ──────────────────────────────────────

    def _status_for(self, outstanding: Decimal, oldest: Optional[date], today: date) -> SettlementStatus:
        if outstanding > self.config.cod_block_threshold:
            return SettlementStatus.blocked
        if (
            outstanding > self.config.cod_overdue_threshold
            and oldest is not None
            and (today - oldest).days >= self.config.cod_overdue_days
        ):
            return SettlementStatus.overdue
        return SettlementStatus.active

    def evaluate_settlement_status(self, rider_id: int, today: Optional[date] = None) -> Tuple[SettlementStatus, SettlementStatus]:
        """Recompute the rider's status from pending entries. Does not commit. Returns (old, new)."""
        rider = self._get_rider(rider_id)
        _, _, _, outstanding, oldest = self._pending_totals(rider_id)
        old = rider.settlement_status
        new = self._status_for(outstanding, oldest, today or datetime.utcnow().date())
        if new != old:
            rider.settlement_status = new
            self.db.flush()
            logger.info(f"Rider {rider_id} settlement status {old.value} -> {new.value} (outstanding {outstanding})")
        return old, new

    def refresh_all_statuses(self, today: Optional[date] = None) -> list:
        """Sweep every rider; one short transaction per rider."""
        changes = []
        rider_ids = [rid for (rid,) in self.db.query(Rider.rider_id).order_by(Rider.rider_id).all()]
        for rider_id in rider_ids:
            try:
                old, new = self.evaluate_settlement_status(rider_id, today)
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.exception(f"Failed to refresh settlement status for rider {rider_id}")
                continue
            if old != new:
                outstanding = self._pending_totals(rider_id)[3]
                changes.append({"rider_id": rider_id, "from": old.value, "to": new.value})
                safe_notify(self.db, notify_settlement_status_changed, rider_id, old.value, new.value, outstanding)
        logger.info(f"Settlement status sweep: {len(rider_ids)} riders checked, {len(changes)} changed")
        return changes

    # ── Queries ────────────────────────────────────────────────

    def get_outstanding(self, rider_id: int) -> dict:
        rider = self._get_rider(rider_id)
        count, cod, earning, admin, oldest = self._pending_totals(rider_id)
        return {
            "rider_id": rider_id,
            "outstanding": admin,
            "pending_entries": count,
            "cod_collected": cod,
            "rider_earning": earning,
            "oldest_pending_date": oldest,
            "cod_balance": to_decimal(rider.cod_balance),
            "settlement_status": rider.settlement_status,
            "last_settlement_date": rider.last_settlement_date,
        }

    def list_entries(self, rider_id: int, status: Optional[CODEntryStatus] = None, page: int = 1, page_size: int = 50):
        self._get_rider(rider_id)
        q = self.db.query(CODLedgerEntry).filter(CODLedgerEntry.rider_id == rider_id)
        if status is not None:
            q = q.filter(CODLedgerEntry.status == CODEntryStatus(status))
        total = q.count()
        rows = (
            q.order_by(CODLedgerEntry.settlement_date.desc(), CODLedgerEntry.entry_id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return rows, total

    # ── Settle-up ──────────────────────────────────────────────

    def mark_paid(self, rider_id: int, upto: Optional[date] = None, reference: str = "") -> dict:
        """
        Mark every pending entry dated on or before `upto` as paid.

        Posts one cash_deposit transaction for the netted admin_balance. When
        the net is negative the platform owes the rider and the shortfall is
        credited to availableWithdraw.
        """
        upto = upto or datetime.utcnow().date()
        self._get_rider(rider_id)
        self.ledger.get_or_create_rider_wallet(rider_id)

        now = datetime.utcnow()
        try:
            entries = (
                self.db.query(CODLedgerEntry)
                .filter(
                    CODLedgerEntry.rider_id == rider_id,
                    CODLedgerEntry.status == CODEntryStatus.pending,
                    CODLedgerEntry.settlement_date <= upto,
                )
                .with_for_update()
                .all()
            )
            if not entries:
                self.db.rollback()
                return {
                    "rider_id": rider_id,
                    "entries_paid": 0,
                    "cod_cleared": ZERO,
                    "amount_deposited": ZERO,
                    "credited_to_rider": ZERO,
                    "transaction_id": None,
                    "settlement_status": self._get_rider(rider_id).settlement_status,
                }

            ids = [e.entry_id for e in entries]
            cod_total = round_cents(sum((to_decimal(e.cod_collected) for e in entries), ZERO))
            admin_total = round_cents(sum((to_decimal(e.admin_balance) for e in entries), ZERO))

            result = self.db.execute(
                update(CODLedgerEntry)
                .where(CODLedgerEntry.entry_id.in_(ids), CODLedgerEntry.status == CODEntryStatus.pending)
                .values(status=CODEntryStatus.paid, paid_at=now, transaction_ref=reference or None)
            )
            if result.rowcount != len(ids):
                raise ConcurrentUpdateError(f"COD entries for rider {rider_id} changed during settle-up")

            self.db.execute(
                update(Rider)
                .where(Rider.rider_id == rider_id)
                .values(cod_balance=Rider.cod_balance - admin_total, last_settlement_date=now)
            )
            credit = -admin_total if admin_total < 0 else ZERO
            self.ledger.increment_rider(rider_id, cash_collected=-cod_total, available_withdraw=credit)
            txn = self.ledger.record_transaction(
                EntityType.rider, rider_id, TransactionType.cash_deposit,
                admin_total, self.ledger.rider_balance(rider_id),
                description=f"COD settle-up for {len(ids)} deliveries up to {upto.isoformat()}",
                reference=reference,
                details={"entry_ids": ids, "cod_cleared": str(cod_total)},
            )
            old, new = self.evaluate_settlement_status(rider_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        wallet_cache.invalidate(EntityType.rider.value, rider_id)
        logger.info(f"✅ Rider {rider_id} settled {len(ids)} COD entries: deposited {admin_total}, cleared cash {cod_total}")
        if old != new:
            outstanding = self._pending_totals(rider_id)[3]
            safe_notify(self.db, notify_settlement_status_changed, rider_id, old.value, new.value, outstanding)

        return {
            "rider_id": rider_id,
            "entries_paid": len(ids),
            "cod_cleared": cod_total,
            "amount_deposited": admin_total,
            "credited_to_rider": credit,
            "transaction_id": txn.transaction_id,
            "settlement_status": new,
        }
