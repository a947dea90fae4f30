from sqlalchemy import Column, Integer, ForeignKey, DateTime, DECIMAL
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
from models.transaction import PLATFORM_ENTITY_ID


class RiderWallet(Base):
    """Cached rider balances, maintained by increments from ledger postings."""

    __tablename__ = "rider_wallets"

    wallet_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("riders.rider_id", ondelete="CASCADE"), unique=True, nullable=False)

    cash_collected = Column(DECIMAL(12, 2), default=0, nullable=False)
    delivery_earnings = Column(DECIMAL(12, 2), default=0, nullable=False)
    penalties = Column(DECIMAL(12, 2), default=0, nullable=False)
    bonuses = Column(DECIMAL(12, 2), default=0, nullable=False)
    available_withdraw = Column(DECIMAL(12, 2), default=0, nullable=False)
    total_earnings = Column(DECIMAL(12, 2), default=0, nullable=False)
    last_withdraw_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    rider = relationship("Rider", back_populates="wallet")


class RestaurantWallet(Base):
    """Cached restaurant balances, maintained by increments from ledger postings."""

    __tablename__ = "restaurant_wallets"

    wallet_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(Integer, unique=True, nullable=False, index=True)

    available_balance = Column(DECIMAL(12, 2), default=0, nullable=False)
    pending_payout = Column(DECIMAL(12, 2), default=0, nullable=False)
    on_hold_amount = Column(DECIMAL(12, 2), default=0, nullable=False)
    total_commission_collected = Column(DECIMAL(12, 2), default=0, nullable=False)
    total_earnings = Column(DECIMAL(12, 2), default=0, nullable=False)
    last_payout_date = Column(DateTime, nullable=True)

    # Per-restaurant override of the global commission rate (percent)
    commission_rate = Column(DECIMAL(5, 2), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class PlatformWallet(Base):
    """
    Platform running totals. A single row keyed by platform_id; its balance
    is the balance_after of every platform commission line.
    """

    __tablename__ = "platform_wallets"

    wallet_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    platform_id = Column(Integer, unique=True, nullable=False, default=PLATFORM_ENTITY_ID)

    balance = Column(DECIMAL(14, 2), default=0, nullable=False)
    total_platform_revenue = Column(DECIMAL(14, 2), default=0, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
