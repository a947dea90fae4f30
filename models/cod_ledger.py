"""
models/cod_ledger.py  –  Cash-on-delivery ledger

One entry per delivered COD order: the cash the rider took from the
customer, the rider's own earning, and what is left over for the platform.
"""

from sqlalchemy import (
    Column, Integer, ForeignKey, DateTime, Date, DECIMAL, String,
    Enum as SAEnum, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class CODEntryStatus(str, enum.Enum):
    pending = "pending"    # rider still holds the platform's cash
    paid    = "paid"       # settled up with the platform


class CODLedgerEntry(Base):
    __tablename__ = "cod_ledger"

    entry_id  = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rider_id  = Column(Integer, ForeignKey("riders.rider_id", ondelete="CASCADE"), nullable=False)
    order_id  = Column(Integer, ForeignKey("orders.order_id", ondelete="CASCADE"), nullable=False, unique=True)

    cod_collected = Column(DECIMAL(12, 2), nullable=False, default=0)
    rider_earning = Column(DECIMAL(12, 2), nullable=False, default=0)
    admin_balance = Column(DECIMAL(12, 2), nullable=False, default=0)   # may be negative

    status          = Column(SAEnum(CODEntryStatus), default=CODEntryStatus.pending, nullable=False)
    settlement_date = Column(Date, nullable=False, index=True)
    paid_at         = Column(DateTime, nullable=True)
    transaction_ref = Column(String(100), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    rider = relationship("Rider", back_populates="cod_entries")
    order = relationship("Order", back_populates="cod_entry")

    __table_args__ = (
        Index("ix_cod_ledger_rider_status", "rider_id", "status"),
    )
