from sqlalchemy import Column, Integer, String, DateTime, Enum, DECIMAL
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class RiderStatus(str, enum.Enum):
    available = "available"
    busy = "busy"
    offline = "offline"
    suspended = "suspended"


class SettlementStatus(str, enum.Enum):
    active = "active"      # COD debt within limits
    overdue = "overdue"    # debt above threshold and left unpaid too long
    blocked = "blocked"    # debt above the hard limit, no new assignments


class Rider(Base):
    __tablename__ = "riders"

    rider_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    full_name = Column(String(255), nullable=False)
    phone_number = Column(String(20), nullable=True)
    vehicle_type = Column(String(50), nullable=True)
    availability_status = Column(Enum(RiderStatus), default=RiderStatus.offline, index=True)

    # COD settle-up state
    settlement_status = Column(Enum(SettlementStatus), default=SettlementStatus.active, nullable=False, index=True)
    cod_balance = Column(DECIMAL(12, 2), default=0, nullable=False)   # cash owed to the platform
    last_settlement_date = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    wallet = relationship("RiderWallet", back_populates="rider", uselist=False)
    orders = relationship("Order", back_populates="rider")
    cod_entries = relationship("CODLedgerEntry", back_populates="rider")
    bonus_records = relationship("RiderBonusRecord", back_populates="rider")
