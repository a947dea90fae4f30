from sqlalchemy import Column, Integer, ForeignKey, DateTime, Date, Boolean, DECIMAL, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


class RiderBonusRecord(Base):
    """Daily delivery counter per rider; one row per rider per calendar day."""

    __tablename__ = "rider_bonuses"

    record_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("riders.rider_id", ondelete="CASCADE"), nullable=False, index=True)
    bonus_date = Column(Date, nullable=False)

    daily_delivery_count = Column(Integer, default=0, nullable=False)
    target_deliveries = Column(Integer, nullable=False)
    bonus_amount = Column(DECIMAL(12, 2), nullable=False)
    is_bonus_achieved = Column(Boolean, default=False, nullable=False)
    bonus_credited_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    rider = relationship("Rider", back_populates="bonus_records")

    __table_args__ = (
        UniqueConstraint("rider_id", "bonus_date", name="uq_rider_bonus_day"),
    )
