from datetime import datetime
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Enum, DECIMAL, JSON, Index
from database import Base
import enum


class EntityType(str, enum.Enum):
    restaurant = "restaurant"
    rider = "rider"
    platform = "platform"
    customer = "customer"


class TransactionType(str, enum.Enum):
    commission = "commission"
    earning = "earning"
    payout = "payout"
    refund = "refund"
    penalty = "penalty"
    bonus = "bonus"
    cash_collected = "cash_collected"
    cash_deposit = "cash_deposit"
    adjustment = "adjustment"


# The platform has no wallet row; its ledger lines use this entity id
PLATFORM_ENTITY_ID = 0


class Transaction(Base):
    """Append-only money ledger. Rows are never updated or deleted."""

    __tablename__ = "transactions"

    transaction_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    entity_type = Column(Enum(EntityType), nullable=False)
    entity_id = Column(Integer, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.order_id", ondelete="SET NULL"), nullable=True, index=True)
    transaction_type = Column(Enum(TransactionType), nullable=False, index=True)
    amount = Column(DECIMAL(12, 2), nullable=False)
    balance_after = Column(DECIMAL(12, 2), nullable=False)
    description = Column(String(500), default="")
    reference = Column(String(100), default="")
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_transactions_entity_time", "entity_type", "entity_id", "created_at"),
    )
