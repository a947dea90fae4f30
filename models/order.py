from sqlalchemy import Column, Integer, String, Text, ForeignKey, DateTime, Enum, DECIMAL, Float
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class OrderStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    preparing = "preparing"
    ready = "ready"
    on_the_way = "on_the_way"
    delivered = "delivered"
    cancelled = "cancelled"
    # Legacy terminal state found on old records; never produced by the state machine
    completed = "completed"


class PaymentMethod(str, enum.Enum):
    cod = "cod"
    prepaid = "prepaid"


class SettlementState(str, enum.Enum):
    unsettled = "unsettled"
    settled = "settled"
    cancelled = "cancelled"


# Statuses whose orders count towards earnings
EARNING_STATUSES = (OrderStatus.delivered, OrderStatus.completed)


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    customer_id = Column(Integer, nullable=False, index=True)
    restaurant_id = Column(Integer, nullable=False, index=True)
    rider_id = Column(Integer, ForeignKey("riders.rider_id", ondelete="SET NULL"), nullable=True, index=True)

    # Amounts
    subtotal = Column(DECIMAL(12, 2), nullable=False)
    discount = Column(DECIMAL(12, 2), default=0, nullable=False)
    delivery_fee = Column(DECIMAL(12, 2), default=0, nullable=False)
    total_price = Column(DECIMAL(12, 2), default=0, nullable=False)

    # Split, written at settlement
    commission_rate = Column(DECIMAL(5, 2), nullable=True)
    commission_amount = Column(DECIMAL(12, 2), default=0, nullable=False)
    restaurant_earning = Column(DECIMAL(12, 2), default=0, nullable=False)
    rider_earning = Column(DECIMAL(12, 2), default=0, nullable=False)
    platform_revenue = Column(DECIMAL(12, 2), default=0, nullable=False)
    gateway_fee = Column(DECIMAL(12, 2), default=0, nullable=False)

    # Running total refunded to the customer, never above total_price
    refunded_amount = Column(DECIMAL(12, 2), default=0, nullable=False)

    # Trip distance recorded at rider assignment
    distance_km = Column(Float, default=0, nullable=False)
    # Projected restaurant earning reserved at acceptance
    held_amount = Column(DECIMAL(12, 2), default=0, nullable=False)

    status = Column(Enum(OrderStatus), default=OrderStatus.pending, nullable=False, index=True)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    settlement_status = Column(Enum(SettlementState), default=SettlementState.unsettled, nullable=False, index=True)
    cancellation_reason = Column(Text, nullable=True)

    # Timestamps
    accepted_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), index=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    rider = relationship("Rider", back_populates="orders")
    cod_entry = relationship("CODLedgerEntry", back_populates="order", uselist=False)
