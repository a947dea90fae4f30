"""
Shared fixtures: an in-memory SQLite database rebuilt for every test.

DB_URL must be set before anything imports config/database.
"""
import os

os.environ["DB_URL"] = "sqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["RECONCILE_WORKER_ENABLED"] = "false"

import pytest
from sqlalchemy import update

import models  # noqa: F401
from database import Base, SessionLocal, engine, get_db
from models.order import Order, OrderStatus, PaymentMethod
from models.rider import Rider
from services.order_service import OrderService
from services.wallet_service import WalletLedger


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient
    from app import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_rider(db):
    def _make(full_name="Juan Dela Cruz", **kwargs):
        rider = Rider(full_name=full_name, **kwargs)
        db.add(rider)
        db.commit()
        db.refresh(rider)
        return rider
    return _make


@pytest.fixture
def set_commission(db):
    def _set(restaurant_id, rate):
        wallet = WalletLedger(db).get_or_create_restaurant_wallet(restaurant_id)
        wallet.commission_rate = rate
        db.commit()
    return _set


@pytest.fixture
def ready_order(db):
    """Create an order with an assigned rider at a fixed distance, walked up to on_the_way."""
    def _make(rider_id, restaurant_id=1, subtotal=1000, discount=0,
              payment_method=PaymentMethod.cod, distance_km=5.0):
        service = OrderService(db)
        order = service.create_order(
            customer_id=99,
            restaurant_id=restaurant_id,
            subtotal=subtotal,
            discount=discount,
            payment_method=payment_method,
        )
        order_id = order.order_id
        service.assign_rider(order_id, rider_id)
        db.execute(update(Order).where(Order.order_id == order_id).values(distance_km=distance_km))
        db.commit()
        for step in (OrderStatus.accepted, OrderStatus.preparing, OrderStatus.ready, OrderStatus.on_the_way):
            service.transition(order_id, step)
        return order_id
    return _make


@pytest.fixture
def deliver_order(db, ready_order):
    """Create and deliver an order; returns (order_id, settlement result)."""
    def _deliver(rider_id, **kwargs):
        order_id = ready_order(rider_id, **kwargs)
        outcome = OrderService(db).transition(order_id, OrderStatus.delivered)
        return order_id, outcome["settlement"]
    return _deliver
