# utils/notification_helper.py
# Notification rows for settlement events.
# Always called after the money has been committed; a failure here is
# logged and never undoes a settlement.

import logging

from sqlalchemy.orm import Session
from models.notification import Notification, NotificationType
from utils.money import as_float

logger = logging.getLogger(__name__)


def _build_notification(
    recipient_type: str,
    recipient_id: int,
    notification_type: NotificationType,
    title: str,
    message: str,
    reference_id: int = None,
    reference_type: str = None,
) -> Notification:
    return Notification(
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        notification_type=notification_type,
        title=title,
        message=message,
        reference_id=reference_id,
        reference_type=reference_type
    )


def create_notification(
    db: Session,
    recipient_type: str,
    recipient_id: int,
    notification_type: NotificationType,
    title: str,
    message: str,
    reference_id: int = None,
    reference_type: str = None,
):
    """Create a notification for a rider or restaurant"""
    notif = _build_notification(
        recipient_type, recipient_id, notification_type, title, message, reference_id, reference_type
    )
    db.add(notif)
    db.commit()
    return notif


def safe_notify(db: Session, fn, *args, **kwargs):
    """Fire-and-forget wrapper: swallow and log notification failures."""
    try:
        return fn(db, *args, **kwargs)
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to create notification via {fn.__name__}: {e}")
        return None


def notify_order_settled(db: Session, order):
    """Tell the restaurant (and rider, if any) what they earned on an order. Both rows commit together."""
    notifications = [
        _build_notification(
            recipient_type="restaurant",
            recipient_id=order.restaurant_id,
            notification_type=NotificationType.earnings_update,
            title="Order Settled",
            message=f"Order #{order.order_id} settled. You earned {as_float(order.restaurant_earning):.2f}.",
            reference_id=order.order_id,
            reference_type="order",
        )
    ]
    if order.rider_id is not None:
        notifications.append(_build_notification(
            recipient_type="rider",
            recipient_id=order.rider_id,
            notification_type=NotificationType.earnings_update,
            title="Delivery Earnings Added",
            message=f"You earned {as_float(order.rider_earning):.2f} for order #{order.order_id}.",
            reference_id=order.order_id,
            reference_type="order",
        ))
    db.add_all(notifications)
    db.commit()
    return notifications


def notify_bonus_achieved(db: Session, rider_id: int, target: int, amount):
    """Notify rider that the daily target bonus was credited"""
    return create_notification(
        db=db,
        recipient_type="rider",
        recipient_id=rider_id,
        notification_type=NotificationType.bonus,
        title="Bonus Unlocked! 🎉",
        message=f"You completed {target} deliveries today and earned a {as_float(amount):.2f} bonus. It has been added to your wallet.",
        reference_type="bonus",
    )


def notify_settlement_status_changed(db: Session, rider_id: int, old_status: str, new_status: str, outstanding):
    """Notify rider that their COD settle-up status changed"""
    return create_notification(
        db=db,
        recipient_type="rider",
        recipient_id=rider_id,
        notification_type=NotificationType.cod_settlement,
        title="Cash Settlement Status Updated",
        message=f"Your settlement status changed from {old_status} to {new_status}. Outstanding cash: {as_float(outstanding):.2f}.",
        reference_type="cod_ledger",
    )
