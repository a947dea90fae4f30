# utils/serializers.py
# Plain-dict renderings of ledger records for API payloads (money as float)

from datetime import date, datetime
from typing import Any, Optional

from utils.money import as_float


def enum_val(value: Any) -> Any:
    """Return the .value of an Enum, or the value itself."""
    return value.value if hasattr(value, "value") else value


def iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if isinstance(value, (date, datetime)) else None


def serialize_order(order) -> dict:
    return {
        "order_id": order.order_id,
        "customer_id": order.customer_id,
        "restaurant_id": order.restaurant_id,
        "rider_id": order.rider_id,
        "status": enum_val(order.status),
        "payment_method": enum_val(order.payment_method),
        "settlement_status": enum_val(order.settlement_status),
        "distance_km": order.distance_km,
        "pricing": {
            "subtotal": as_float(order.subtotal),
            "discount": as_float(order.discount),
            "delivery_fee": as_float(order.delivery_fee),
            "total_price": as_float(order.total_price),
            "refunded_amount": as_float(order.refunded_amount),
        },
        "split": {
            "commission_rate": as_float(order.commission_rate) if order.commission_rate is not None else None,
            "commission_amount": as_float(order.commission_amount),
            "restaurant_earning": as_float(order.restaurant_earning),
            "rider_earning": as_float(order.rider_earning),
            "platform_revenue": as_float(order.platform_revenue),
            "gateway_fee": as_float(order.gateway_fee),
        },
        "accepted_at": iso(order.accepted_at),
        "picked_up_at": iso(order.picked_up_at),
        "delivered_at": iso(order.delivered_at),
        "cancelled_at": iso(order.cancelled_at),
        "settled_at": iso(order.settled_at),
    }


def serialize_rider_wallet(wallet) -> dict:
    return {
        "rider_id": wallet.rider_id,
        "cash_collected": as_float(wallet.cash_collected),
        "delivery_earnings": as_float(wallet.delivery_earnings),
        "penalties": as_float(wallet.penalties),
        "bonuses": as_float(wallet.bonuses),
        "available_withdraw": as_float(wallet.available_withdraw),
        "total_earnings": as_float(wallet.total_earnings),
        "last_withdraw_date": iso(wallet.last_withdraw_date),
    }


def serialize_restaurant_wallet(wallet) -> dict:
    return {
        "restaurant_id": wallet.restaurant_id,
        "available_balance": as_float(wallet.available_balance),
        "pending_payout": as_float(wallet.pending_payout),
        "on_hold_amount": as_float(wallet.on_hold_amount),
        "total_commission_collected": as_float(wallet.total_commission_collected),
        "total_earnings": as_float(wallet.total_earnings),
        "commission_rate": as_float(wallet.commission_rate) if wallet.commission_rate is not None else None,
        "last_payout_date": iso(wallet.last_payout_date),
    }


def serialize_platform_wallet(wallet) -> dict:
    return {
        "platform_id": wallet.platform_id,
        "balance": as_float(wallet.balance),
        "total_platform_revenue": as_float(wallet.total_platform_revenue),
        "updated_at": iso(wallet.updated_at),
    }


def serialize_transaction(txn) -> dict:
    return {
        "transaction_id": txn.transaction_id,
        "entity_type": enum_val(txn.entity_type),
        "entity_id": txn.entity_id,
        "order_id": txn.order_id,
        "type": enum_val(txn.transaction_type),
        "amount": as_float(txn.amount),
        "balance_after": as_float(txn.balance_after),
        "description": txn.description,
        "reference": txn.reference,
        "metadata": txn.details or {},
        "created_at": iso(txn.created_at),
    }


def serialize_cod_entry(entry) -> dict:
    return {
        "entry_id": entry.entry_id,
        "rider_id": entry.rider_id,
        "order_id": entry.order_id,
        "cod_collected": as_float(entry.cod_collected),
        "rider_earning": as_float(entry.rider_earning),
        "admin_balance": as_float(entry.admin_balance),
        "status": enum_val(entry.status),
        "settlement_date": iso(entry.settlement_date),
        "paid_at": iso(entry.paid_at),
    }


def serialize_bonus_record(record) -> dict:
    return {
        "date": iso(record.bonus_date),
        "daily_delivery_count": record.daily_delivery_count,
        "target_deliveries": record.target_deliveries,
        "bonus_amount": as_float(record.bonus_amount),
        "is_bonus_achieved": record.is_bonus_achieved,
        "bonus_credited_at": iso(record.bonus_credited_at),
    }


def pagination(page: int, page_size: int, total: int) -> dict:
    return {
        "page": page,
        "page_size": page_size,
        "total": total,
        "total_pages": (total + page_size - 1) // page_size,
    }
