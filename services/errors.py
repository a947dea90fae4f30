"""
services/errors.py  –  Settlement engine error taxonomy
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for every error raised by the settlement engine."""


class OrderNotFoundError(SettlementError, LookupError):
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class InvalidStateError(SettlementError):
    """Operation attempted on an order in the wrong status. Not retried."""

    def __init__(self, message: str, order_id: Optional[int] = None, status: Optional[str] = None):
        self.order_id = order_id
        self.status = status
        super().__init__(message)


class AlreadySettledError(SettlementError):
    """Order already carries its settlement marker. Benign: callers treat it as success."""

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is already settled")


class NegativeBalanceError(SettlementError):
    """A debit would take a wallet below zero."""

    def __init__(self, entity_type: str, entity_id: int, requested, available):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance for {entity_type} {entity_id}: "
            f"requested {requested}, available {available}"
        )


class RiderBlockedError(SettlementError):
    """Rider is blocked for unpaid COD cash and cannot take new orders."""

    def __init__(self, rider_id: int):
        self.rider_id = rider_id
        super().__init__(f"Rider {rider_id} is blocked pending COD settlement")


class ReconciliationDriftDetected(SettlementError):
    """
    Informational: cached wallet totals disagreed with the ledger.

    Never raised to callers. Reconciliation builds one, logs it and
    corrects the drift.
    """

    def __init__(self, entity_type: str, entity_id: int, deltas: dict):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.deltas = deltas
        rendered = ", ".join(f"{k}={v:+}" for k, v in sorted(deltas.items()))
        super().__init__(f"Drift on {entity_type} {entity_id}: {rendered}")


class RiderNotFoundError(SettlementError, LookupError):
    def __init__(self, rider_id: int):
        self.rider_id = rider_id
        super().__init__(f"Rider {rider_id} not found")


class ConcurrentUpdateError(SettlementError):
    """A guarded update matched fewer rows than expected. Safe to retry."""
