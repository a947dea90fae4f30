from .rider import Rider, RiderStatus, SettlementStatus
from .order import Order, OrderStatus, PaymentMethod, SettlementState, EARNING_STATUSES
from .wallet import RiderWallet, RestaurantWallet, PlatformWallet
from .cod_ledger import CODLedgerEntry, CODEntryStatus
from .rider_bonus import RiderBonusRecord
from .transaction import Transaction, EntityType, TransactionType, PLATFORM_ENTITY_ID
from .notification import Notification, NotificationType

__all__ = [
    "Rider",
    "RiderStatus",
    "SettlementStatus",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "SettlementState",
    "EARNING_STATUSES",
    "RiderWallet",
    "RestaurantWallet",
    "PlatformWallet",
    "CODLedgerEntry",
    "CODEntryStatus",
    "RiderBonusRecord",
    "Transaction",
    "EntityType",
    "TransactionType",
    "PLATFORM_ENTITY_ID",
    "Notification",
    "NotificationType",
]
