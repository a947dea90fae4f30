from .orders import router as orders_router
from .wallets import router as wallets_router
from .riders import router as riders_router
from .admin import router as admin_router

__all__ = [
    "orders_router",
    "wallets_router",
    "riders_router",
    "admin_router",
]
