"""
API Routers
"""
from .ttn import router as ttn_router
from .sync import router as sync_router
from .emulator_lock import router as emulator_lock_router
from .metrics import router as metrics_router

__all__ = ["ttn_router", "sync_router", "emulator_lock_router", "metrics_router"]
