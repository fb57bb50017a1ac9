# Consolidated route imports
from .admin import router as admin_router
from .health import router as health_router
from .orders import router as orders_router
from .wallet import router as wallet_router
