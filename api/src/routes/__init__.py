from api.src.routes.health import router as health_router
from api.src.routes.execution import router as execution_router
from api.src.routes.realtime import router as realtime_router

__all__ = ["health_router", "execution_router", "realtime_router"]
