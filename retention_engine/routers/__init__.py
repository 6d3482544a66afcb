"""API routers."""

from retention_engine.routers.retention import router as retention_router

__all__ = [
    "retention_router",
]
