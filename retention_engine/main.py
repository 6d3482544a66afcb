"""FastAPI application entry point."""
from fastapi import FastAPI
from sqlalchemy import text

from retention_engine.core.config import settings
from retention_engine.core.structured_logging import configure_logging
from retention_engine.db.session import engine
from retention_engine.routers import retention

configure_logging(settings.LOG_LEVEL)

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Retention Engine API",
    description="Retention policies, legal holds and auditable deletion requests",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# ============================================================================
# Routers
# ============================================================================

# Retention (policies, legal holds, deletion requests, reports)
app.include_router(retention.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
