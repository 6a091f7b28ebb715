"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and
reports on its dependencies. A disconnected bus makes the service
"degraded", not down: notifications pause, the API keeps working.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text

from ripple import __version__
from ripple.api.deps import get_connection
from ripple.bus.publisher import ConnectionManager
from ripple.db.engine import engine

router = APIRouter()


@router.get("/health")
async def health_check(connection: ConnectionManager = Depends(get_connection)):
    """Check server health and dependency connectivity."""
    checks = {"server": "ok", "version": __version__}

    # Check database
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    # Bus connection state (no dial from a health probe)
    checks["bus"] = "ok" if connection.is_connected else connection.state.value

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    return {"status": status, **checks}
