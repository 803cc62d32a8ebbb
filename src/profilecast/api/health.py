"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running and
reports the store and notification bus state. "degraded" means the bus
has no upstream cursor right now (it is backing off before a reconnect);
CRUD keeps working meanwhile.
"""

from fastapi import APIRouter, Request

from profilecast import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and notification bus state."""
    store = request.app.state.store
    bus = request.app.state.bus

    checks = {
        "server": "ok",
        "version": __version__,
        "store": store.name,
        "bus": bus.get_stats(),
    }
    status = "healthy" if bus.is_running and bus.is_connected else "degraded"
    return {"status": status, **checks}
