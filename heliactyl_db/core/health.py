"""Health check utilities for database monitoring."""
import time
from typing import Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from heliactyl_db.core.database import KeyValueDatabase


async def check_database(database: "KeyValueDatabase") -> bool:
    """Check backend connectivity through the operation queue."""
    try:
        await database.ping()
        return True
    except Exception:
        return False


async def get_health_status(database: "KeyValueDatabase") -> Dict[str, Any]:
    """Get a health snapshot for a database handle.

    Returns:
        Dict containing status, probe latency and queue/cache statistics.
    """
    start = time.perf_counter()
    healthy = await check_database(database)
    latency_ms = (time.perf_counter() - start) * 1000

    stats = database.get_stats()
    saturated = stats["queue_length"] >= stats["max_queue_size"]

    if not healthy:
        status = "unhealthy"
    elif saturated:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "checks": {
            "database": healthy,
            "queue_available": not saturated,
        },
        "probe_latency_ms": round(latency_ms, 2),
        "maintenance_running": database.maintenance.running,
        "stats": stats,
    }
