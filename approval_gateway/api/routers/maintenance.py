from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from ..deps import ServiceContainer, get_services, require_admin
from ...models.actor import Actor

router = APIRouter(tags=["maintenance"])


@router.post("/maintenance/expire")
def expire_now(
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """Run one expiry sweep immediately (same work the background sweeper does)"""
    try:
        counts = services.sweeper.run_once()
    except Exception as e:
        logger.error("Manual expiry sweep failed", actor_id=actor.id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Expiry sweep failed: {e}")

    logger.info("Manual expiry sweep", actor_id=actor.id, **counts)
    return {"expired": counts}


@router.get("/analytics/stats")
def operation_stats(
    actor: Actor = Depends(require_admin),
    services: ServiceContainer = Depends(get_services),
):
    """
    Operation counts per status plus mean approval latency.

    Example response:
    {
        "pending": 2, "approved": 1, "rejected": 0, "executed": 5,
        "failed": 0, "expired": 1, "total": 9,
        "avg_approval_seconds": 5400.0, "avg_approval_time_minutes": 90
    }
    """
    return services.engine.stats_summary()
