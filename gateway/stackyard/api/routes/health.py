"""Health check endpoints."""

import logging
from typing import Dict

from fastapi import APIRouter, Depends

from stackyard.core.config import get_settings
from stackyard.core.dependencies import get_engine
from stackyard.core.exceptions import EngineError
from stackyard.services.engine import EngineClient

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter()


async def check_docker(engine: EngineClient) -> str:
    """Check Docker connectivity."""
    try:
        await engine.ping()
        return "healthy"
    except EngineError as e:
        logger.error(f"Docker health check failed: {e}")
        return "unhealthy"


@router.get("")
async def health_check(engine: EngineClient = Depends(get_engine)) -> Dict:
    """
    Check the health of all components.

    Returns:
        Health status of each component
    """
    components = {"docker": await check_docker(engine)}

    overall_status = (
        "healthy"
        if all(s == "healthy" for s in components.values())
        else "unhealthy"
    )

    return {
        "status": overall_status,
        "version": settings.version,
        "components": components,
    }


@router.get("/ready")
async def readiness_check(engine: EngineClient = Depends(get_engine)) -> Dict:
    """
    Readiness probe.

    Returns:
        Ready status
    """
    health = await health_check(engine)
    return {"ready": health["status"] == "healthy"}


@router.get("/live")
async def liveness_check() -> Dict:
    """
    Liveness probe.

    Returns:
        Alive status
    """
    return {"alive": True}
