"""System-wide endpoints."""

import logging

from fastapi import APIRouter, Depends

from stackyard.core.dependencies import get_system_service
from stackyard.models.system import DiskUsage, SystemInfo, SystemPruneOptions, SystemPruneResult
from stackyard.services.system import SystemService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/info", response_model=SystemInfo)
async def get_system_info(system: SystemService = Depends(get_system_service)):
    return await system.get_info()


@router.get("/disk-usage", response_model=DiskUsage)
async def get_disk_usage(system: SystemService = Depends(get_system_service)):
    """Disk usage per category; sizes are null where the Engine could not report them."""
    return await system.get_disk_usage()


@router.post("/prune", response_model=SystemPruneResult)
async def prune_system(
    options: SystemPruneOptions,
    system: SystemService = Depends(get_system_service),
):
    """Run the selected prune steps. Volumes are only pruned when requested."""
    return await system.prune(options)
