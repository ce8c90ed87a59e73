"""Container endpoints."""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stackyard.core.dependencies import get_compose_service, get_container_service
from stackyard.models.container import Container, ContainerPruneResult, ContainerStats
from stackyard.models.project import ContainerUpdateResult
from stackyard.services.compose import ComposeService
from stackyard.services.containers import ContainerService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=List[Container])
async def list_containers(
    all: bool = Query(True),
    include_health: bool = Query(False, alias="includeHealth"),
    containers: ContainerService = Depends(get_container_service),
):
    """
    List containers.

    Health, restart count and exit code need one inspect per container and
    are only filled in with ``includeHealth=true``.
    """
    return await containers.list_containers(all=all, include_health=include_health)


@router.post("/prune", response_model=ContainerPruneResult)
async def prune_containers(containers: ContainerService = Depends(get_container_service)):
    """Remove all stopped containers."""
    return await containers.prune()


@router.get("/{container_id}", response_model=Container)
async def get_container(
    container_id: str,
    containers: ContainerService = Depends(get_container_service),
):
    container = await containers.get_container(container_id)
    if not container:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Container {container_id} not found",
        )
    return container


@router.post("/{container_id}/start")
async def start_container(
    container_id: str,
    containers: ContainerService = Depends(get_container_service),
) -> Dict:
    await containers.start_container(container_id)
    return {"message": "Container started"}


@router.post("/{container_id}/stop")
async def stop_container(
    container_id: str,
    timeout: Optional[int] = Query(None, ge=0),
    containers: ContainerService = Depends(get_container_service),
) -> Dict:
    await containers.stop_container(container_id, timeout=timeout)
    return {"message": "Container stopped"}


@router.post("/{container_id}/restart")
async def restart_container(
    container_id: str,
    containers: ContainerService = Depends(get_container_service),
) -> Dict:
    await containers.restart_container(container_id)
    return {"message": "Container restarted"}


@router.post("/{container_id}/update", response_model=ContainerUpdateResult)
async def update_container(
    container_id: str,
    compose: ComposeService = Depends(get_compose_service),
):
    """
    Pull the latest image for a compose-managed container's service.

    The service is recreated only if the container was running. Standalone
    containers are rejected with 400.
    """
    result = await compose.update_container(container_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Container {container_id} not found",
        )
    return result


@router.delete("/{container_id}")
async def remove_container(
    container_id: str,
    force: bool = Query(False),
    containers: ContainerService = Depends(get_container_service),
) -> Dict:
    await containers.remove_container(container_id, force=force)
    return {"message": "Container removed"}


@router.get("/{container_id}/stats", response_model=ContainerStats)
async def get_container_stats(
    container_id: str,
    containers: ContainerService = Depends(get_container_service),
):
    """One stats snapshot, with CPU usage computed against the previous reading."""
    return await containers.get_stats(container_id)
