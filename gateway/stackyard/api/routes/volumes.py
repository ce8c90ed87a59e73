"""Volume endpoints."""

from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stackyard.core.dependencies import get_volume_service
from stackyard.models.volume import DockerVolume, VolumeCreate, VolumePruneResult
from stackyard.services.volumes import VolumeService

router = APIRouter()


@router.get("", response_model=List[DockerVolume])
async def list_volumes(volumes: VolumeService = Depends(get_volume_service)):
    return await volumes.list_volumes()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_volume(
    request: VolumeCreate,
    volumes: VolumeService = Depends(get_volume_service),
) -> Dict:
    await volumes.create_volume(request)
    return {"message": f"Volume {request.name} created"}


@router.post("/prune", response_model=VolumePruneResult)
async def prune_volumes(
    all: bool = Query(False),
    volumes: VolumeService = Depends(get_volume_service),
):
    """Remove anonymous unused volumes, or every unused volume with ``all=true``."""
    return await volumes.prune(all=all)


@router.get("/{name}", response_model=DockerVolume)
async def get_volume(name: str, volumes: VolumeService = Depends(get_volume_service)):
    volume = await volumes.get_volume(name)
    if not volume:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Volume {name} not found",
        )
    return volume


@router.delete("/{name}")
async def remove_volume(name: str, volumes: VolumeService = Depends(get_volume_service)) -> Dict:
    await volumes.remove_volume(name)
    return {"message": "Volume deleted"}
