"""Image endpoints."""

from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stackyard.core.dependencies import get_image_service
from stackyard.models.image import (
    DockerImage,
    DockerImageDetail,
    ImagePruneResult,
    ImagePull,
    ImagePullResult,
)
from stackyard.services.images import ImageService

router = APIRouter()


@router.get("", response_model=List[DockerImage])
async def list_images(images: ImageService = Depends(get_image_service)):
    return await images.list_images()


@router.post("/prune", response_model=ImagePruneResult)
async def prune_images(
    all: bool = Query(False),
    images: ImageService = Depends(get_image_service),
):
    """Remove dangling images, or every unused image with ``all=true``."""
    return await images.prune(all=all)


@router.post("/pull", response_model=ImagePullResult)
async def pull_image(
    request: ImagePull,
    images: ImageService = Depends(get_image_service),
):
    """Pull an image; responds once the pull has finished."""
    output: List[str] = []
    await images.pull_image(request.name, on_progress=output.append)
    return ImagePullResult(message=f"Image {request.name} pulled successfully", output=output)


# Image references contain slashes and colons
@router.get("/{name:path}", response_model=DockerImageDetail)
async def get_image(name: str, images: ImageService = Depends(get_image_service)):
    image = await images.get_image(name)
    if not image:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Image {name} not found",
        )
    return image


@router.delete("/{name:path}")
async def remove_image(
    name: str,
    force: bool = Query(False),
    images: ImageService = Depends(get_image_service),
) -> Dict:
    await images.remove_image(name, force=force)
    return {"message": "Image deleted"}
