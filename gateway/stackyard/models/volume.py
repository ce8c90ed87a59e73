"""Volume-related Pydantic models."""

from typing import Dict, List, Optional

from pydantic import Field

from stackyard.models.common import CamelModel


class VolumeContainer(CamelModel):
    id: str
    name: str


class VolumeActions(CamelModel):
    can_delete: bool


class DockerVolume(CamelModel):
    """Read projection of one Engine volume."""

    name: str
    driver: str
    mountpoint: str
    scope: str = "local"
    labels: Dict[str, str] = Field(default_factory=dict)
    options: Optional[Dict[str, str]] = None
    created: str = ""
    # Size in bytes, only known from the disk usage endpoint
    size: Optional[int] = None
    container_count: int = 0
    # Only populated on detail view
    containers: List[VolumeContainer] = Field(default_factory=list)
    actions: VolumeActions


class VolumeCreate(CamelModel):
    """Request body for creating a volume."""

    name: str
    driver: str = "local"
    labels: Optional[Dict[str, str]] = None


class VolumePruneResult(CamelModel):
    volumes_deleted: List[str] = Field(default_factory=list)
    space_reclaimed: int = 0
