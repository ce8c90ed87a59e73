"""System-wide Pydantic models."""

from enum import Enum
from typing import List, Optional

from pydantic import Field

from stackyard.models.common import CamelModel


class ContainerCounts(CamelModel):
    total: int = 0
    running: int = 0
    paused: int = 0
    stopped: int = 0


class ManagerInfo(CamelModel):
    """This manager's own configuration, echoed for the settings page."""

    version: str
    projects_dir: str
    host_projects_dir: str
    docker_host: str


class SystemInfo(CamelModel):
    """Engine information."""

    version: str = ""
    os: str = ""
    arch: str = ""
    kernel_version: str = ""
    storage_driver: str = ""
    root_dir: str = ""
    containers: ContainerCounts = Field(default_factory=ContainerCounts)
    images: int = 0
    memory_limit: int = 0
    cpus: int = 0
    warnings: List[str] = Field(default_factory=list)
    manager: Optional[ManagerInfo] = None


class DiskUsageCategory(CamelModel):
    total: int = 0
    size: Optional[int] = None
    reclaimable: Optional[int] = None


class DiskUsage(CamelModel):
    images: DiskUsageCategory
    containers: DiskUsageCategory
    volumes: DiskUsageCategory
    build_cache: DiskUsageCategory
    total_size: int = 0
    # None when the fallback path cannot account for every category
    total_reclaimable: Optional[int] = None


class PruneStep(str, Enum):
    """One step of a system prune, in execution order."""

    CONTAINERS = "containers"
    NETWORKS = "networks"
    IMAGES = "images"
    VOLUMES = "volumes"
    BUILD_CACHE = "buildCache"


class SystemPruneOptions(CamelModel):
    containers: bool = False
    networks: bool = False
    images: bool = False
    volumes: bool = False
    build_cache: bool = False
    # Remove all unused images, not only dangling ones
    all_images: bool = False


class SystemPruneResult(CamelModel):
    containers_deleted: int = 0
    networks_deleted: int = 0
    images_deleted: int = 0
    volumes_deleted: int = 0
    build_cache_space_reclaimed: int = 0
    space_reclaimed: int = 0
