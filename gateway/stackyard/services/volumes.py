"""Volume normalization and management."""

import asyncio
import logging
from collections import Counter
from typing import Dict, List, Optional

from stackyard.core.exceptions import EngineError
from stackyard.models.engine import RawContainerSummary, RawDiskUsage, RawVolume
from stackyard.models.volume import (
    DockerVolume,
    VolumeActions,
    VolumeContainer,
    VolumeCreate,
    VolumePruneResult,
)
from stackyard.services.containers import container_name
from stackyard.services.engine import EngineClient

logger = logging.getLogger(__name__)


def volume_sizes(df: Optional[RawDiskUsage]) -> Dict[str, int]:
    """Map volume name to its size from a disk usage report."""
    sizes = {}
    for volume in (df.volumes if df else None) or []:
        if volume.name and volume.usage_data is not None:
            sizes[volume.name] = volume.usage_data.size
    return sizes


def count_volume_containers(containers: List[RawContainerSummary]) -> Counter:
    counts: Counter = Counter()
    for container in containers:
        for mount in container.mounts or []:
            if mount.type == "volume" and mount.name:
                counts[mount.name] += 1
    return counts


def volume_containers(name: str, containers: List[RawContainerSummary]) -> List[VolumeContainer]:
    """Containers that mount the named volume, each listed once."""
    using = []
    for container in containers:
        if any(m.type == "volume" and m.name == name for m in container.mounts or []):
            using.append(VolumeContainer(id=container.id, name=container_name(container.names, container.id)))
    return using


def normalize_volume(
    raw: RawVolume,
    size: Optional[int] = None,
    container_count: int = 0,
    containers: Optional[List[VolumeContainer]] = None,
) -> DockerVolume:
    return DockerVolume(
        name=raw.name,
        driver=raw.driver,
        mountpoint=raw.mountpoint,
        scope=raw.scope or "local",
        labels=raw.labels or {},
        options=raw.options or None,
        created=raw.created_at or "",
        size=size,
        container_count=container_count,
        containers=containers or [],
        actions=VolumeActions(can_delete=container_count == 0),
    )


class VolumeService:
    """Volume operations over the Engine adapter."""

    def __init__(self, engine: EngineClient):
        self.engine = engine

    async def list_volumes(self) -> List[DockerVolume]:
        volumes, containers, df = await asyncio.gather(
            self.engine.list_volumes(),
            self.engine.list_containers(all=True),
            self.engine.disk_usage(),
        )
        sizes = volume_sizes(df)
        counts = count_volume_containers(containers)
        return [
            normalize_volume(raw, sizes.get(raw.name), counts.get(raw.name, 0))
            for raw in volumes
        ]

    async def get_volume(self, name: str) -> Optional[DockerVolume]:
        raw, containers, df = await asyncio.gather(
            self.engine.inspect_volume(name),
            self.engine.list_containers(all=True),
            self._disk_usage_or_none(),
        )
        if raw is None:
            return None
        using = volume_containers(name, containers)
        return normalize_volume(raw, volume_sizes(df).get(name), len(using), using)

    async def _disk_usage_or_none(self) -> Optional[RawDiskUsage]:
        try:
            return await self.engine.disk_usage()
        except EngineError as e:
            logger.warning(f"Disk usage unavailable, volume size unknown: {e}")
            return None

    async def create_volume(self, request: VolumeCreate) -> None:
        config = {"Name": request.name, "Driver": request.driver}
        if request.labels:
            config["Labels"] = request.labels
        await self.engine.create_volume(config)

    async def remove_volume(self, name: str) -> None:
        await self.engine.remove_volume(name)

    async def prune(self, all: bool = False, long_running: bool = False) -> VolumePruneResult:
        raw = await self.engine.prune_volumes(all=all, long_running=long_running)
        return VolumePruneResult(
            volumes_deleted=raw.volumes_deleted or [],
            space_reclaimed=raw.space_reclaimed,
        )
