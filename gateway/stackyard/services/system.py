"""Engine information, disk usage and system-wide prune."""

import asyncio
import logging
from typing import Callable, Optional

from stackyard.core.config import Settings
from stackyard.core.exceptions import EngineError, EngineUnreachableError
from stackyard.models.engine import RawDiskUsage, RawSystemInfo
from stackyard.models.system import (
    ContainerCounts,
    DiskUsage,
    DiskUsageCategory,
    ManagerInfo,
    PruneStep,
    SystemInfo,
    SystemPruneOptions,
    SystemPruneResult,
)
from stackyard.services.engine import EngineClient
from stackyard.services.images import ImageService

logger = logging.getLogger(__name__)

StepCallback = Callable[[PruneStep], None]


def system_info_from_raw(raw: RawSystemInfo, manager: Optional[ManagerInfo] = None) -> SystemInfo:
    return SystemInfo(
        version=raw.server_version,
        os=raw.operating_system,
        arch=raw.architecture,
        kernel_version=raw.kernel_version,
        storage_driver=raw.driver,
        root_dir=raw.docker_root_dir,
        containers=ContainerCounts(
            total=raw.containers,
            running=raw.containers_running,
            paused=raw.containers_paused,
            stopped=raw.containers_stopped,
        ),
        images=raw.images,
        memory_limit=raw.mem_total,
        cpus=raw.ncpu,
        warnings=raw.warnings or [],
        manager=manager,
    )


def disk_usage_from_df(df: RawDiskUsage) -> DiskUsage:
    """Summarize a ``system/df`` report per category."""
    images = df.images or []
    image_size = sum(i.size for i in images)
    image_reclaimable = sum(i.size - i.shared_size for i in images if i.containers == 0)

    containers = df.containers or []
    container_size = sum(c.size_rw or 0 for c in containers)

    volumes = df.volumes or []
    volume_size = sum(v.usage_data.size for v in volumes if v.usage_data)
    volume_reclaimable = sum(
        v.usage_data.size for v in volumes if v.usage_data and v.usage_data.ref_count == 0
    )

    build_cache = df.build_cache or []
    build_cache_size = sum(b.size for b in build_cache)
    build_cache_reclaimable = sum(b.size for b in build_cache if not b.in_use)

    total_reclaimable = (
        image_reclaimable + container_size + volume_reclaimable + build_cache_reclaimable
    )
    return DiskUsage(
        images=DiskUsageCategory(
            total=len(images), size=image_size, reclaimable=max(0, image_reclaimable)
        ),
        containers=DiskUsageCategory(
            total=len(containers), size=container_size, reclaimable=container_size
        ),
        volumes=DiskUsageCategory(
            total=len(volumes), size=volume_size, reclaimable=volume_reclaimable
        ),
        build_cache=DiskUsageCategory(
            total=len(build_cache), size=build_cache_size, reclaimable=build_cache_reclaimable
        ),
        total_size=image_size + container_size + volume_size + build_cache_size,
        total_reclaimable=max(0, total_reclaimable),
    )


class SystemService:
    """System-wide Engine operations."""

    def __init__(self, engine: EngineClient, settings: Settings):
        self.engine = engine
        self.settings = settings
        self.images = ImageService(engine)

    def manager_info(self) -> ManagerInfo:
        return ManagerInfo(
            version=self.settings.version,
            projects_dir=self.settings.projects_dir,
            host_projects_dir=self.settings.effective_host_projects_dir,
            docker_host=self.settings.docker_host,
        )

    async def get_info(self) -> SystemInfo:
        raw = await self.engine.system_info()
        return system_info_from_raw(raw, self.manager_info())

    async def get_disk_usage(self) -> DiskUsage:
        """Disk usage from ``system/df``, or estimated from list endpoints if df fails."""
        try:
            df = await self.engine.disk_usage()
        except EngineUnreachableError:
            raise
        except EngineError as e:
            logger.warning(f"Disk usage endpoint failed, falling back to list endpoints: {e}")
            return await self._disk_usage_from_lists()
        return disk_usage_from_df(df)

    async def _disk_usage_from_lists(self) -> DiskUsage:
        images, containers, volumes = await asyncio.gather(
            self.engine.list_images(),
            self.engine.list_containers(all=True, size=True),
            self.engine.list_volumes(),
        )

        image_size = sum(i.size for i in images)
        dangling = [
            i for i in images
            if not i.repo_tags or i.repo_tags[0] == "<none>:<none>"
        ]
        container_size = sum(c.size_rw or 0 for c in containers)
        stopped_size = sum(c.size_rw or 0 for c in containers if c.state != "running")

        return DiskUsage(
            images=DiskUsageCategory(
                total=len(images),
                size=image_size,
                reclaimable=sum(i.size for i in dangling),
            ),
            containers=DiskUsageCategory(
                total=len(containers), size=container_size, reclaimable=stopped_size
            ),
            # Sizes are unknown without df
            volumes=DiskUsageCategory(total=len(volumes)),
            build_cache=DiskUsageCategory(total=0),
            total_size=image_size + container_size,
            total_reclaimable=None,
        )

    async def prune(
        self, options: SystemPruneOptions, on_step: Optional[StepCallback] = None
    ) -> SystemPruneResult:
        """
        Run the selected prune steps in order on the long-running handle.

        Volumes are only pruned when explicitly requested.
        """
        result = SystemPruneResult()

        def step(name: PruneStep) -> None:
            logger.info(f"System prune: {name.value}")
            if on_step:
                on_step(name)

        if options.containers:
            step(PruneStep.CONTAINERS)
            raw = await self.engine.prune_containers(long_running=True)
            result.containers_deleted = len(raw.containers_deleted or [])
            result.space_reclaimed += raw.space_reclaimed

        if options.networks:
            step(PruneStep.NETWORKS)
            raw = await self.engine.prune_networks(long_running=True)
            result.networks_deleted = len(raw.networks_deleted or [])

        if options.images:
            step(PruneStep.IMAGES)
            image_result = await self.images.prune(all=options.all_images, long_running=True)
            result.images_deleted = image_result.images_deleted
            result.space_reclaimed += image_result.space_reclaimed

        if options.volumes:
            step(PruneStep.VOLUMES)
            raw = await self.engine.prune_volumes(long_running=True)
            result.volumes_deleted = len(raw.volumes_deleted or [])
            result.space_reclaimed += raw.space_reclaimed

        if options.build_cache:
            step(PruneStep.BUILD_CACHE)
            raw = await self.engine.prune_build_cache()
            result.build_cache_space_reclaimed = raw.space_reclaimed
            result.space_reclaimed += raw.space_reclaimed

        return result
