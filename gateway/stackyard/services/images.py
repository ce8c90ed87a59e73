"""Image normalization and management."""

import logging
from typing import Callable, List, Optional, Tuple

from stackyard.models.engine import RawImageConfig, RawImageDetail, RawImageSummary, parse_engine_timestamp
from stackyard.models.image import (
    DockerImage,
    DockerImageDetail,
    ImageConfig,
    ImageContainer,
    ImageHealthcheck,
    ImagePruneResult,
)
from stackyard.services.containers import container_name, parse_env, short_id
from stackyard.services.engine import EngineClient

logger = logging.getLogger(__name__)


def split_digest(repo_digests: Optional[List[str]]) -> Tuple[Optional[str], Optional[str]]:
    """Return (repository, digest) from the first ``repo@sha256:...`` entry."""
    if not repo_digests:
        return None, None
    repository, _, digest = repo_digests[0].partition("@")
    return repository or None, digest or None


def image_name(image_id: str, tags: List[str], repository: Optional[str]) -> str:
    """First tag, else the digest repository, else the short id."""
    if tags:
        return tags[0]
    if repository:
        return repository
    return short_id(image_id)


def _real_tags(repo_tags: Optional[List[str]]) -> List[str]:
    return [t for t in repo_tags or [] if t != "<none>:<none>"]


def image_from_summary(raw: RawImageSummary) -> DockerImage:
    tags = _real_tags(raw.repo_tags)
    repository, digest = split_digest(raw.repo_digests)
    return DockerImage(
        id=raw.id,
        name=image_name(raw.id, tags, repository),
        tags=tags,
        repository=repository,
        size=raw.size,
        created=float(raw.created),
        digest=digest,
    )


def image_config(raw: RawImageConfig) -> ImageConfig:
    healthcheck = None
    if raw.healthcheck and raw.healthcheck.test and raw.healthcheck.test != ["NONE"]:
        healthcheck = ImageHealthcheck(test=raw.healthcheck.test)

    return ImageConfig(
        working_dir=raw.working_dir or None,
        entrypoint=raw.entrypoint or None,
        cmd=raw.cmd or None,
        exposed_ports=list(raw.exposed_ports or {}),
        volumes=list(raw.volumes or {}),
        env=parse_env(raw.env),
        user=raw.user or None,
        healthcheck=healthcheck,
        labels=raw.labels or {},
    )


def image_from_detail(
    raw: RawImageDetail, containers: Optional[List[ImageContainer]] = None
) -> DockerImageDetail:
    tags = _real_tags(raw.repo_tags)
    repository, digest = split_digest(raw.repo_digests)
    return DockerImageDetail(
        id=raw.id,
        name=image_name(raw.id, tags, repository),
        tags=tags,
        repository=repository,
        size=raw.size,
        created=parse_engine_timestamp(raw.created) or 0.0,
        digest=digest,
        architecture=raw.architecture,
        os=raw.os,
        author=raw.author or None,
        config=image_config(raw.config) if raw.config else None,
        containers=containers or [],
    )


class ImageService:
    """Image operations over the Engine adapter."""

    def __init__(self, engine: EngineClient):
        self.engine = engine

    async def list_images(self) -> List[DockerImage]:
        raw_images = await self.engine.list_images()
        return [image_from_summary(raw) for raw in raw_images]

    async def get_image(self, name: str) -> Optional[DockerImageDetail]:
        """Inspect an image and list the containers created from it."""
        raw = await self.engine.inspect_image(name)
        if raw is None:
            return None
        containers = [
            ImageContainer(id=c.id, name=container_name(c.names, c.id))
            for c in await self.engine.list_containers(all=True)
            if c.image_id == raw.id
        ]
        return image_from_detail(raw, containers)

    async def remove_image(self, name: str, force: bool = False) -> None:
        await self.engine.remove_image(name, force=force)

    async def pull_image(self, name: str, on_progress: Optional[Callable[[str], None]] = None) -> None:
        await self.engine.pull_image(name, on_progress=on_progress)

    async def prune(self, all: bool = False, long_running: bool = False) -> ImagePruneResult:
        """
        Remove unused images.

        The Engine's ImagesDeleted lists layers as well as images, so the
        deleted count is the drop in image count across the prune.
        """
        before = len(await self.engine.list_images())
        raw = await self.engine.prune_images(all=all, long_running=long_running)
        after = len(await self.engine.list_images())
        return ImagePruneResult(
            images_deleted=max(0, before - after),
            space_reclaimed=raw.space_reclaimed,
        )
