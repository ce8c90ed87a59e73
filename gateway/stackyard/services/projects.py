"""Compose project discovery, status derivation and scan caching."""

import asyncio
import functools
import logging
import os
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import yaml

from stackyard.core.exceptions import InvalidProjectNameError
from stackyard.models.container import Container, ContainerState
from stackyard.models.project import Project, ProjectService, ProjectStatus, ServiceStatus
from stackyard.services.containers import ContainerService
from stackyard.services.manifest import load_yaml

logger = logging.getLogger(__name__)

# Checked in this order; the first existing file wins
COMPOSE_FILENAMES = ("compose.yaml", "compose.yml", "docker-compose.yaml", "docker-compose.yml")

ENV_FILENAME = ".env"

_VALID_PROJECT_NAME = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_PROJECT_NAME_LENGTH = 255

ACTIVE_STATES = (ContainerState.RUNNING, ContainerState.RESTARTING)


def is_valid_project_name(name: str) -> bool:
    """Only alphanumerics, hyphens and underscores; blocks path traversal."""
    return (
        0 < len(name) <= MAX_PROJECT_NAME_LENGTH
        and _VALID_PROJECT_NAME.match(name) is not None
    )


def require_valid_project_name(name: str) -> None:
    if not is_valid_project_name(name):
        logger.warning(f"Invalid project name rejected: {name!r}")
        raise InvalidProjectNameError(name)


class PathMapper:
    """Translates paths between the manager's and the Engine host's view.

    When the manager runs in a container, the projects directory it sees
    (``projects_dir``) may be mounted from a different host directory
    (``host_projects_dir``). Paths handed to the Engine must use the host's.
    """

    def __init__(self, projects_dir: str, host_projects_dir: Optional[str] = None):
        self.projects_dir = os.path.normpath(projects_dir)
        self.host_projects_dir = os.path.normpath(host_projects_dir or projects_dir)

    @property
    def is_mapping_active(self) -> bool:
        return self.projects_dir != self.host_projects_dir

    @staticmethod
    def is_within_base(path: str, base: str) -> bool:
        """Whether path is base or below it, comparing whole segments."""
        path = os.path.normpath(path)
        base = os.path.normpath(base)
        if base == os.sep:
            return path.startswith(os.sep)
        return path == base or path.startswith(base + os.sep)

    def is_local_path(self, path: str) -> bool:
        return self.is_within_base(path, self.projects_dir)

    def to_host_path(self, local_path: str) -> str:
        """Swap the local root prefix for the host root; other paths pass through."""
        if not self.is_mapping_active or not self.is_local_path(local_path):
            return local_path
        relative = os.path.relpath(os.path.normpath(local_path), self.projects_dir)
        if relative == os.curdir:
            return self.host_projects_dir
        return os.path.join(self.host_projects_dir, relative)

    def to_absolute_host_path(self, path: str, project_dir: str) -> str:
        """Resolve a manifest path against the project and map it to the host."""
        if os.path.isabs(path):
            return self.to_host_path(path) if self.is_local_path(path) else path
        return self.to_host_path(os.path.normpath(os.path.join(project_dir, path)))

    @staticmethod
    def to_absolute_local_path(path: str, project_dir: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.normpath(os.path.join(project_dir, path))

    def project_path(self, name: str) -> str:
        return os.path.join(self.projects_dir, name)


def find_compose_file(project_path: str) -> Optional[str]:
    for filename in COMPOSE_FILENAMES:
        candidate = os.path.join(project_path, filename)
        if os.path.isfile(candidate):
            return candidate
    return None


def _discover_projects(projects_dir: str) -> List[Tuple[str, str, str]]:
    """Return (name, path, compose file) for each project directory."""
    found = []
    with os.scandir(projects_dir) as entries:
        for entry in entries:
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            compose_file = find_compose_file(entry.path)
            if compose_file:
                found.append((entry.name, entry.path, compose_file))
    return found


def _load_manifest(compose_file: str) -> Any:
    with open(compose_file, encoding="utf-8") as f:
        return load_yaml(f)


def _read_text(path: str) -> Optional[str]:
    try:
        with open(path, encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return None


def _service_status(container: Optional[Container]) -> ServiceStatus:
    if container is None:
        return ServiceStatus.UNKNOWN
    if container.state == ContainerState.RUNNING:
        return ServiceStatus.RUNNING
    if container.state == ContainerState.RESTARTING:
        return ServiceStatus.RESTARTING
    return ServiceStatus.EXITED


def project_status(services: List[ProjectService], active: int) -> ProjectStatus:
    """Aggregate status from the number of services with a live container."""
    if not services:
        return ProjectStatus.UNKNOWN
    if active == len(services):
        return ProjectStatus.RUNNING
    if active > 0:
        return ProjectStatus.PARTIAL
    return ProjectStatus.STOPPED


def _declared_image(config: Dict[str, Any]) -> Optional[str]:
    image = config.get("image")
    return str(image) if isinstance(image, str) else None


def build_project(
    name: str,
    path: str,
    compose_file: str,
    manifest: Any,
    containers: List[Container],
) -> Project:
    """Cross-reference a parsed manifest with the live containers."""
    project = Project(name=name, path=path, compose_file=compose_file)
    declared = manifest.get("services") if isinstance(manifest, dict) else None
    if not isinstance(declared, dict):
        return project

    by_service = {
        c.service_name: c
        for c in reversed(containers)
        if c.project_name == name and c.service_name
    }

    active = 0
    for service_name, config in declared.items():
        config = config if isinstance(config, dict) else {}
        container = by_service.get(service_name)
        if container is not None and container.state in ACTIVE_STATES:
            active += 1
        project.services.append(
            ProjectService(
                name=str(service_name),
                image=container.image if container else _declared_image(config),
                image_id=container.image_id if container else None,
                container_id=container.id if container else None,
                container_name=container.name if container else None,
                status=_service_status(container),
                ports=container.ports if container else None,
                has_build=bool(config.get("build")),
            )
        )

    project.status = project_status(project.services, active)
    return project


Loader = Callable[[], Awaitable[List[Project]]]


class ProjectScanCache:
    """Short-lived cache of scan results keyed by projects directory.

    Concurrent callers with a cold entry share one in-flight scan task.
    ``invalidate()`` drops cached results and detaches in-flight scans so
    their results are not stored.
    """

    def __init__(self, ttl: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, Tuple[float, List[Project]]] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._generation = 0

    async def get(self, key: str, loader: Loader) -> List[Project]:
        entry = self._entries.get(key)
        if entry is not None and self.clock() - entry[0] < self.ttl:
            return list(entry[1])

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(loader())
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._finish, key, self._generation))

        # One caller going away must not cancel the scan for the others
        return list(await asyncio.shield(task))

    def _finish(self, key: str, generation: int, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled() or task.exception() is not None:
            return
        if generation == self._generation:
            self._entries[key] = (self.clock(), task.result())

    def invalidate(self, key: Optional[str] = None) -> None:
        self._generation += 1
        if key is None:
            self._entries.clear()
            self._inflight.clear()
        else:
            self._entries.pop(key, None)
            self._inflight.pop(key, None)
        logger.debug("Project scan cache invalidated")


class ProjectScanner:
    """Discovers compose projects and derives their status from live containers."""

    def __init__(
        self,
        paths: PathMapper,
        containers: ContainerService,
        cache: Optional[ProjectScanCache] = None,
        concurrency: int = 10,
    ):
        self.paths = paths
        self.containers = containers
        self.cache = cache
        self.concurrency = concurrency

    @property
    def projects_dir(self) -> str:
        return self.paths.projects_dir

    async def scan_projects(self) -> List[Project]:
        """All projects sorted by name, served from the cache when fresh."""
        if self.cache is None:
            return await self._scan()
        return await self.cache.get(self.projects_dir, self._scan)

    async def _scan(self) -> List[Project]:
        try:
            discovered = await asyncio.to_thread(_discover_projects, self.projects_dir)
        except OSError as e:
            logger.error(f"Failed to scan projects in {self.projects_dir}: {e}")
            return []

        containers = await self.containers.list_containers(all=True)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def load(name: str, path: str, compose_file: str) -> Project:
            async with semaphore:
                return await self._load_project(name, path, compose_file, containers)

        projects = await asyncio.gather(*(load(*entry) for entry in discovered))
        logger.debug(f"Scanned {len(projects)} projects in {self.projects_dir}")
        return sorted(projects, key=lambda p: p.name)

    async def _load_project(
        self, name: str, path: str, compose_file: str, containers: List[Container]
    ) -> Project:
        try:
            manifest = await asyncio.to_thread(_load_manifest, compose_file)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Failed to parse compose file for {name}: {e}")
            return Project(name=name, path=path, compose_file=compose_file)
        return build_project(name, path, compose_file, manifest, containers)

    async def get_project(self, name: str) -> Optional[Project]:
        """Look up one project; raises InvalidProjectNameError before touching disk."""
        require_valid_project_name(name)
        path = self.paths.project_path(name)

        def locate() -> Optional[str]:
            if not os.path.isdir(path):
                return None
            return find_compose_file(path)

        compose_file = await asyncio.to_thread(locate)
        if compose_file is None:
            return None
        containers = await self.containers.list_containers(all=True)
        return await self._load_project(name, path, compose_file, containers)

    async def read_compose_file(self, name: str) -> Optional[str]:
        project = await self.get_project(name)
        if project is None:
            return None
        return await asyncio.to_thread(_read_text, project.compose_file)

    async def read_env_file(self, name: str) -> Optional[str]:
        require_valid_project_name(name)
        env_path = os.path.join(self.paths.project_path(name), ENV_FILENAME)
        return await asyncio.to_thread(_read_text, env_path)

    def invalidate(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()
