"""Docker Engine client adapter using aiodocker."""

import asyncio
import json
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar
from urllib.parse import urlsplit

import aiodocker
import aiohttp
from aiodocker.exceptions import DockerError
from pydantic import BaseModel, ValidationError

from stackyard.core.config import Settings
from stackyard.core.exceptions import (
    EngineError,
    EngineUnreachableError,
    InvalidEndpointError,
)
from stackyard.models.engine import (
    RawContainerDetail,
    RawContainerSummary,
    RawDiskUsage,
    RawImageDetail,
    RawImageSummary,
    RawNetwork,
    RawPruneResult,
    RawStats,
    RawSystemInfo,
    RawVolume,
    RawVolumeList,
)
from stackyard.services.logs import CancellationToken, LogStream

logger = logging.getLogger(__name__)

DEFAULT_SOCKET = "/var/run/docker.sock"
DEFAULT_TCP_PORT = 2375

# aiodocker reports connection failures as a pseudo status
_CONNECTION_FAILED = 900

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class EngineEndpoint:
    """Resolved Engine connection target."""

    url: str
    socket_path: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    protocol: str = "http"

    @property
    def is_unix(self) -> bool:
        return self.socket_path is not None


def resolve_endpoint(value: Optional[str]) -> EngineEndpoint:
    """
    Resolve an endpoint string to a connection target.

    Accepts a bare socket path, ``unix:///path``, or ``tcp://`` /
    ``http://`` / ``https://`` URLs (port defaults to 2375).
    """
    value = (value or "").strip() or DEFAULT_SOCKET

    if value.startswith("unix://"):
        path = value[len("unix://"):]
        if not path:
            raise InvalidEndpointError(f"Missing socket path in {value!r}")
        # aiodocker composes request URLs against a dummy host for sockets
        return EngineEndpoint(url="unix://localhost", socket_path=path)

    if value.startswith(("tcp://", "http://", "https://")):
        parsed = urlsplit(value)
        if not parsed.hostname:
            raise InvalidEndpointError(f"Missing host in {value!r}")
        try:
            port = parsed.port or DEFAULT_TCP_PORT
        except ValueError as e:
            raise InvalidEndpointError(f"Invalid port in {value!r}") from e
        protocol = "https" if parsed.scheme == "https" else "http"
        return EngineEndpoint(
            url=f"{protocol}://{parsed.hostname}:{port}",
            host=parsed.hostname,
            port=port,
            protocol=protocol,
        )

    if "://" in value:
        raise InvalidEndpointError(f"Unsupported Docker endpoint {value!r}")
    return EngineEndpoint(url="unix://localhost", socket_path=value)


def create_docker(endpoint: EngineEndpoint, timeout: float) -> aiodocker.Docker:
    """Create an aiodocker client with a fixed per-request timeout."""
    if endpoint.is_unix:
        connector = aiohttp.UnixConnector(path=endpoint.socket_path)
    else:
        connector = aiohttp.TCPConnector()
    session = aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=timeout),
    )
    return aiodocker.Docker(url=endpoint.url, connector=connector, session=session)


@asynccontextmanager
async def engine_errors(action: str):
    """Translate aiodocker/aiohttp failures into Stackyard exceptions."""
    try:
        yield
    except DockerError as e:
        if e.status == _CONNECTION_FAILED:
            raise EngineUnreachableError(f"{action}: {e.message}") from e
        raise EngineError(f"{action}: {e.message}", status_code=e.status) from e
    except (aiohttp.ClientConnectionError, asyncio.TimeoutError, OSError) as e:
        raise EngineUnreachableError(f"{action}: cannot reach Docker Engine ({e})") from e


def _parse(model: Type[M], data: Any, action: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise EngineError(f"{action}: unexpected Engine response ({e.error_count()} errors)") from e


def _parse_list(model: Type[M], data: Any, action: str) -> List[M]:
    return [_parse(model, item, action) for item in data or []]


class EngineClient:
    """Owns the Engine connection and exposes raw, validated primitives.

    Two aiodocker handles share one endpoint: the default one for normal
    calls and a longer-timeout one for operations known to be slow (system
    prune, build cache cleanup, image pulls).
    """

    def __init__(
        self,
        docker: aiodocker.Docker,
        long_running: Optional[aiodocker.Docker] = None,
        endpoint: Optional[EngineEndpoint] = None,
        stream_connect_timeout: float = 30,
    ):
        self.docker = docker
        self.long_running = long_running or docker
        self.endpoint = endpoint
        self._stream_timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=stream_connect_timeout
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineClient":
        """Build both handles from configuration. Must run inside the event loop."""
        endpoint = resolve_endpoint(settings.docker_host)
        logger.info(f"Using Docker Engine at {settings.docker_host}")
        return cls(
            docker=create_docker(endpoint, settings.docker_timeout),
            long_running=create_docker(endpoint, settings.docker_long_timeout),
            endpoint=endpoint,
            stream_connect_timeout=settings.docker_timeout,
        )

    async def close(self) -> None:
        """Close Docker clients."""
        await self.docker.close()
        if self.long_running is not self.docker:
            await self.long_running.close()

    async def ping(self) -> Dict[str, Any]:
        async with engine_errors("Ping Engine"):
            return await self.docker.version()

    # Containers

    async def list_containers(self, all: bool = True, size: bool = False) -> List[RawContainerSummary]:
        action = "List containers"
        params = {"all": "1" if all else "0"}
        if size:
            params["size"] = "1"
        async with engine_errors(action):
            data = await self.docker._query_json("containers/json", params=params)
        return _parse_list(RawContainerSummary, data, action)

    async def inspect_container(self, container_id: str) -> Optional[RawContainerDetail]:
        action = f"Inspect container {container_id}"
        try:
            async with engine_errors(action):
                data = await self.docker.containers.container(container_id).show()
        except EngineError as e:
            if e.is_not_found:
                return None
            raise
        return _parse(RawContainerDetail, data, action)

    async def start_container(self, container_id: str) -> None:
        async with engine_errors(f"Start container {container_id}"):
            await self.docker.containers.container(container_id).start()
        logger.info(f"Started container {container_id}")

    async def stop_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        params = {} if timeout is None else {"t": timeout}
        async with engine_errors(f"Stop container {container_id}"):
            await self.docker.containers.container(container_id).stop(**params)
        logger.info(f"Stopped container {container_id}")

    async def restart_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        async with engine_errors(f"Restart container {container_id}"):
            await self.docker.containers.container(container_id).restart(timeout=timeout)
        logger.info(f"Restarted container {container_id}")

    async def remove_container(
        self, container_id: str, force: bool = False, volumes: bool = False
    ) -> None:
        async with engine_errors(f"Remove container {container_id}"):
            await self.docker.containers.container(container_id).delete(force=force, v=volumes)
        logger.info(f"Removed container {container_id}")

    async def container_stats(self, container_id: str) -> RawStats:
        action = f"Stats for container {container_id}"
        async with engine_errors(action):
            data = await self.docker._query_json(
                f"containers/{container_id}/stats", params={"stream": "0"}
            )
        return _parse(RawStats, data, action)

    async def container_logs(
        self,
        container_id: str,
        *,
        follow: bool = False,
        tail: Optional[int] = 100,
        since: Optional[int] = None,
        timestamps: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> LogStream:
        """Open the multiplexed log stream of a container."""
        params = {
            "stdout": "1",
            "stderr": "1",
            "follow": "1" if follow else "0",
            "timestamps": "1" if timestamps else "0",
            "tail": "all" if tail is None else str(tail),
        }
        if since is not None:
            params["since"] = str(since)

        stack = AsyncExitStack()
        try:
            async with engine_errors(f"Logs for container {container_id}"):
                response = await stack.enter_async_context(
                    self.docker._query(
                        f"containers/{container_id}/logs",
                        params=params,
                        timeout=self._stream_timeout,
                    )
                )
        except BaseException:
            await stack.aclose()
            raise
        return LogStream(response.content.iter_any(), close=stack.aclose, token=token)

    async def prune_containers(self, long_running: bool = False) -> RawPruneResult:
        return await self._prune("containers", long_running=long_running)

    # Images

    async def list_images(self) -> List[RawImageSummary]:
        action = "List images"
        async with engine_errors(action):
            data = await self.docker.images.list()
        return _parse_list(RawImageSummary, data, action)

    async def inspect_image(self, name: str) -> Optional[RawImageDetail]:
        action = f"Inspect image {name}"
        try:
            async with engine_errors(action):
                data = await self.docker.images.inspect(name)
        except EngineError as e:
            if e.is_not_found:
                return None
            raise
        return _parse(RawImageDetail, data, action)

    async def remove_image(self, name: str, force: bool = False) -> None:
        async with engine_errors(f"Remove image {name}"):
            await self.docker.images.delete(name, force=force)
        logger.info(f"Removed image {name}")

    async def pull_image(
        self, name: str, on_progress: Optional[Callable[[str], None]] = None
    ) -> None:
        """Pull an image, reporting each progress event as one line."""
        async with engine_errors(f"Pull image {name}"):
            async for event in self.long_running.images.pull(name, stream=True):
                if "error" in event:
                    raise EngineError(f"Pull image {name}: {event['error']}")
                if on_progress:
                    status = event.get("status", "")
                    progress = event.get("progress")
                    on_progress(f"{status}: {progress}" if progress else status)
        logger.info(f"Pulled image {name}")

    async def prune_images(self, all: bool = False, long_running: bool = False) -> RawPruneResult:
        # Without a filter only dangling images go; dangling=false removes all unused
        filters = {"dangling": ["false"]} if all else None
        return await self._prune("images", filters, long_running)

    # Networks

    async def list_networks(self) -> List[RawNetwork]:
        action = "List networks"
        async with engine_errors(action):
            data = await self.docker.networks.list()
        return _parse_list(RawNetwork, data, action)

    async def inspect_network(self, network_id: str) -> Optional[RawNetwork]:
        action = f"Inspect network {network_id}"
        try:
            async with engine_errors(action):
                network = await self.docker.networks.get(network_id)
                data = await network.show()
        except EngineError as e:
            if e.is_not_found:
                return None
            raise
        return _parse(RawNetwork, data, action)

    async def create_network(self, config: Dict[str, Any]) -> None:
        async with engine_errors(f"Create network {config.get('Name')}"):
            await self.docker.networks.create(config)
        logger.info(f"Created network {config.get('Name')}")

    async def remove_network(self, network_id: str) -> None:
        async with engine_errors(f"Remove network {network_id}"):
            network = await self.docker.networks.get(network_id)
            await network.delete()
        logger.info(f"Removed network {network_id}")

    async def prune_networks(self, long_running: bool = False) -> RawPruneResult:
        return await self._prune("networks", long_running=long_running)

    # Volumes

    async def list_volumes(self) -> List[RawVolume]:
        action = "List volumes"
        async with engine_errors(action):
            data = await self.docker.volumes.list()
        return _parse(RawVolumeList, data, action).volumes or []

    async def inspect_volume(self, name: str) -> Optional[RawVolume]:
        action = f"Inspect volume {name}"
        try:
            async with engine_errors(action):
                volume = await self.docker.volumes.get(name)
                data = await volume.show()
        except EngineError as e:
            if e.is_not_found:
                return None
            raise
        return _parse(RawVolume, data, action)

    async def create_volume(self, config: Dict[str, Any]) -> None:
        async with engine_errors(f"Create volume {config.get('Name')}"):
            await self.docker.volumes.create(config)
        logger.info(f"Created volume {config.get('Name')}")

    async def remove_volume(self, name: str) -> None:
        async with engine_errors(f"Remove volume {name}"):
            volume = await self.docker.volumes.get(name)
            await volume.delete()
        logger.info(f"Removed volume {name}")

    async def prune_volumes(self, all: bool = False, long_running: bool = False) -> RawPruneResult:
        # Without all=true only anonymous volumes are removed
        filters = {"all": ["true"]} if all else None
        return await self._prune("volumes", filters, long_running)

    # System

    async def system_info(self) -> RawSystemInfo:
        action = "System info"
        async with engine_errors(action):
            data = await self.docker.system.info()
        return _parse(RawSystemInfo, data, action)

    async def disk_usage(self) -> RawDiskUsage:
        action = "Disk usage"
        async with engine_errors(action):
            data = await self.docker._query_json("system/df")
        return _parse(RawDiskUsage, data, action)

    async def prune_build_cache(self) -> RawPruneResult:
        return await self._prune("build", long_running=True)

    async def _prune(
        self,
        resource: str,
        filters: Optional[Dict[str, List[str]]] = None,
        long_running: bool = False,
    ) -> RawPruneResult:
        action = f"Prune {resource}"
        docker = self.long_running if long_running else self.docker
        params = {"filters": json.dumps(filters)} if filters else None
        async with engine_errors(action):
            data = await docker._query_json(f"{resource}/prune", method="POST", params=params)
        logger.info(f"Pruned {resource}")
        return _parse(RawPruneResult, data or {}, action)
