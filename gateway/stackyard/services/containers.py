"""Container normalization and management."""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from stackyard.core.exceptions import EngineError
from stackyard.models.container import (
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    Container,
    ContainerActions,
    ContainerHealth,
    ContainerMount,
    ContainerNetwork,
    ContainerPruneResult,
    ContainerState,
    ContainerStats,
    HealthStatus,
    PortMapping,
    UpdateStrategy,
)
from stackyard.models.engine import (
    RawContainerDetail,
    RawContainerSummary,
    RawMountPoint,
    RawNetworkSettings,
    RawPort,
    parse_engine_timestamp,
)
from stackyard.services.engine import EngineClient
from stackyard.services.logs import CancellationToken, LogStream
from stackyard.services.stats import stats_from_snapshot

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_PREFIXES = ("docker.io/library/", "docker.io/")
DIGEST_PREFIX = "sha256:"


def short_id(value: str) -> str:
    """Docker's 12-character display id, without a ``sha256:`` prefix."""
    if value.startswith(DIGEST_PREFIX):
        value = value[len(DIGEST_PREFIX):]
    return value[:12]


def normalize_image_name(image: str) -> str:
    """Strip the default registry prefix for display."""
    for prefix in DEFAULT_REGISTRY_PREFIXES:
        if image.startswith(prefix):
            image = image[len(prefix):]
    return image


def parse_state(value: str) -> ContainerState:
    try:
        return ContainerState(value.lower())
    except ValueError:
        logger.warning(f"Unknown container state {value!r}, treating as dead")
        return ContainerState.DEAD


def get_update_strategy(project_name: Optional[str], service_name: Optional[str]) -> UpdateStrategy:
    if project_name and service_name:
        return UpdateStrategy.COMPOSE
    return UpdateStrategy.STANDALONE


def get_container_actions(state: ContainerState, update_strategy: UpdateStrategy) -> ContainerActions:
    """Compute available actions from state and update strategy."""
    is_running = state == ContainerState.RUNNING
    is_stopped = state in (ContainerState.EXITED, ContainerState.CREATED)
    can_operate = state not in (ContainerState.REMOVING, ContainerState.DEAD)

    return ContainerActions(
        can_start=is_stopped,
        can_stop=is_running,
        can_restart=is_running,
        can_update=update_strategy == UpdateStrategy.COMPOSE and can_operate,
        can_view_logs=True,
        can_exec=is_running,
    )


def _port_sort_key(port: PortMapping) -> Tuple[int, int, int]:
    if port.host:
        return (0, port.host, 0 if port.protocol == "tcp" else 1)
    return (1, port.container, 0 if port.protocol == "tcp" else 1)


def sort_ports(ports: Iterable[PortMapping]) -> List[PortMapping]:
    """Published first by host port, then unpublished by container port, TCP before UDP."""
    return sorted(ports, key=_port_sort_key)


def dedupe_ports(ports: Iterable[PortMapping]) -> List[PortMapping]:
    """Drop the duplicate entries the Engine reports for IPv4 and IPv6 bindings."""
    seen = set()
    unique = []
    for port in ports:
        key = (port.host, port.container, port.protocol)
        if key not in seen:
            seen.add(key)
            unique.append(port)
    return unique


def ports_from_summary(raw_ports: Optional[List[RawPort]]) -> List[PortMapping]:
    ports = [
        PortMapping(
            container=p.private_port,
            host=p.public_port or None,
            protocol=p.type or "tcp",
        )
        for p in raw_ports or []
    ]
    return sort_ports(dedupe_ports(ports))


def _split_port_key(key: str) -> Tuple[int, str]:
    port, _, protocol = key.partition("/")
    return int(port), protocol or "tcp"


def ports_from_detail(detail: RawContainerDetail) -> List[PortMapping]:
    """Merge host-bound ports with exposed-only ones."""
    ports = []
    bound = set()
    bindings = (detail.host_config.port_bindings if detail.host_config else None) or {}

    for key, host_ports in bindings.items():
        if not host_ports:
            continue
        container_port, protocol = _split_port_key(key)
        host_port = host_ports[0].host_port
        bound.add(key)
        ports.append(
            PortMapping(
                container=container_port,
                host=int(host_port) if host_port else None,
                protocol=protocol,
            )
        )

    for key in detail.config.exposed_ports or {}:
        if key not in bound:
            container_port, protocol = _split_port_key(key)
            ports.append(PortMapping(container=container_port, protocol=protocol))

    return sort_ports(dedupe_ports(ports))


def normalize_mounts(mounts: Optional[List[RawMountPoint]]) -> List[ContainerMount]:
    return [
        ContainerMount(
            type=m.type,
            name=m.name,
            source=m.source,
            destination=m.destination,
            mode=m.mode,
            rw=m.rw,
        )
        for m in mounts or []
    ]


def normalize_networks(settings: Optional[RawNetworkSettings]) -> List[ContainerNetwork]:
    if not settings or not settings.networks:
        return []
    return [
        ContainerNetwork(
            name=name,
            ip_address=endpoint.ip_address,
            gateway=endpoint.gateway,
            mac_address=endpoint.mac_address,
        )
        for name, endpoint in settings.networks.items()
    ]


def parse_env(entries: Optional[List[str]]) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` strings, splitting on the first ``=``."""
    env = {}
    for entry in entries or []:
        key, _, value = entry.partition("=")
        if key:
            env[key] = value
    return env


def parse_health_status(status: Optional[str]) -> HealthStatus:
    if not status:
        return HealthStatus.NONE
    try:
        return HealthStatus(status.lower())
    except ValueError:
        return HealthStatus.NONE


def health_from_detail(detail: RawContainerDetail) -> Optional[ContainerHealth]:
    health = detail.state.health
    if health is None:
        return None
    return ContainerHealth(
        status=parse_health_status(health.status),
        failing_streak=health.failing_streak,
    )


def container_name(names: Optional[List[str]], container_id: str) -> str:
    if names and names[0]:
        return names[0].lstrip("/")
    return short_id(container_id)


def container_from_summary(
    raw: RawContainerSummary,
    detail: Optional[RawContainerDetail] = None,
) -> Container:
    """Build a Container from a list entry, enriched by an inspect payload if given."""
    labels = raw.labels or {}
    project_name = labels.get(COMPOSE_PROJECT_LABEL)
    service_name = labels.get(COMPOSE_SERVICE_LABEL)
    state = parse_state(raw.state)
    update_strategy = get_update_strategy(project_name, service_name)

    image = raw.image
    if image.startswith(DIGEST_PREFIX) and detail and detail.config.image:
        # The tag moved to a newer image; the declared one is the name of record
        image = detail.config.image

    container = Container(
        id=raw.id,
        name=container_name(raw.names, raw.id),
        image=normalize_image_name(image),
        image_id=raw.image_id,
        status=raw.status,
        state=state,
        created=float(raw.created),
        ports=ports_from_summary(raw.ports),
        labels=labels,
        project_name=project_name,
        service_name=service_name,
        update_strategy=update_strategy,
        actions=get_container_actions(state, update_strategy),
        mounts=normalize_mounts(raw.mounts),
        networks=normalize_networks(raw.network_settings),
    )
    if detail is not None:
        container.restart_count = detail.restart_count or 0
        container.health = health_from_detail(detail)
        container.exit_code = detail.state.exit_code
        container.started_at = parse_engine_timestamp(detail.state.started_at)
    return container


def container_from_detail(detail: RawContainerDetail) -> Container:
    """Build a full Container from an inspect payload."""
    labels = detail.config.labels or {}
    project_name = labels.get(COMPOSE_PROJECT_LABEL)
    service_name = labels.get(COMPOSE_SERVICE_LABEL)
    state = parse_state(detail.state.status)
    update_strategy = get_update_strategy(project_name, service_name)

    return Container(
        id=detail.id,
        name=detail.name.lstrip("/") or short_id(detail.id),
        image=normalize_image_name(detail.config.image or detail.image),
        image_id=detail.image,
        status=detail.state.status,
        state=state,
        created=parse_engine_timestamp(detail.created) or 0.0,
        started_at=parse_engine_timestamp(detail.state.started_at),
        ports=ports_from_detail(detail),
        labels=labels,
        project_name=project_name,
        service_name=service_name,
        update_strategy=update_strategy,
        actions=get_container_actions(state, update_strategy),
        restart_count=detail.restart_count or 0,
        health=health_from_detail(detail),
        exit_code=detail.state.exit_code,
        env=parse_env(detail.config.env),
        mounts=normalize_mounts(detail.mounts),
        networks=normalize_networks(detail.network_settings),
    )


class ContainerService:
    """Container operations over the Engine adapter."""

    def __init__(self, engine: EngineClient, inspect_concurrency: int = 10):
        self.engine = engine
        self.inspect_concurrency = inspect_concurrency

    async def list_containers(self, all: bool = True, include_health: bool = False) -> List[Container]:
        """
        List containers.

        With include_health, each container costs one extra inspect call;
        inspects run with bounded concurrency and a failed one degrades that
        container to default values instead of failing the list.
        """
        raw_containers = await self.engine.list_containers(all=all)

        to_inspect = [
            c for c in raw_containers
            if include_health or c.image.startswith(DIGEST_PREFIX)
        ]
        details = await self._inspect_many(c.id for c in to_inspect)

        containers = []
        for raw in raw_containers:
            detail = details.get(raw.id)
            container = container_from_summary(raw, detail)
            if include_health and detail is None:
                container.restart_count = 0
            containers.append(container)
        return containers

    async def _inspect_many(self, ids: Iterable[str]) -> Dict[str, RawContainerDetail]:
        semaphore = asyncio.Semaphore(self.inspect_concurrency)

        async def inspect(container_id: str) -> Tuple[str, Optional[RawContainerDetail]]:
            async with semaphore:
                try:
                    return container_id, await self.engine.inspect_container(container_id)
                except EngineError as e:
                    logger.warning(f"Failed to inspect container {container_id}: {e}")
                    return container_id, None

        results = await asyncio.gather(*(inspect(i) for i in ids))
        return {container_id: detail for container_id, detail in results if detail is not None}

    async def get_container(self, container_id: str) -> Optional[Container]:
        detail = await self.engine.inspect_container(container_id)
        if detail is None:
            return None
        return container_from_detail(detail)

    async def start_container(self, container_id: str) -> None:
        await self.engine.start_container(container_id)

    async def stop_container(self, container_id: str, timeout: Optional[int] = None) -> None:
        await self.engine.stop_container(container_id, timeout=timeout)

    async def restart_container(self, container_id: str) -> None:
        await self.engine.restart_container(container_id)

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        await self.engine.remove_container(container_id, force=force)

    async def get_stats(self, container_id: str) -> ContainerStats:
        raw = await self.engine.container_stats(container_id)
        return stats_from_snapshot(raw)

    async def stream_logs(
        self,
        container_id: str,
        follow: bool = True,
        tail: Optional[int] = 100,
        since: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> LogStream:
        return await self.engine.container_logs(
            container_id,
            follow=follow,
            tail=tail,
            since=since,
            timestamps=True,
            token=token,
        )

    async def prune(self) -> ContainerPruneResult:
        raw = await self.engine.prune_containers()
        return ContainerPruneResult(
            containers_deleted=len(raw.containers_deleted or []),
            space_reclaimed=raw.space_reclaimed,
        )
