"""Network normalization and management."""

import asyncio
import logging
from collections import Counter
from typing import Dict, List, Optional

from stackyard.models.engine import RawContainerSummary, RawNetwork
from stackyard.models.network import (
    BUILTIN_NETWORKS,
    DockerNetwork,
    NetworkActions,
    NetworkContainer,
    NetworkCreate,
    NetworkIpam,
    NetworkPruneResult,
)
from stackyard.services.engine import EngineClient

logger = logging.getLogger(__name__)


def is_builtin_network(name: str) -> bool:
    return name in BUILTIN_NETWORKS


def count_network_containers(containers: List[RawContainerSummary]) -> Counter:
    """Count containers per attached network name."""
    counts: Counter = Counter()
    for container in containers:
        settings = container.network_settings
        if settings and settings.networks:
            counts.update(settings.networks.keys())
    return counts


def network_ipam(raw: RawNetwork) -> Optional[NetworkIpam]:
    configs = raw.ipam.config if raw.ipam else None
    if not configs:
        return None
    return NetworkIpam(subnet=configs[0].subnet, gateway=configs[0].gateway)


def normalize_network(
    raw: RawNetwork,
    container_count: Optional[int] = None,
    include_containers: bool = False,
) -> DockerNetwork:
    """
    Build a DockerNetwork.

    The list view passes a container count computed from the container
    list; the detail view uses the network's own Containers map.
    """
    containers = []
    if include_containers:
        containers = [
            NetworkContainer(
                id=container_id,
                name=info.name,
                ipv4_address=info.ipv4_address,
                mac_address=info.mac_address,
            )
            for container_id, info in (raw.containers or {}).items()
        ]
        container_count = len(containers)
    container_count = container_count or 0

    return DockerNetwork(
        id=raw.id,
        name=raw.name,
        driver=raw.driver or "unknown",
        scope=raw.scope or "local",
        internal=raw.internal,
        attachable=raw.attachable,
        ipam=network_ipam(raw),
        container_count=container_count,
        containers=containers,
        options=raw.options or {},
        labels=raw.labels or {},
        created=raw.created or "",
        actions=NetworkActions(
            can_delete=not is_builtin_network(raw.name) and container_count == 0
        ),
    )


def network_config(request: NetworkCreate) -> Dict:
    config: Dict = {"Name": request.name, "Driver": request.driver}
    if request.subnet or request.gateway:
        ipam_config = {}
        if request.subnet:
            ipam_config["Subnet"] = request.subnet
        if request.gateway:
            ipam_config["Gateway"] = request.gateway
        config["IPAM"] = {"Config": [ipam_config]}
    return config


class NetworkService:
    """Network operations over the Engine adapter."""

    def __init__(self, engine: EngineClient):
        self.engine = engine

    async def list_networks(self) -> List[DockerNetwork]:
        networks, containers = await asyncio.gather(
            self.engine.list_networks(),
            self.engine.list_containers(all=True),
        )
        counts = count_network_containers(containers)
        return [normalize_network(raw, counts.get(raw.name, 0)) for raw in networks]

    async def get_network(self, network_id: str) -> Optional[DockerNetwork]:
        raw = await self.engine.inspect_network(network_id)
        if raw is None:
            return None
        return normalize_network(raw, include_containers=True)

    async def create_network(self, request: NetworkCreate) -> None:
        await self.engine.create_network(network_config(request))

    async def remove_network(self, network_id: str) -> None:
        await self.engine.remove_network(network_id)

    async def prune(self, long_running: bool = False) -> NetworkPruneResult:
        raw = await self.engine.prune_networks(long_running=long_running)
        return NetworkPruneResult(networks_deleted=raw.networks_deleted or [])
