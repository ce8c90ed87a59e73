"""Schemas for raw Docker Engine API payloads.

Every payload that comes back from the Engine is validated against one of
these models inside the engine adapter, so normalizers never touch loosely
typed dictionaries. Only the fields the normalizers use are declared; all
other keys are ignored.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_pascal

_FRACTION = re.compile(r"\.(\d+)")


def parse_engine_timestamp(value: Optional[str]) -> Optional[float]:
    """Convert an Engine RFC 3339 timestamp to epoch seconds.

    The Engine reports nanosecond precision and uses the zero time
    ``0001-01-01T00:00:00Z`` for "never"; both are handled here.
    """
    if not value or value.startswith("0001-01-01"):
        return None
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6], value, count=1)
    text = text.replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text).timestamp()
    except ValueError:
        return None


class EngineModel(BaseModel):
    """Base for PascalCase Engine objects."""

    model_config = ConfigDict(
        alias_generator=to_pascal, populate_by_name=True, extra="ignore"
    )


class StatsModel(BaseModel):
    """Base for the snake_case stats document."""

    model_config = ConfigDict(extra="ignore")


# Containers


class RawPort(EngineModel):
    ip: Optional[str] = Field(default=None, alias="IP")
    private_port: int
    public_port: Optional[int] = None
    type: str = "tcp"


class RawMountPoint(EngineModel):
    type: str = "volume"
    name: Optional[str] = None
    source: str = ""
    destination: str = ""
    driver: Optional[str] = None
    mode: str = ""
    rw: bool = Field(default=True, alias="RW")


class RawEndpoint(EngineModel):
    ip_address: str = Field(default="", alias="IPAddress")
    gateway: str = ""
    mac_address: str = ""


class RawNetworkSettings(EngineModel):
    networks: Optional[Dict[str, RawEndpoint]] = None


class RawContainerSummary(EngineModel):
    """One entry of ``GET /containers/json``."""

    id: str
    names: Optional[List[str]] = None
    image: str = ""
    image_id: str = Field(default="", alias="ImageID")
    created: int = 0
    state: str = ""
    status: str = ""
    ports: Optional[List[RawPort]] = None
    labels: Optional[Dict[str, str]] = None
    mounts: Optional[List[RawMountPoint]] = None
    network_settings: Optional[RawNetworkSettings] = None
    size_rw: Optional[int] = None


class RawHealth(EngineModel):
    status: Optional[str] = None
    failing_streak: Optional[int] = None


class RawContainerState(EngineModel):
    status: str = ""
    running: bool = False
    exit_code: Optional[int] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    health: Optional[RawHealth] = None


class RawContainerConfig(EngineModel):
    image: Optional[str] = None
    env: Optional[List[str]] = None
    labels: Optional[Dict[str, str]] = None
    exposed_ports: Optional[Dict[str, Any]] = None


class RawPortBinding(EngineModel):
    host_ip: Optional[str] = None
    host_port: Optional[str] = None


class RawHostConfig(EngineModel):
    port_bindings: Optional[Dict[str, Optional[List[RawPortBinding]]]] = None


class RawContainerDetail(EngineModel):
    """Payload of ``GET /containers/{id}/json``."""

    id: str
    name: str = ""
    image: str = ""
    created: Optional[str] = None
    restart_count: Optional[int] = None
    state: RawContainerState = Field(default_factory=RawContainerState)
    config: RawContainerConfig = Field(default_factory=RawContainerConfig)
    host_config: Optional[RawHostConfig] = None
    mounts: Optional[List[RawMountPoint]] = None
    network_settings: Optional[RawNetworkSettings] = None


# Stats


class RawCpuUsage(StatsModel):
    total_usage: int = 0
    percpu_usage: Optional[List[int]] = None


class RawCpuStats(StatsModel):
    cpu_usage: RawCpuUsage = Field(default_factory=RawCpuUsage)
    system_cpu_usage: int = 0
    online_cpus: Optional[int] = None


class RawMemoryStats(StatsModel):
    usage: Optional[int] = None
    limit: Optional[int] = None


class RawNetworkCounters(StatsModel):
    rx_bytes: int = 0
    tx_bytes: int = 0


class RawBlkioEntry(StatsModel):
    op: str = ""
    value: int = 0


class RawBlkioStats(StatsModel):
    io_service_bytes_recursive: Optional[List[RawBlkioEntry]] = None


class RawStats(StatsModel):
    """Payload of ``GET /containers/{id}/stats?stream=false``."""

    read: Optional[str] = None
    cpu_stats: RawCpuStats = Field(default_factory=RawCpuStats)
    precpu_stats: RawCpuStats = Field(default_factory=RawCpuStats)
    memory_stats: RawMemoryStats = Field(default_factory=RawMemoryStats)
    networks: Optional[Dict[str, RawNetworkCounters]] = None
    blkio_stats: RawBlkioStats = Field(default_factory=RawBlkioStats)


# Images


class RawImageSummary(EngineModel):
    """One entry of ``GET /images/json``."""

    id: str
    repo_tags: Optional[List[str]] = None
    repo_digests: Optional[List[str]] = None
    size: int = 0
    created: int = 0
    containers: Optional[int] = None


class RawHealthcheck(EngineModel):
    test: Optional[List[str]] = None


class RawImageConfig(EngineModel):
    working_dir: Optional[str] = None
    entrypoint: Optional[List[str]] = None
    cmd: Optional[List[str]] = None
    exposed_ports: Optional[Dict[str, Any]] = None
    volumes: Optional[Dict[str, Any]] = None
    env: Optional[List[str]] = None
    user: Optional[str] = None
    healthcheck: Optional[RawHealthcheck] = None
    labels: Optional[Dict[str, str]] = None


class RawImageDetail(EngineModel):
    """Payload of ``GET /images/{name}/json``."""

    id: str
    repo_tags: Optional[List[str]] = None
    repo_digests: Optional[List[str]] = None
    size: int = 0
    created: Optional[str] = None
    architecture: Optional[str] = None
    os: Optional[str] = None
    author: Optional[str] = None
    config: Optional[RawImageConfig] = None


# Networks


class RawIpamConfig(EngineModel):
    subnet: Optional[str] = None
    gateway: Optional[str] = None


class RawIpam(EngineModel):
    config: Optional[List[RawIpamConfig]] = None


class RawNetworkContainer(EngineModel):
    name: str = ""
    ipv4_address: str = Field(default="", alias="IPv4Address")
    mac_address: str = ""


class RawNetwork(EngineModel):
    """Entry of ``GET /networks`` and payload of ``GET /networks/{id}``."""

    id: str
    name: str
    driver: Optional[str] = None
    scope: Optional[str] = None
    internal: bool = False
    attachable: bool = False
    ipam: Optional[RawIpam] = Field(default=None, alias="IPAM")
    containers: Optional[Dict[str, RawNetworkContainer]] = None
    options: Optional[Dict[str, str]] = None
    labels: Optional[Dict[str, str]] = None
    created: Optional[str] = None


# Volumes


class RawVolume(EngineModel):
    """Entry of ``GET /volumes`` and payload of ``GET /volumes/{name}``."""

    name: str
    driver: str = "local"
    mountpoint: str = ""
    scope: Optional[str] = None
    labels: Optional[Dict[str, str]] = None
    options: Optional[Dict[str, str]] = None
    created_at: Optional[str] = None


class RawVolumeList(EngineModel):
    volumes: Optional[List[RawVolume]] = None
    warnings: Optional[List[str]] = None


# System


class RawSystemInfo(EngineModel):
    """Payload of ``GET /info``."""

    server_version: str = ""
    operating_system: str = ""
    architecture: str = ""
    kernel_version: str = ""
    driver: str = ""
    docker_root_dir: str = ""
    containers: int = 0
    containers_running: int = 0
    containers_paused: int = 0
    containers_stopped: int = 0
    images: int = 0
    mem_total: int = 0
    ncpu: int = Field(default=0, alias="NCPU")
    warnings: Optional[List[str]] = None


class RawDfImage(EngineModel):
    size: int = 0
    shared_size: int = 0
    containers: int = 0


class RawDfContainer(EngineModel):
    size_rw: Optional[int] = None
    size_root_fs: Optional[int] = None


class RawDfVolumeUsage(EngineModel):
    size: int = 0
    ref_count: int = 0


class RawDfVolume(EngineModel):
    name: Optional[str] = None
    usage_data: Optional[RawDfVolumeUsage] = None


class RawDfBuildCache(EngineModel):
    size: int = 0
    in_use: bool = False


class RawDiskUsage(EngineModel):
    """Payload of ``GET /system/df``."""

    images: Optional[List[RawDfImage]] = None
    containers: Optional[List[RawDfContainer]] = None
    volumes: Optional[List[RawDfVolume]] = None
    build_cache: Optional[List[RawDfBuildCache]] = None


class RawPruneResult(EngineModel):
    """Payload of any ``POST /<resource>/prune``."""

    containers_deleted: Optional[List[str]] = None
    images_deleted: Optional[List[Dict[str, str]]] = None
    networks_deleted: Optional[List[str]] = None
    volumes_deleted: Optional[List[str]] = None
    caches_deleted: Optional[List[str]] = None
    space_reclaimed: int = 0
