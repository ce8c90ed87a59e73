"""Container-related Pydantic models."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field

from stackyard.models.common import CamelModel

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"


class ContainerState(str, Enum):
    """Container lifecycle state as reported by the Engine."""

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    DEAD = "dead"
    REMOVING = "removing"


class UpdateStrategy(str, Enum):
    """How a container can be updated.

    ``compose`` containers are updated through compose pull + up;
    ``standalone`` containers need a manual update.
    """

    COMPOSE = "compose"
    STANDALONE = "standalone"


class HealthStatus(str, Enum):
    """Container health check status."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    NONE = "none"


class PortMapping(CamelModel):
    """A container port and its optional host binding."""

    container: int
    host: Optional[int] = None
    protocol: str = "tcp"


class ContainerMount(CamelModel):
    """A bind, volume or tmpfs mount."""

    type: str
    name: Optional[str] = None
    source: str = ""
    destination: str = ""
    mode: str = ""
    rw: bool = True


class ContainerNetwork(CamelModel):
    """A network attachment."""

    name: str
    ip_address: str = ""
    gateway: str = ""
    mac_address: str = ""


class ContainerActions(CamelModel):
    """Actions available for a container in its current state."""

    can_start: bool
    can_stop: bool
    can_restart: bool
    can_update: bool
    can_view_logs: bool
    can_exec: bool


class ContainerHealth(CamelModel):
    """Health check summary."""

    status: HealthStatus = HealthStatus.NONE
    failing_streak: Optional[int] = None


class Container(CamelModel):
    """Read projection of one Engine container."""

    id: str
    name: str
    image: str
    image_id: str
    status: str
    state: ContainerState
    created: float
    started_at: Optional[float] = None
    ports: List[PortMapping] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    project_name: Optional[str] = None
    service_name: Optional[str] = None
    update_strategy: UpdateStrategy = UpdateStrategy.STANDALONE
    actions: ContainerActions
    restart_count: Optional[int] = None
    health: Optional[ContainerHealth] = None
    exit_code: Optional[int] = None
    env: Dict[str, str] = Field(default_factory=dict)
    mounts: List[ContainerMount] = Field(default_factory=list)
    networks: List[ContainerNetwork] = Field(default_factory=list)


class ContainerStats(CamelModel):
    """Container resource statistics derived from one stats snapshot."""

    cpu_percent: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    memory_percent: float = 0.0
    network_rx: int = 0
    network_tx: int = 0
    block_read: int = 0
    block_write: int = 0


class ContainerPruneResult(CamelModel):
    """Result of pruning stopped containers."""

    containers_deleted: int = 0
    space_reclaimed: int = 0
