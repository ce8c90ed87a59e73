"""Network-related Pydantic models."""

from typing import Dict, List, Optional

from pydantic import Field

from stackyard.models.common import CamelModel

BUILTIN_NETWORKS = frozenset({"bridge", "host", "none"})


class NetworkIpam(CamelModel):
    subnet: Optional[str] = None
    gateway: Optional[str] = None


class NetworkContainer(CamelModel):
    id: str
    name: str = ""
    ipv4_address: str = ""
    mac_address: str = ""


class NetworkActions(CamelModel):
    can_delete: bool


class DockerNetwork(CamelModel):
    """Read projection of one Engine network."""

    id: str
    name: str
    driver: str = "unknown"
    scope: str = "local"
    internal: bool = False
    attachable: bool = False
    ipam: Optional[NetworkIpam] = None
    container_count: int = 0
    # Only populated on detail view
    containers: List[NetworkContainer] = Field(default_factory=list)
    options: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    created: str = ""
    actions: NetworkActions


class NetworkCreate(CamelModel):
    """Request body for creating a network."""

    name: str
    driver: str = "bridge"
    subnet: Optional[str] = None
    gateway: Optional[str] = None


class NetworkPruneResult(CamelModel):
    networks_deleted: List[str] = Field(default_factory=list)
