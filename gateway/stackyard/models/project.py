"""Compose project Pydantic models."""

from enum import Enum
from typing import List, Optional

from pydantic import Field

from stackyard.models.common import CamelModel
from stackyard.models.container import PortMapping


class ProjectStatus(str, Enum):
    """Aggregate project status."""

    RUNNING = "running"
    PARTIAL = "partial"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class ServiceStatus(str, Enum):
    """Status of one declared compose service."""

    RUNNING = "running"
    RESTARTING = "restarting"
    EXITED = "exited"
    UNKNOWN = "unknown"


class ProjectService(CamelModel):
    """A declared service cross-referenced with its live container."""

    name: str
    image: Optional[str] = None
    # Image ID the container was created with (sha256:...)
    image_id: Optional[str] = None
    container_id: Optional[str] = None
    container_name: Optional[str] = None
    status: ServiceStatus = ServiceStatus.UNKNOWN
    ports: Optional[List[PortMapping]] = None
    has_build: bool = False


class Project(CamelModel):
    """A compose project discovered under the projects directory."""

    name: str
    path: str
    compose_file: str
    status: ProjectStatus = ProjectStatus.UNKNOWN
    services: List[ProjectService] = Field(default_factory=list)


class ProjectCreate(CamelModel):
    """Request body for creating a project."""

    name: str
    compose_content: str
    env_content: Optional[str] = None


class ComposeResult(CamelModel):
    """Outcome of a compose command or project file operation."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None


class ContainerUpdateResult(ComposeResult):
    """Outcome of pulling a compose container's image and recreating it."""

    restarted: bool = False


class ProjectFile(CamelModel):
    """Raw text of a project's compose or env file."""

    content: str
