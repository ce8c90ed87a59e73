"""Image-related Pydantic models."""

from typing import Dict, List, Optional

from pydantic import Field

from stackyard.models.common import CamelModel


class DockerImage(CamelModel):
    """Image summary for list views."""

    id: str
    # First tag, else repository from the first digest, else the short id
    name: str
    tags: List[str] = Field(default_factory=list)
    repository: Optional[str] = None
    size: int = 0
    created: float = 0
    digest: Optional[str] = None


class ImageHealthcheck(CamelModel):
    test: List[str]


class ImageConfig(CamelModel):
    """Parsed image configuration."""

    working_dir: Optional[str] = None
    entrypoint: Optional[List[str]] = None
    cmd: Optional[List[str]] = None
    exposed_ports: List[str] = Field(default_factory=list)
    volumes: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    user: Optional[str] = None
    healthcheck: Optional[ImageHealthcheck] = None
    labels: Dict[str, str] = Field(default_factory=dict)


class ImageContainer(CamelModel):
    """A container created from an image."""

    id: str
    name: str


class DockerImageDetail(DockerImage):
    """Image detail with parsed config and the containers using it."""

    architecture: Optional[str] = None
    os: Optional[str] = None
    author: Optional[str] = None
    config: Optional[ImageConfig] = None
    containers: List[ImageContainer] = Field(default_factory=list)


class ImagePruneResult(CamelModel):
    """Result of an image prune."""

    images_deleted: int = 0
    space_reclaimed: int = 0


class ImagePull(CamelModel):
    """Request body for pulling an image."""

    name: str = Field(min_length=1)


class ImagePullResult(CamelModel):
    """A completed pull and the Engine's progress lines."""

    message: str
    output: List[str] = Field(default_factory=list)
