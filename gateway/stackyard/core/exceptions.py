"""Exceptions raised by the orchestration layer."""

from typing import Optional


class StackyardError(Exception):
    """Base exception for Stackyard errors."""


class EngineError(StackyardError):
    """A request to the Docker Engine failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class EngineUnreachableError(EngineError):
    """The Docker Engine could not be reached (refused, timed out, ...)."""


class InvalidEndpointError(StackyardError):
    """The configured Engine endpoint string cannot be parsed."""


class InvalidProjectNameError(StackyardError):
    """Project name contains characters outside [A-Za-z0-9_-]."""

    def __init__(self, name: str):
        super().__init__(f"Invalid project name: {name!r}")
        self.name = name


class ManifestError(StackyardError):
    """A compose manifest could not be read or parsed."""


class ProjectExistsError(StackyardError):
    """A project directory with this name already exists."""

    def __init__(self, name: str):
        super().__init__(f'Project "{name}" already exists')
        self.name = name


class ProjectNotFoundError(StackyardError):
    """No project directory with a compose manifest exists for this name."""

    def __init__(self, name: str):
        super().__init__(f"Project not found: {name}")
        self.name = name


class NotComposeManagedError(StackyardError):
    """The container carries no compose project/service labels."""

    def __init__(self, container_id: str):
        super().__init__(f"Container {container_id} is not managed by compose")
        self.container_id = container_id
