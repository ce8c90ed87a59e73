"""Compose project endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from stackyard.core.dependencies import get_compose_service, get_project_scanner
from stackyard.models.project import ComposeResult, Project, ProjectCreate, ProjectFile
from stackyard.services.compose import ComposeService
from stackyard.services.projects import ProjectScanner

logger = logging.getLogger(__name__)
router = APIRouter()

NOT_FOUND = "Project not found"


def _checked(name: str, result: ComposeResult) -> ComposeResult:
    if not result.success and result.error == NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {name} not found",
        )
    return result


@router.get("", response_model=List[Project])
async def list_projects(scanner: ProjectScanner = Depends(get_project_scanner)):
    """List projects found under the projects directory."""
    return await scanner.scan_projects()


@router.post("", response_model=ComposeResult, status_code=status.HTTP_201_CREATED)
async def create_project(
    request: ProjectCreate,
    compose: ComposeService = Depends(get_compose_service),
):
    """
    Create a project directory with a compose file and optional .env.

    Returns 409 if the project already exists.
    """
    return await compose.create_project(
        request.name, request.compose_content, env_content=request.env_content
    )


@router.get("/{name}", response_model=Project)
async def get_project(name: str, scanner: ProjectScanner = Depends(get_project_scanner)):
    project = await scanner.get_project(name)
    if not project:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {name} not found",
        )
    return project


@router.delete("/{name}", response_model=ComposeResult)
async def delete_project(
    name: str,
    remove_volumes: bool = Query(False, alias="removeVolumes"),
    compose: ComposeService = Depends(get_compose_service),
):
    """Bring the project down and remove its directory."""
    return _checked(name, await compose.delete_project(name, remove_volumes=remove_volumes))


@router.get("/{name}/compose", response_model=ProjectFile)
async def get_compose_file(name: str, scanner: ProjectScanner = Depends(get_project_scanner)):
    content = await scanner.read_compose_file(name)
    if content is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {name} not found",
        )
    return ProjectFile(content=content)


@router.put("/{name}/compose", response_model=ComposeResult)
async def save_compose_file(
    name: str,
    request: ProjectFile,
    compose: ComposeService = Depends(get_compose_service),
):
    return _checked(name, await compose.save_compose_file(name, request.content))


@router.get("/{name}/env", response_model=ProjectFile)
async def get_env_file(name: str, scanner: ProjectScanner = Depends(get_project_scanner)):
    """Contents of the project's .env file; empty when there is none."""
    project = await scanner.get_project(name)
    if not project:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {name} not found",
        )
    content = await scanner.read_env_file(name)
    return ProjectFile(content=content or "")


@router.put("/{name}/env", response_model=ComposeResult)
async def save_env_file(
    name: str,
    request: ProjectFile,
    scanner: ProjectScanner = Depends(get_project_scanner),
    compose: ComposeService = Depends(get_compose_service),
):
    project = await scanner.get_project(name)
    if not project:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {name} not found",
        )
    return await compose.save_env_file(name, request.content)


@router.post("/{name}/up", response_model=ComposeResult)
async def project_up(
    name: str,
    build: bool = Query(False),
    pull: bool = Query(False),
    service: Optional[str] = Query(None),
    compose: ComposeService = Depends(get_compose_service),
):
    """Run ``docker compose up -d`` for the whole project or a single service."""
    if service:
        result = await compose.up_service(name, service)
    else:
        result = await compose.up(name, build=build, pull=pull)
    return _checked(name, result)


@router.post("/{name}/down", response_model=ComposeResult)
async def project_down(
    name: str,
    volumes: bool = Query(False),
    remove_orphans: bool = Query(False, alias="removeOrphans"),
    compose: ComposeService = Depends(get_compose_service),
):
    result = await compose.down(name, volumes=volumes, remove_orphans=remove_orphans)
    return _checked(name, result)


@router.post("/{name}/pull", response_model=ComposeResult)
async def project_pull(
    name: str,
    service: Optional[str] = Query(None),
    compose: ComposeService = Depends(get_compose_service),
):
    return _checked(name, await compose.pull(name, service=service))
