"""Dependency injection providers."""

from dataclasses import dataclass

from fastapi.requests import HTTPConnection

from stackyard.core.config import Settings
from stackyard.services.compose import ComposeRunner, ComposeService
from stackyard.services.containers import ContainerService
from stackyard.services.engine import EngineClient
from stackyard.services.images import ImageService
from stackyard.services.networks import NetworkService
from stackyard.services.projects import PathMapper, ProjectScanCache, ProjectScanner
from stackyard.services.system import SystemService
from stackyard.services.volumes import VolumeService


@dataclass
class Services:
    """Everything the routes need, built once per application."""

    engine: EngineClient
    containers: ContainerService
    images: ImageService
    networks: NetworkService
    volumes: VolumeService
    system: SystemService
    scanner: ProjectScanner
    compose: ComposeService


def build_services(settings: Settings, engine: EngineClient) -> Services:
    """Wire the service graph around an Engine client."""
    containers = ContainerService(engine, inspect_concurrency=settings.inspect_concurrency)
    paths = PathMapper(settings.projects_dir, settings.host_projects_dir)
    scanner = ProjectScanner(
        paths,
        containers,
        cache=ProjectScanCache(ttl=settings.project_scan_ttl),
        concurrency=settings.inspect_concurrency,
    )
    runner = ComposeRunner(
        paths,
        timeout=settings.compose_timeout,
        max_output=settings.compose_max_output,
    )
    return Services(
        engine=engine,
        containers=containers,
        images=ImageService(engine),
        networks=NetworkService(engine),
        volumes=VolumeService(engine),
        system=SystemService(engine, settings),
        scanner=scanner,
        compose=ComposeService(scanner, runner, containers, log_tail=settings.log_tail),
    )


def get_services(connection: HTTPConnection) -> Services:
    return connection.app.state.services


def get_engine(connection: HTTPConnection) -> EngineClient:
    return get_services(connection).engine


def get_container_service(connection: HTTPConnection) -> ContainerService:
    return get_services(connection).containers


def get_image_service(connection: HTTPConnection) -> ImageService:
    return get_services(connection).images


def get_network_service(connection: HTTPConnection) -> NetworkService:
    return get_services(connection).networks


def get_volume_service(connection: HTTPConnection) -> VolumeService:
    return get_services(connection).volumes


def get_system_service(connection: HTTPConnection) -> SystemService:
    return get_services(connection).system


def get_project_scanner(connection: HTTPConnection) -> ProjectScanner:
    return get_services(connection).scanner


def get_compose_service(connection: HTTPConnection) -> ComposeService:
    return get_services(connection).compose
