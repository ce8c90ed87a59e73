"""Docker Compose process management and project operations."""

import asyncio
import codecs
import inspect
import logging
import os
import shutil
import signal
import time
from dataclasses import dataclass
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Union,
)

from prometheus_client import Counter, Histogram

from stackyard.core.exceptions import (
    ManifestError,
    NotComposeManagedError,
    ProjectExistsError,
    ProjectNotFoundError,
    StackyardError,
)
from stackyard.models.container import ContainerState
from stackyard.models.project import ComposeResult, ContainerUpdateResult, Project
from stackyard.services.containers import ContainerService
from stackyard.services.logs import CancellationToken, LogStream, ProjectLogStream
from stackyard.services.preprocess import CleanupCallback, preprocess
from stackyard.services.projects import (
    COMPOSE_FILENAMES,
    ENV_FILENAME,
    PathMapper,
    ProjectScanner,
    require_valid_project_name,
)

logger = logging.getLogger(__name__)

SYSTEM_ENV_VARS = ("PATH", "HOME", "USER", "SHELL", "TERM", "LANG", "LC_ALL")
DOCKER_ENV_VARS = (
    "DOCKER_HOST",
    "DOCKER_TLS_VERIFY",
    "DOCKER_CERT_PATH",
    "DOCKER_CONFIG",
    "DOCKER_BUILDKIT",
)
COMPOSE_ENV_PREFIX = "COMPOSE_"

KILL_GRACE_SECONDS = 5
READ_SIZE = 4096
ABORTED = "Command aborted"

OutputCallback = Callable[[str], Union[None, Awaitable[None]]]

COMPOSE_COMMANDS = Counter(
    "stackyard_compose_commands_total",
    "Compose commands run, by subcommand and outcome",
    ["command", "outcome"],
)
COMPOSE_DURATION = Histogram(
    "stackyard_compose_command_seconds",
    "Wall time of compose commands",
    ["command"],
)


def compose_environment(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment for compose subprocesses: an allowlist, never the whole process env."""
    environ = os.environ if environ is None else environ
    env = {}
    for key in SYSTEM_ENV_VARS + DOCKER_ENV_VARS:
        if environ.get(key):
            env[key] = environ[key]
    for key, value in environ.items():
        if key.startswith(COMPOSE_ENV_PREFIX):
            env[key] = value
    return env


async def terminate_process(process: asyncio.subprocess.Process, grace: float = KILL_GRACE_SECONDS) -> None:
    """SIGTERM, then SIGKILL if the process outlives the grace period."""
    if process.returncode is not None:
        return
    try:
        process.send_signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
    except ProcessLookupError:
        pass


@dataclass
class PreparedCommand:
    """Leading compose arguments plus the cleanup for any translated manifest."""

    args: List[str]
    cleanup: Optional[CleanupCallback] = None

    async def release(self) -> None:
        if self.cleanup is None:
            return
        try:
            await self.cleanup()
        except Exception as e:
            logger.warning(f"Compose cleanup failed: {e}")


class _OutputBuffer:
    """Captured output, capped; chunks past the cap are dropped."""

    def __init__(self, limit: int):
        self.limit = limit
        self.size = 0
        self.parts: List[str] = []

    def append(self, text: str) -> None:
        if self.size < self.limit:
            self.parts.append(text)
            self.size += len(text)

    def text(self) -> str:
        return "".join(self.parts)


class ComposeStream:
    """Async iterator over the combined stdout/stderr lines of one compose run.

    ``result`` is set once the iterator is exhausted or closed. Closing it
    early terminates the process; the translated manifest is removed on
    every path.
    """

    def __init__(
        self,
        runner: "ComposeRunner",
        project_path: str,
        args: List[str],
        compose_file: Optional[str] = None,
    ):
        self.runner = runner
        self.project_path = project_path
        self.args = args
        self.compose_file = compose_file
        self.result: Optional[ComposeResult] = None
        self._output = _OutputBuffer(runner.max_output)
        self._lines = self._run()

    def __aiter__(self) -> "ComposeStream":
        return self

    async def __anext__(self) -> str:
        return await self._lines.__anext__()

    async def aclose(self) -> None:
        await self._lines.aclose()
        if self.result is None:
            self.result = self._aborted()

    def _aborted(self) -> ComposeResult:
        return ComposeResult(success=False, output=self._output.text(), error=ABORTED)

    def _observe(self, started: float) -> None:
        command = self.args[0] if self.args else "compose"
        if self.result.success:
            outcome = "success"
        elif self.result.error == ABORTED:
            outcome = "aborted"
        else:
            outcome = "failure"
        COMPOSE_COMMANDS.labels(command=command, outcome=outcome).inc()
        COMPOSE_DURATION.labels(command=command).observe(time.monotonic() - started)

    async def _run(self) -> AsyncIterator[str]:
        try:
            prepared = await self.runner.prepare(self.project_path, self.compose_file)
        except ManifestError as e:
            logger.error(f"Compose manifest rejected: {e}")
            self.result = ComposeResult(success=False, error=str(e))
            return

        command = [self.runner.docker_binary, *prepared.args, *self.args]
        started = time.monotonic()
        process = None
        try:
            logger.debug(f"Running command: {' '.join(command)} (cwd={self.project_path})")
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    # compose writes progress to stderr
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=self.project_path,
                    env=compose_environment(self.runner.environ),
                )
            except OSError as e:
                logger.error(f"Failed to spawn compose: {e}")
                self.result = ComposeResult(success=False, error=str(e))
                return

            timed_out = False
            lines = self._read_lines(process)
            try:
                async for line in lines:
                    if line is None:
                        timed_out = True
                        break
                    yield line
            finally:
                await lines.aclose()

            if timed_out:
                logger.warning(f"Command timed out, killing process: {' '.join(command)}")
                await terminate_process(process)
            exit_code = await process.wait()
            self.result = self._finished(exit_code, timed_out)
        finally:
            if process is not None and process.returncode is None:
                logger.info(f"Command cancelled: {' '.join(command)}")
                await terminate_process(process)
            if self.result is None:
                self.result = self._aborted()
            await prepared.release()
            self._observe(started)

    async def _read_lines(self, process: asyncio.subprocess.Process) -> AsyncIterator[Optional[str]]:
        """Yield complete lines; a trailing None means the deadline passed."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.runner.timeout
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                yield None
                return
            try:
                chunk = await asyncio.wait_for(process.stdout.read(READ_SIZE), timeout=remaining)
            except asyncio.TimeoutError:
                yield None
                return
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self._output.append(text)
                pending += text
                *lines, pending = pending.split("\n")
                for line in lines:
                    yield line
            if not chunk:
                break

        if pending:
            yield pending

    def _finished(self, exit_code: int, timed_out: bool) -> ComposeResult:
        output = self._output.text()
        if timed_out:
            error = f"Command timed out after {self.runner.timeout:g}s"
        elif exit_code != 0:
            logger.warning(f"Command failed with exit code {exit_code}: {output[:500]}")
            error = output
        else:
            logger.debug("Command completed")
            error = None
        return ComposeResult(
            success=exit_code == 0 and not timed_out,
            output=output,
            error=error,
            exit_code=exit_code,
        )


class ComposeRunner:
    """Spawns ``docker compose`` with a filtered environment."""

    def __init__(
        self,
        paths: PathMapper,
        timeout: float = 300,
        max_output: int = 10 * 1024 * 1024,
        docker_binary: str = "docker",
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.paths = paths
        self.timeout = timeout
        self.max_output = max_output
        self.docker_binary = docker_binary
        self.environ = environ

    async def prepare(self, project_path: str, compose_file: Optional[str] = None) -> PreparedCommand:
        """
        Build the leading ``compose`` arguments for a project.

        When our projects directory differs from the host's, the manifest is
        translated first and compose is pointed at the host project directory.
        """
        host_path = self.paths.to_host_path(project_path)
        effective_file = compose_file
        cleanup = None

        if self.paths.is_mapping_active and compose_file:
            result = await preprocess(compose_file, project_path, self.paths)
            effective_file = result.temp_file
            cleanup = result.cleanup

        args = ["compose"]
        if host_path != project_path:
            if effective_file:
                args.extend(["-f", effective_file])
            env_file = os.path.join(project_path, ENV_FILENAME)
            if await asyncio.to_thread(os.path.exists, env_file):
                args.extend(["--env-file", env_file])
            args.extend(["--project-directory", host_path])

        return PreparedCommand(args=args, cleanup=cleanup)

    def stream(
        self, project_path: str, args: List[str], compose_file: Optional[str] = None
    ) -> ComposeStream:
        return ComposeStream(self, project_path, list(args), compose_file)

    async def run(
        self,
        project_path: str,
        args: List[str],
        compose_file: Optional[str] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        """Run to completion, passing each output line to on_output.

        A failing callback aborts the command.
        """
        stream = self.stream(project_path, args, compose_file)
        try:
            async for line in stream:
                if on_output is None:
                    continue
                try:
                    maybe_awaitable = on_output(line)
                    if inspect.isawaitable(maybe_awaitable):
                        await maybe_awaitable
                except Exception as e:
                    logger.warning(f"Output callback failed, aborting command: {e}")
                    break
        finally:
            await stream.aclose()
        return stream.result


def _not_found() -> ComposeResult:
    return ComposeResult(success=False, error="Project not found")


class ComposeService:
    """Project-level compose operations and project file management."""

    def __init__(
        self,
        scanner: ProjectScanner,
        runner: ComposeRunner,
        containers: ContainerService,
        log_tail: int = 100,
    ):
        self.scanner = scanner
        self.runner = runner
        self.containers = containers
        self.log_tail = log_tail

    @property
    def paths(self) -> PathMapper:
        return self.scanner.paths

    async def _run(
        self,
        project: Project,
        args: List[str],
        on_output: Optional[OutputCallback],
        invalidate: bool,
    ) -> ComposeResult:
        result = await self.runner.run(
            project.path, args, compose_file=project.compose_file, on_output=on_output
        )
        if result.success and invalidate:
            self.scanner.invalidate()
        return result

    async def up(
        self,
        name: str,
        detach: bool = True,
        build: bool = False,
        pull: bool = False,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        project = await self.scanner.get_project(name)
        if project is None:
            return _not_found()
        args = ["up"]
        if detach:
            args.append("-d")
        if build:
            args.append("--build")
        if pull:
            args.extend(["--pull", "always"])
        return await self._run(project, args, on_output, invalidate=True)

    async def down(
        self,
        name: str,
        volumes: bool = False,
        remove_orphans: bool = False,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        project = await self.scanner.get_project(name)
        if project is None:
            return _not_found()
        args = ["down"]
        if volumes:
            args.append("-v")
        if remove_orphans:
            args.append("--remove-orphans")
        return await self._run(project, args, on_output, invalidate=True)

    async def pull(
        self,
        name: str,
        service: Optional[str] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        project = await self.scanner.get_project(name)
        if project is None:
            return _not_found()
        args = ["pull", service] if service else ["pull"]
        return await self._run(project, args, on_output, invalidate=False)

    async def up_service(
        self, name: str, service: str, on_output: Optional[OutputCallback] = None
    ) -> ComposeResult:
        project = await self.scanner.get_project(name)
        if project is None:
            return _not_found()
        return await self._run(project, ["up", "-d", service], on_output, invalidate=True)

    async def update_container(
        self, container_id: str, on_output: Optional[OutputCallback] = None
    ) -> Optional[ContainerUpdateResult]:
        """
        Pull a compose container's image and recreate it if it was running.

        Returns None if the container does not exist. A stopped container
        keeps its state; the new image is used on its next ``up``.
        """
        container = await self.containers.get_container(container_id)
        if container is None:
            return None
        project_name, service_name = container.project_name, container.service_name
        if not project_name or not service_name:
            raise NotComposeManagedError(container_id)

        was_running = container.state == ContainerState.RUNNING
        pulled = await self.pull(project_name, service_name, on_output=on_output)
        if not pulled.success:
            return ContainerUpdateResult(
                success=False,
                output=pulled.output,
                error=pulled.error or "Failed to pull image",
                exit_code=pulled.exit_code,
            )
        if not was_running:
            return ContainerUpdateResult(success=True, output=pulled.output, exit_code=pulled.exit_code)

        recreated = await self.up_service(project_name, service_name, on_output=on_output)
        output = pulled.output + "\n" + recreated.output
        if not recreated.success:
            return ContainerUpdateResult(
                success=False,
                output=output,
                error=recreated.error or "Failed to recreate container",
                exit_code=recreated.exit_code,
            )
        logger.info(f"Updated {project_name}/{service_name}")
        return ContainerUpdateResult(
            success=True, output=output, exit_code=recreated.exit_code, restarted=True
        )

    async def logs(
        self,
        name: str,
        follow: bool = True,
        tail: Optional[int] = None,
        service: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> ProjectLogStream:
        """Merged log stream of the project's containers, prefixed by service."""
        project = await self.scanner.get_project(name)
        if project is None:
            raise ProjectNotFoundError(name)

        services = [
            s for s in project.services
            if s.container_id and (service is None or s.name == service)
        ]
        if not services:
            raise StackyardError(f"No containers found for project {name}")

        token = token or CancellationToken()
        streams: Dict[str, LogStream] = {}
        try:
            for s in services:
                streams[s.name] = await self.containers.stream_logs(
                    s.container_id,
                    follow=follow,
                    tail=self.log_tail if tail is None else tail,
                    token=token,
                )
        except BaseException:
            for stream in streams.values():
                await stream.aclose()
            raise
        return ProjectLogStream(streams)

    async def save_compose_file(self, name: str, content: str) -> ComposeResult:
        project = await self.scanner.get_project(name)
        if project is None:
            return _not_found()
        try:
            await asyncio.to_thread(_write_text, project.compose_file, content)
        except OSError as e:
            return ComposeResult(success=False, error=str(e))
        self.scanner.invalidate()
        return ComposeResult(success=True, output="Compose file saved")

    async def save_env_file(self, name: str, content: str) -> ComposeResult:
        require_valid_project_name(name)
        env_path = os.path.join(self.paths.project_path(name), ENV_FILENAME)
        try:
            await asyncio.to_thread(_write_text, env_path, content)
        except OSError as e:
            return ComposeResult(success=False, error=str(e))
        return ComposeResult(success=True, output="Env file saved")

    async def create_project(
        self, name: str, compose_content: str, env_content: Optional[str] = None
    ) -> ComposeResult:
        require_valid_project_name(name)
        project_path = self.paths.project_path(name)
        try:
            await asyncio.to_thread(
                _create_project_dir, self.paths.projects_dir, project_path, compose_content, env_content
            )
        except FileExistsError as e:
            raise ProjectExistsError(name) from e
        except OSError as e:
            return ComposeResult(success=False, error=str(e))
        self.scanner.invalidate()
        logger.info(f"Created project {name}")
        return ComposeResult(success=True, output=f'Project "{name}" created')

    async def delete_project(
        self,
        name: str,
        remove_volumes: bool = False,
        on_output: Optional[OutputCallback] = None,
    ) -> ComposeResult:
        project = await self.scanner.get_project(name)
        if project is None:
            return _not_found()

        down = await self.down(name, volumes=remove_volumes, remove_orphans=True, on_output=on_output)
        if not down.success:
            return down

        try:
            await asyncio.to_thread(shutil.rmtree, project.path)
        except OSError as e:
            return ComposeResult(success=False, error=str(e))
        self.scanner.invalidate()
        logger.info(f"Deleted project {name}")
        return ComposeResult(success=True, output=f'Project "{name}" deleted')


def _write_text(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)


def _create_project_dir(
    projects_dir: str, project_path: str, compose_content: str, env_content: Optional[str]
) -> None:
    os.makedirs(projects_dir, exist_ok=True)
    os.mkdir(project_path)
    _write_text(os.path.join(project_path, COMPOSE_FILENAMES[0]), compose_content)
    if env_content:
        _write_text(os.path.join(project_path, ENV_FILENAME), env_content)
