"""Compose process runner and project operation tests."""

import os
import stat
from unittest.mock import patch

import pytest
from prometheus_client import REGISTRY

from stackyard.core.exceptions import (
    InvalidProjectNameError,
    NotComposeManagedError,
    ProjectExistsError,
    ProjectNotFoundError,
)
from stackyard.models.container import COMPOSE_PROJECT_LABEL, COMPOSE_SERVICE_LABEL
from stackyard.services.compose import ComposeRunner, ComposeService, compose_environment
from stackyard.services.containers import ContainerService
from stackyard.services.projects import PathMapper, ProjectScanner

from fakes import frame, make_detail, make_summary

MANIFEST = "services:\n  web:\n    image: nginx\n    volumes:\n      - ./html:/usr/share/nginx/html\n"


def write_script(path, body):
    with open(path, "w") as f:
        f.write("#!/bin/sh\n" + body)
    os.chmod(path, os.stat(path).st_mode | stat.S_IEXEC)
    return str(path)


@pytest.fixture
def fake_docker(tmp_path):
    """A docker stand-in that echoes its arguments and the manifest it was given."""
    return write_script(
        tmp_path / "docker",
        'echo "args: $*"\n'
        'while [ $# -gt 0 ]; do\n'
        '  if [ "$1" = "-f" ]; then echo "manifest: $2"; cat "$2"; fi\n'
        "  shift\n"
        "done\n"
        'echo "progress" >&2\n'
        "exit 0\n",
    )


@pytest.fixture
def environ():
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin")}


def make_project(root, name="blog", content=MANIFEST):
    path = os.path.join(root, name)
    os.makedirs(path)
    with open(os.path.join(path, "compose.yaml"), "w") as f:
        f.write(content)
    return path


def compose_detail(container_id, status="running", project="blog", service="web"):
    labels = {COMPOSE_PROJECT_LABEL: project, COMPOSE_SERVICE_LABEL: service}
    return make_detail(container_id, status=status, config={"Labels": labels})


class TestComposeEnvironment:
    """Tests for the subprocess environment filter."""

    def test_allowlist(self):
        """Test only allowlisted and COMPOSE_ variables pass through."""
        env = compose_environment(
            {
                "PATH": "/usr/bin",
                "HOME": "/root",
                "LANG": "",
                "DOCKER_HOST": "tcp://engine:2375",
                "COMPOSE_PROJECT_NAME": "blog",
                "AWS_SECRET_ACCESS_KEY": "hunter2",
                "DATABASE_URL": "postgres://secret",
            }
        )
        assert env == {
            "PATH": "/usr/bin",
            "HOME": "/root",
            "DOCKER_HOST": "tcp://engine:2375",
            "COMPOSE_PROJECT_NAME": "blog",
        }


class TestComposeRunner:
    """Tests for ComposeRunner against a fake docker binary."""

    @pytest.mark.asyncio
    async def test_prepare_without_mapping(self, projects_dir):
        """Test no flags are added when both sides see the same paths."""
        path = make_project(projects_dir)
        runner = ComposeRunner(PathMapper(projects_dir))
        prepared = await runner.prepare(path, os.path.join(path, "compose.yaml"))
        assert prepared.args == ["compose"]
        assert prepared.cleanup is None

    @pytest.mark.asyncio
    async def test_prepare_with_mapping(self, projects_dir):
        """Test a translated manifest, env file and host project directory are passed."""
        path = make_project(projects_dir)
        with open(os.path.join(path, ".env"), "w") as f:
            f.write("TAG=1\n")
        runner = ComposeRunner(PathMapper(projects_dir, "/srv/docker"))

        prepared = await runner.prepare(path, os.path.join(path, "compose.yaml"))
        try:
            assert prepared.args[0] == "compose"
            temp_file = prepared.args[prepared.args.index("-f") + 1]
            assert os.path.exists(temp_file)
            assert prepared.args[prepared.args.index("--env-file") + 1] == os.path.join(path, ".env")
            assert prepared.args[-2:] == ["--project-directory", "/srv/docker/blog"]
        finally:
            await prepared.release()
        assert not os.path.exists(temp_file)

    @pytest.mark.asyncio
    async def test_run_success(self, projects_dir, fake_docker, environ):
        """Test output lines reach the callback and the result."""
        path = make_project(projects_dir)
        runner = ComposeRunner(PathMapper(projects_dir), docker_binary=fake_docker, environ=environ)
        lines = []
        labels = {"command": "up", "outcome": "success"}
        before = REGISTRY.get_sample_value("stackyard_compose_commands_total", labels) or 0

        result = await runner.run(path, ["up", "-d"], on_output=lines.append)

        assert REGISTRY.get_sample_value("stackyard_compose_commands_total", labels) == before + 1
        assert result.success
        assert result.exit_code == 0
        assert result.error is None
        assert lines[0] == "args: compose up -d"
        assert "progress" in lines
        assert "progress" in result.output

    @pytest.mark.asyncio
    async def test_async_callback(self, projects_dir, fake_docker, environ):
        """Test coroutine callbacks are awaited."""
        path = make_project(projects_dir)
        runner = ComposeRunner(PathMapper(projects_dir), docker_binary=fake_docker, environ=environ)
        lines = []

        async def on_output(line):
            lines.append(line)

        await runner.run(path, ["ps"], on_output=on_output)
        assert lines[0] == "args: compose ps"

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_a_result(self, projects_dir, tmp_path, environ):
        """Test failures are reported, not raised."""
        path = make_project(projects_dir)
        script = write_script(tmp_path / "failing-docker", 'echo "no such service: api" >&2\nexit 3\n')
        runner = ComposeRunner(PathMapper(projects_dir), docker_binary=script, environ=environ)

        result = await runner.run(path, ["up", "-d", "api"])

        assert not result.success
        assert result.exit_code == 3
        assert "no such service: api" in result.error

    @pytest.mark.asyncio
    async def test_timeout(self, projects_dir, tmp_path, environ):
        """Test a hung command is killed and reported as timed out."""
        path = make_project(projects_dir)
        script = write_script(tmp_path / "slow-docker", "echo started\nexec sleep 30\n")
        runner = ComposeRunner(PathMapper(projects_dir), timeout=0.5, docker_binary=script, environ=environ)

        result = await runner.run(path, ["up"])

        assert not result.success
        assert result.error == "Command timed out after 0.5s"
        assert "started" in result.output

    @pytest.mark.asyncio
    async def test_failing_callback_aborts(self, projects_dir, tmp_path, environ):
        """Test a failing callback stops the command."""
        path = make_project(projects_dir)
        script = write_script(tmp_path / "chatty-docker", "echo one\nexec sleep 30\n")
        runner = ComposeRunner(PathMapper(projects_dir), docker_binary=script, environ=environ)

        def on_output(line):
            raise RuntimeError("client went away")

        result = await runner.run(path, ["logs", "-f"], on_output=on_output)

        assert not result.success
        assert result.error == "Command aborted"

    @pytest.mark.asyncio
    async def test_stream_closed_early(self, projects_dir, tmp_path, environ):
        """Test closing the stream mid-run terminates the process."""
        path = make_project(projects_dir)
        script = write_script(tmp_path / "chatty-docker", "echo one\nexec sleep 30\n")
        runner = ComposeRunner(PathMapper(projects_dir), docker_binary=script, environ=environ)

        stream = runner.stream(path, ["logs", "-f"])
        assert await stream.__anext__() == "one"
        await stream.aclose()
        assert stream.result.error == "Command aborted"

    @pytest.mark.asyncio
    async def test_translated_manifest_removed_after_run(self, projects_dir, fake_docker, environ):
        """Test the temp manifest is used for the run and then removed."""
        path = make_project(projects_dir)
        runner = ComposeRunner(
            PathMapper(projects_dir, "/srv/docker"), docker_binary=fake_docker, environ=environ
        )
        lines = []

        result = await runner.run(path, ["up", "-d"], compose_file=os.path.join(path, "compose.yaml"), on_output=lines.append)

        assert result.success
        manifest_line = next(line for line in lines if line.startswith("manifest: "))
        temp_file = manifest_line[len("manifest: "):]
        assert any("/srv/docker/blog/html:/usr/share/nginx/html" in line for line in lines)
        assert not os.path.exists(temp_file)

    @pytest.mark.asyncio
    async def test_malformed_manifest_is_a_result(self, projects_dir, fake_docker, environ):
        """Test a broken manifest fails the command without spawning it."""
        path = make_project(projects_dir, content="services: [unclosed\n")
        runner = ComposeRunner(
            PathMapper(projects_dir, "/srv/docker"), docker_binary=fake_docker, environ=environ
        )
        result = await runner.run(path, ["up"], compose_file=os.path.join(path, "compose.yaml"))
        assert not result.success
        assert "Invalid compose file" in result.error
        assert result.exit_code is None

    @pytest.mark.asyncio
    async def test_undecodable_manifest_is_a_result(self, projects_dir, fake_docker, environ):
        """Test a manifest that is not valid UTF-8 fails the command instead of raising."""
        path = make_project(projects_dir)
        with open(os.path.join(path, "compose.yaml"), "wb") as f:
            f.write(b"services:\n  web:\n    image: \xff\n")
        runner = ComposeRunner(
            PathMapper(projects_dir, "/srv/docker"), docker_binary=fake_docker, environ=environ
        )
        result = await runner.run(path, ["up", "-d"], compose_file=os.path.join(path, "compose.yaml"))
        assert not result.success
        assert "Cannot read compose file" in result.error
        assert result.exit_code is None

    @pytest.mark.asyncio
    async def test_missing_binary(self, projects_dir, environ):
        """Test a missing docker binary is reported as a failed result."""
        path = make_project(projects_dir)
        runner = ComposeRunner(PathMapper(projects_dir), docker_binary="/nonexistent/docker", environ=environ)
        result = await runner.run(path, ["up"])
        assert not result.success
        assert result.error


class TestComposeService:
    """Tests for ComposeService."""

    @pytest.fixture
    def compose(self, engine, projects_dir, fake_docker, environ):
        paths = PathMapper(projects_dir)
        containers = ContainerService(engine)
        scanner = ProjectScanner(paths, containers)
        runner = ComposeRunner(paths, docker_binary=fake_docker, environ=environ)
        return ComposeService(scanner, runner, containers, log_tail=50)

    @pytest.mark.asyncio
    async def test_unknown_project(self, compose):
        """Test operations on unknown projects return a not-found result."""
        for result in (
            await compose.up("ghost"),
            await compose.down("ghost"),
            await compose.pull("ghost"),
            await compose.save_compose_file("ghost", "services: {}\n"),
            await compose.delete_project("ghost"),
        ):
            assert not result.success
            assert result.error == "Project not found"

    @pytest.mark.asyncio
    async def test_invalid_name(self, compose):
        """Test invalid names are rejected."""
        with pytest.raises(InvalidProjectNameError):
            await compose.up("../etc")

    @pytest.mark.asyncio
    async def test_up_flags_and_invalidation(self, compose, projects_dir):
        """Test up builds its arguments and invalidates the scan cache."""
        make_project(projects_dir)
        lines = []
        with patch.object(compose.scanner, "invalidate") as invalidate:
            result = await compose.up("blog", build=True, pull=True, on_output=lines.append)
        assert result.success
        assert lines[0] == "args: compose up -d --build --pull always"
        invalidate.assert_called_once()

    @pytest.mark.asyncio
    async def test_down_and_pull_flags(self, compose, projects_dir):
        """Test down and pull arguments; pull leaves the cache alone."""
        make_project(projects_dir)
        lines = []
        await compose.down("blog", volumes=True, remove_orphans=True, on_output=lines.append)
        with patch.object(compose.scanner, "invalidate") as invalidate:
            await compose.pull("blog", service="web", on_output=lines.append)
            await compose.up_service("blog", "web", on_output=lines.append)
        assert lines[0] == "args: compose down -v --remove-orphans"
        assert "args: compose pull web" in lines
        assert "args: compose up -d web" in lines
        invalidate.assert_called_once()

    @pytest.mark.asyncio
    async def test_update_running_container(self, compose, engine, projects_dir):
        """Test a running compose container is pulled and then recreated."""
        make_project(projects_dir)
        engine.details["c1"] = compose_detail("c1")
        lines = []

        result = await compose.update_container("c1", on_output=lines.append)

        assert result.success
        assert result.restarted
        assert [line for line in lines if line.startswith("args: ")] == [
            "args: compose pull web",
            "args: compose up -d web",
        ]
        assert "args: compose pull web" in result.output
        assert "args: compose up -d web" in result.output

    @pytest.mark.asyncio
    async def test_update_stopped_container(self, compose, engine, projects_dir):
        """Test a stopped compose container only gets the new image."""
        make_project(projects_dir)
        engine.details["c1"] = compose_detail("c1", status="exited")
        lines = []

        result = await compose.update_container("c1", on_output=lines.append)

        assert result.success
        assert result.restarted is False
        assert [line for line in lines if line.startswith("args: ")] == ["args: compose pull web"]

    @pytest.mark.asyncio
    async def test_update_standalone_container(self, compose, engine):
        """Test containers without compose labels cannot be updated."""
        engine.details["c2"] = make_detail("c2")
        with pytest.raises(NotComposeManagedError):
            await compose.update_container("c2")

    @pytest.mark.asyncio
    async def test_update_missing_container(self, compose):
        """Test updating an unknown container returns None."""
        assert await compose.update_container("ghost") is None

    @pytest.mark.asyncio
    async def test_update_pull_failure_skips_recreate(self, compose, engine, projects_dir, tmp_path):
        """Test a failed pull is reported and the service is left alone."""
        make_project(projects_dir)
        engine.details["c1"] = compose_detail("c1")
        compose.runner.docker_binary = write_script(
            tmp_path / "broken-docker", 'echo "args: $*"\necho "pull access denied"\nexit 1\n'
        )

        result = await compose.update_container("c1")

        assert not result.success
        assert result.restarted is False
        assert "pull access denied" in result.error
        assert "up -d" not in result.output

    @pytest.mark.asyncio
    async def test_create_project(self, compose, projects_dir):
        """Test creating a project writes its files."""
        result = await compose.create_project("blog", MANIFEST, env_content="TAG=1\n")
        assert result.success
        with open(os.path.join(projects_dir, "blog", "compose.yaml")) as f:
            assert f.read() == MANIFEST
        assert await compose.scanner.read_env_file("blog") == "TAG=1\n"

        with pytest.raises(ProjectExistsError):
            await compose.create_project("blog", MANIFEST)

    @pytest.mark.asyncio
    async def test_save_files(self, compose, projects_dir):
        """Test compose and env files are replaced."""
        make_project(projects_dir)
        assert (await compose.save_compose_file("blog", "services: {}\n")).success
        assert (await compose.save_env_file("blog", "A=2\n")).success
        assert await compose.scanner.read_compose_file("blog") == "services: {}\n"
        assert await compose.scanner.read_env_file("blog") == "A=2\n"

    @pytest.mark.asyncio
    async def test_delete_project(self, compose, projects_dir):
        """Test delete brings the project down and removes its directory."""
        path = make_project(projects_dir)
        lines = []
        result = await compose.delete_project("blog", remove_volumes=True, on_output=lines.append)
        assert result.success
        assert lines[0] == "args: compose down -v --remove-orphans"
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_delete_keeps_directory_when_down_fails(self, compose, projects_dir, tmp_path):
        """Test a failed down leaves the project in place."""
        path = make_project(projects_dir)
        compose.runner.docker_binary = write_script(tmp_path / "broken-docker", "echo boom\nexit 1\n")
        result = await compose.delete_project("blog")
        assert not result.success
        assert os.path.exists(path)

    @pytest.mark.asyncio
    async def test_logs_merges_services(self, compose, engine, projects_dir):
        """Test project logs merge each service's container stream."""
        make_project(projects_dir, content="services:\n  web:\n    image: nginx\n  db:\n    image: postgres\n")
        engine.containers = [
            make_summary("c-web", project="blog", service="web"),
            make_summary("c-db", project="blog", service="db"),
        ]
        engine.logs = {"c-web": [frame("GET /\n")], "c-db": [frame("ready\n")]}

        stream = await compose.logs("blog", follow=False)
        lines = [line async for line in stream]

        assert sorted(lines) == ["db  | ready", "web  | GET /"]
        assert sorted(engine.closed_streams) == ["c-db", "c-web"]
        assert all(c[2]["tail"] == 50 for c in engine.called("container_logs"))

    @pytest.mark.asyncio
    async def test_logs_single_service(self, compose, engine, projects_dir):
        """Test filtering project logs to one service."""
        make_project(projects_dir, content="services:\n  web:\n    image: nginx\n  db:\n    image: postgres\n")
        engine.containers = [
            make_summary("c-web", project="blog", service="web"),
            make_summary("c-db", project="blog", service="db"),
        ]
        engine.logs = {"c-web": [frame("GET /\n")], "c-db": [frame("ready\n")]}

        stream = await compose.logs("blog", follow=False, service="db", tail=5)
        lines = [line async for line in stream]

        assert lines == ["db  | ready"]
        assert engine.called("container_logs")[0][2]["tail"] == 5

    @pytest.mark.asyncio
    async def test_logs_unknown_project(self, compose):
        """Test logs for an unknown project raise."""
        with pytest.raises(ProjectNotFoundError):
            await compose.logs("ghost")
