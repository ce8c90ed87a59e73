"""Compose manifest path translation tests."""

import os

import pytest
import yaml

from stackyard.core.exceptions import ManifestError
from stackyard.services.preprocess import (
    EnvFileEntry,
    EnvFilePath,
    LongVolume,
    NamedVolume,
    RewriteContext,
    ShortVolume,
    classify_env_file,
    classify_volume,
    dump_manifest,
    parse_manifest,
    preprocess,
    translate_manifest,
    translated_manifest,
)
from stackyard.services.projects import PathMapper

LOCAL_ROOT = "/data/projects"
HOST_ROOT = "/host/projects"
PROJECT_DIR = "/data/projects/myapp"


@pytest.fixture
def ctx():
    return RewriteContext(paths=PathMapper(LOCAL_ROOT, HOST_ROOT), project_dir=PROJECT_DIR)


def service(manifest, name="app"):
    return manifest["services"][name]


class TestClassify:
    """Tests for variant classification."""

    def test_volume_variants(self):
        """Test short bind, long bind and named volumes are told apart."""
        assert isinstance(classify_volume("./data:/app/data"), ShortVolume)
        assert isinstance(classify_volume("pgdata:/var/lib/postgresql/data"), NamedVolume)
        assert isinstance(classify_volume("/app/cache"), NamedVolume)
        assert isinstance(classify_volume({"type": "bind", "source": "./x", "target": "/x"}), LongVolume)
        assert isinstance(classify_volume({"type": "volume", "source": "pgdata", "target": "/x"}), NamedVolume)

    def test_env_file_variants(self):
        """Test plain and object env_file entries."""
        assert isinstance(classify_env_file(".env"), EnvFilePath)
        assert isinstance(classify_env_file({"path": ".env", "required": False}), EnvFileEntry)


class TestTranslateManifest:
    """Tests for translate_manifest."""

    def test_relative_bind_mount(self, ctx):
        """Test a relative bind source is mapped into the host root."""
        manifest = {"services": {"app": {"volumes": ["./data:/app/data"]}}}
        result = translate_manifest(manifest, ctx)
        assert service(result)["volumes"] == ["/host/projects/myapp/data:/app/data"]

    def test_named_volume_unchanged(self, ctx):
        """Test named volumes are untouched."""
        manifest = {"services": {"app": {"volumes": ["pgdata:/var/lib/postgresql/data"]}}}
        assert service(translate_manifest(manifest, ctx))["volumes"] == ["pgdata:/var/lib/postgresql/data"]

    def test_absolute_outside_root_unchanged(self, ctx):
        """Test absolute paths outside the projects root pass through with their mode."""
        manifest = {"services": {"app": {"volumes": ["/etc/ssl/certs:/certs:ro"]}}}
        assert service(translate_manifest(manifest, ctx))["volumes"] == ["/etc/ssl/certs:/certs:ro"]

    def test_absolute_inside_root_mapped(self, ctx):
        """Test absolute paths under the projects root are mapped."""
        manifest = {"services": {"app": {"volumes": ["/data/projects/shared/conf:/conf:ro"]}}}
        assert service(translate_manifest(manifest, ctx))["volumes"] == ["/host/projects/shared/conf:/conf:ro"]

    def test_same_roots_still_absolute(self):
        """Test relative paths become absolute even without prefix substitution."""
        ctx = RewriteContext(paths=PathMapper(LOCAL_ROOT), project_dir=PROJECT_DIR)
        manifest = {"services": {"app": {"volumes": ["./data:/app/data"], "build": "."}}}
        result = service(translate_manifest(manifest, ctx))
        assert result["volumes"] == ["/data/projects/myapp/data:/app/data"]
        assert result["build"] == "/data/projects/myapp"

    def test_long_volume(self, ctx):
        """Test long-syntax bind mounts keep their other keys."""
        manifest = {
            "services": {
                "app": {
                    "volumes": [
                        {"type": "bind", "source": "./conf", "target": "/etc/app", "read_only": True},
                        {"type": "volume", "source": "cache", "target": "/cache"},
                    ]
                }
            }
        }
        volumes = service(translate_manifest(manifest, ctx))["volumes"]
        assert volumes[0] == {
            "type": "bind",
            "source": "/host/projects/myapp/conf",
            "target": "/etc/app",
            "read_only": True,
        }
        assert volumes[1] == {"type": "volume", "source": "cache", "target": "/cache"}

    def test_build(self, ctx):
        """Test short and long build contexts; dockerfile stays relative."""
        manifest = {
            "services": {
                "short": {"build": "./api"},
                "long": {"build": {"context": "./web", "dockerfile": "Dockerfile.prod"}},
            }
        }
        result = translate_manifest(manifest, ctx)
        assert service(result, "short")["build"] == "/host/projects/myapp/api"
        assert service(result, "long")["build"] == {
            "context": "/host/projects/myapp/web",
            "dockerfile": "Dockerfile.prod",
        }

    def test_env_file_stays_local(self, ctx):
        """Test env files resolve in the manager's namespace, in every shape."""
        manifest = {
            "services": {
                "single": {"env_file": ".env"},
                "list": {"env_file": ["./a.env", "/etc/app.env"]},
                "objects": {"env_file": [{"path": "./b.env", "required": False}]},
            }
        }
        result = translate_manifest(manifest, ctx)
        assert service(result, "single")["env_file"] == "/data/projects/myapp/.env"
        assert service(result, "list")["env_file"] == ["/data/projects/myapp/a.env", "/etc/app.env"]
        assert service(result, "objects")["env_file"] == [
            {"path": "/data/projects/myapp/b.env", "required": False}
        ]

    def test_extends_file(self, ctx):
        """Test extends.file is mapped to the host."""
        manifest = {"services": {"app": {"extends": {"file": "common.yaml", "service": "base"}}}}
        assert service(translate_manifest(manifest, ctx))["extends"] == {
            "file": "/host/projects/myapp/common.yaml",
            "service": "base",
        }

    def test_configs_and_secrets(self, ctx):
        """Test top-level configs and secrets with a file are mapped."""
        manifest = {
            "services": {},
            "configs": {"nginx": {"file": "./nginx.conf"}, "ext": {"external": True}},
            "secrets": {"token": {"file": "./secrets/token"}, "env": {"environment": "TOKEN"}},
        }
        result = translate_manifest(manifest, ctx)
        assert result["configs"]["nginx"] == {"file": "/host/projects/myapp/nginx.conf"}
        assert result["configs"]["ext"] == {"external": True}
        assert result["secrets"]["token"] == {"file": "/host/projects/myapp/secrets/token"}
        assert result["secrets"]["env"] == {"environment": "TOKEN"}

    def test_merge_tags_survive_translation(self, ctx):
        """Test !override and !reset stay on rewritten fields."""
        manifest = parse_manifest(
            "services:\n"
            "  app:\n"
            "    volumes: !override\n"
            "      - ./data:/data\n"
            "    ports: !reset []\n"
            "    build: !reset null\n"
        )
        text = dump_manifest(translate_manifest(manifest, ctx))

        reloaded = service(parse_manifest(text))
        assert reloaded["volumes"] == ["/host/projects/myapp/data:/data"]
        assert reloaded["volumes"].tag == "!override"
        assert reloaded["ports"] == []
        assert reloaded["ports"].tag == "!reset"
        assert reloaded["build"].tag == "!reset"
        assert reloaded["build"].value is None
        assert "!reset null" in text

    def test_input_not_mutated(self, ctx):
        """Test the parsed manifest is copied before rewriting."""
        manifest = {"services": {"app": {"volumes": ["./data:/data"]}}}
        translate_manifest(manifest, ctx)
        assert manifest["services"]["app"]["volumes"] == ["./data:/data"]

    def test_idempotent(self, ctx):
        """Test translating an already translated manifest changes nothing."""
        manifest = {
            "services": {
                "app": {
                    "build": {"context": "./web"},
                    "env_file": [".env"],
                    "volumes": ["./data:/data", "/etc/ssl:/ssl:ro", "named:/n"],
                    "extends": {"file": "base.yaml", "service": "x"},
                }
            },
            "configs": {"c": {"file": "./c.conf"}},
        }
        once = translate_manifest(manifest, ctx)
        twice = translate_manifest(once, ctx)
        assert twice == once


class TestParseManifest:
    """Tests for manifest parsing."""

    def test_malformed_yaml(self):
        """Test malformed YAML raises ManifestError."""
        with pytest.raises(ManifestError):
            parse_manifest("services: [unclosed")

    def test_non_mapping(self):
        """Test a top-level list is rejected."""
        with pytest.raises(ManifestError):
            parse_manifest("- a\n- b\n")

    def test_empty(self):
        """Test an empty document parses to an empty mapping."""
        assert parse_manifest("") == {}

    def test_merge_tags(self):
        """Test !reset and !override parse to values that keep their tag."""
        manifest = parse_manifest(
            "services:\n"
            "  web:\n"
            "    image: !override nginx:1.27\n"
            "    environment: !override\n"
            "      DEBUG: \"1\"\n"
            "    command: !reset '8080'\n"
        )
        web = service(manifest, "web")
        assert web["image"] == "nginx:1.27"
        assert web["environment"] == {"DEBUG": "1"}
        assert web["command"] == "8080"
        assert [web[key].tag for key in ("image", "environment", "command")] == ["!override"] * 2 + ["!reset"]

        text = dump_manifest(manifest)
        assert "image: !override nginx:1.27" in text
        assert service(parse_manifest(text), "web") == web

    def test_dump_preserves_order(self):
        """Test keys are written in insertion order."""
        text = dump_manifest({"services": {"web": {"image": "nginx"}}, "networks": {}, "configs": {}})
        assert text.index("services") < text.index("networks") < text.index("configs")


class TestPreprocess:
    """Tests for preprocess and its cleanup."""

    @pytest.fixture
    def project(self, tmp_path):
        root = tmp_path / "projects"
        project_dir = root / "myapp"
        project_dir.mkdir(parents=True)
        manifest = project_dir / "compose.yaml"
        manifest.write_text("services:\n  app:\n    image: nginx\n    volumes:\n      - ./data:/data\n")
        paths = PathMapper(str(root), "/host/projects")
        return paths, str(project_dir), str(manifest)

    @pytest.mark.asyncio
    async def test_writes_translated_file(self, project):
        """Test the translated manifest lands in a fresh temp directory."""
        paths, project_dir, manifest = project
        result = await preprocess(manifest, project_dir, paths)
        try:
            with open(result.temp_file) as f:
                translated = yaml.safe_load(f)
            assert translated["services"]["app"]["volumes"] == ["/host/projects/myapp/data:/data"]
            assert os.path.basename(os.path.dirname(result.temp_file)).startswith("stackyard-")
        finally:
            await result.cleanup()

        assert not os.path.exists(result.temp_file)
        assert not os.path.exists(os.path.dirname(result.temp_file))

    @pytest.mark.asyncio
    async def test_cleanup_idempotent(self, project):
        """Test cleanup can be awaited more than once."""
        paths, project_dir, manifest = project
        result = await preprocess(manifest, project_dir, paths)
        await result.cleanup()
        await result.cleanup()

    @pytest.mark.asyncio
    async def test_cleanup_after_external_removal(self, project):
        """Test cleanup does not raise when the file is already gone."""
        paths, project_dir, manifest = project
        result = await preprocess(manifest, project_dir, paths)
        os.unlink(result.temp_file)
        os.rmdir(os.path.dirname(result.temp_file))
        await result.cleanup()

    @pytest.mark.asyncio
    async def test_context_manager_cleans_up_on_error(self, project):
        """Test the scoped form removes the file when the block raises."""
        paths, project_dir, manifest = project
        seen = []
        with pytest.raises(RuntimeError):
            async with translated_manifest(manifest, project_dir, paths) as temp_file:
                seen.append(temp_file)
                assert os.path.exists(temp_file)
                raise RuntimeError("compose failed")
        assert not os.path.exists(seen[0])

    @pytest.mark.asyncio
    async def test_malformed_yaml_creates_nothing(self, project, tmp_path, monkeypatch):
        """Test malformed manifests fail before any temp file exists."""
        paths, project_dir, manifest = project
        with open(manifest, "w") as f:
            f.write("services: [unclosed\n")
        temp_root = tmp_path / "tmp"
        temp_root.mkdir()
        monkeypatch.setattr("tempfile.tempdir", str(temp_root))

        with pytest.raises(ManifestError):
            await preprocess(manifest, project_dir, paths)
        assert os.listdir(temp_root) == []

    @pytest.mark.asyncio
    async def test_undecodable_manifest(self, project):
        """Test a manifest that is not valid UTF-8 raises ManifestError."""
        paths, project_dir, manifest = project
        with open(manifest, "wb") as f:
            f.write(b"services:\n  app:\n    image: \xff\xfe\n")
        with pytest.raises(ManifestError):
            await preprocess(manifest, project_dir, paths)

    @pytest.mark.asyncio
    async def test_missing_manifest(self, project):
        """Test an unreadable manifest raises ManifestError."""
        paths, project_dir, _ = project
        with pytest.raises(ManifestError):
            await preprocess(os.path.join(project_dir, "nope.yaml"), project_dir, paths)
