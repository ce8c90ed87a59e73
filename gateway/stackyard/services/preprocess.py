"""Compose manifest path translation.

When the manager sees the projects directory at a different path than the
Docker host does, every filesystem path in a manifest has to be rewritten
into the host's namespace before ``docker compose`` hands it to the Engine.
The translated manifest is written to a private temporary directory whose
lifetime is one compose invocation.

Fields with more than one YAML shape are first classified into a variant,
and each variant has its own rewrite.
"""

import asyncio
import copy
import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import singledispatch
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Union

import yaml

from stackyard.core.exceptions import ManifestError
from stackyard.services.manifest import dump_yaml, load_yaml, retag
from stackyard.services.projects import PathMapper

logger = logging.getLogger(__name__)

TEMP_PREFIX = "stackyard-"
TRANSLATED_FILENAME = "compose.yaml"


@dataclass(frozen=True)
class RewriteContext:
    paths: PathMapper
    project_dir: str

    def host_path(self, path: str) -> str:
        return self.paths.to_absolute_host_path(path, self.project_dir)

    def local_path(self, path: str) -> str:
        return self.paths.to_absolute_local_path(path, self.project_dir)


# Variants


@dataclass
class ShortBuild:
    """``build: ./dir``"""

    context: str


@dataclass
class LongBuild:
    """``build: {context: ./dir, dockerfile: ...}``"""

    config: Dict[str, Any]


@dataclass
class EnvFilePath:
    """One ``env_file`` entry given as a plain path."""

    path: str


@dataclass
class EnvFileEntry:
    """One ``env_file`` entry given as ``{path, required}``."""

    config: Dict[str, Any]


@dataclass
class ShortVolume:
    """Bind mount in ``source:target[:mode]`` form."""

    source: str
    rest: str


@dataclass
class LongVolume:
    """Bind mount in ``{type: bind, source, target}`` form."""

    config: Dict[str, Any]


@dataclass
class NamedVolume:
    """Named or anonymous volume; never rewritten."""

    value: Any


@dataclass
class Passthrough:
    """A value with no path to rewrite."""

    value: Any


def classify_build(value: Any) -> Union[ShortBuild, LongBuild, Passthrough]:
    if isinstance(value, str):
        return ShortBuild(value)
    if isinstance(value, dict):
        return LongBuild(value)
    return Passthrough(value)


def classify_env_file(value: Any) -> Union[EnvFilePath, EnvFileEntry, Passthrough]:
    if isinstance(value, str):
        return EnvFilePath(value)
    if isinstance(value, dict) and isinstance(value.get("path"), str):
        return EnvFileEntry(value)
    return Passthrough(value)


def _is_path(source: str) -> bool:
    return "/" in source or "\\" in source


def classify_volume(value: Any) -> Union[ShortVolume, LongVolume, NamedVolume]:
    if isinstance(value, str):
        source, colon, rest = value.partition(":")
        if colon and _is_path(source):
            return ShortVolume(source, colon + rest)
        return NamedVolume(value)
    if isinstance(value, dict) and value.get("type") == "bind" and value.get("source"):
        return LongVolume(value)
    return NamedVolume(value)


# Rewrites


@singledispatch
def rewrite(variant: Any, ctx: RewriteContext) -> Any:
    raise TypeError(f"No rewrite for {type(variant).__name__}")


@rewrite.register
def _(variant: Passthrough, ctx: RewriteContext) -> Any:
    return variant.value


@rewrite.register
def _(variant: NamedVolume, ctx: RewriteContext) -> Any:
    return variant.value


@rewrite.register
def _(variant: ShortBuild, ctx: RewriteContext) -> Any:
    return ctx.host_path(variant.context)


@rewrite.register
def _(variant: LongBuild, ctx: RewriteContext) -> Any:
    config = dict(variant.config)
    # dockerfile is resolved against context by the Engine
    if isinstance(config.get("context"), str) and config["context"]:
        config["context"] = ctx.host_path(config["context"])
    return config


@rewrite.register
def _(variant: EnvFilePath, ctx: RewriteContext) -> Any:
    # compose reads env files itself, so they stay in our namespace
    return ctx.local_path(variant.path)


@rewrite.register
def _(variant: EnvFileEntry, ctx: RewriteContext) -> Any:
    return {**variant.config, "path": ctx.local_path(variant.config["path"])}


@rewrite.register
def _(variant: ShortVolume, ctx: RewriteContext) -> Any:
    return ctx.host_path(variant.source) + variant.rest


@rewrite.register
def _(variant: LongVolume, ctx: RewriteContext) -> Any:
    return {**variant.config, "source": ctx.host_path(variant.config["source"])}


def rewrite_build(value: Any, ctx: RewriteContext) -> Any:
    return rewrite(classify_build(value), ctx)


def rewrite_env_files(value: Any, ctx: RewriteContext) -> Any:
    if isinstance(value, list):
        return [rewrite(classify_env_file(entry), ctx) for entry in value]
    return rewrite(classify_env_file(value), ctx)


def rewrite_volumes(value: Any, ctx: RewriteContext) -> Any:
    if not isinstance(value, list):
        return value
    return [rewrite(classify_volume(entry), ctx) for entry in value]


def rewrite_extends(value: Any, ctx: RewriteContext) -> Any:
    if isinstance(value, dict) and isinstance(value.get("file"), str) and value["file"]:
        return {**value, "file": ctx.host_path(value["file"])}
    return value


def rewrite_file_entries(entries: Any, ctx: RewriteContext) -> Any:
    """Top-level ``configs``/``secrets``: rewrite each entry's ``file``."""
    if not isinstance(entries, dict):
        return entries
    result = {}
    for name, entry in entries.items():
        if isinstance(entry, dict) and isinstance(entry.get("file"), str) and entry["file"]:
            entry = {**entry, "file": ctx.host_path(entry["file"])}
        result[name] = entry
    return result


SERVICE_REWRITES = (
    ("build", rewrite_build),
    ("env_file", rewrite_env_files),
    ("extends", rewrite_extends),
    ("volumes", rewrite_volumes),
)


def translate_manifest(manifest: Dict[str, Any], ctx: RewriteContext) -> Dict[str, Any]:
    """Return a copy of a parsed manifest with every path in the host namespace."""
    manifest = copy.deepcopy(manifest)

    services = manifest.get("services")
    if isinstance(services, dict):
        for service in services.values():
            if not isinstance(service, dict):
                continue
            for key, rewrite_field in SERVICE_REWRITES:
                if service.get(key):
                    service[key] = retag(service[key], rewrite_field(service[key], ctx))

    for key in ("configs", "secrets"):
        if manifest.get(key):
            manifest[key] = retag(manifest[key], rewrite_file_entries(manifest[key], ctx))

    return manifest


def parse_manifest(content: str) -> Dict[str, Any]:
    try:
        manifest = load_yaml(content)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid compose file: {e}") from e
    if manifest is None:
        return {}
    if not isinstance(manifest, dict):
        raise ManifestError("Invalid compose file: top level must be a mapping")
    return manifest


def dump_manifest(manifest: Dict[str, Any]) -> str:
    return dump_yaml(manifest)


CleanupCallback = Callable[[], Awaitable[None]]


@dataclass
class PreprocessResult:
    """A translated manifest on disk and the callback that removes it."""

    temp_file: str
    cleanup: CleanupCallback = field(repr=False)


def _remove_temp(temp_file: str) -> None:
    try:
        os.unlink(temp_file)
        os.rmdir(os.path.dirname(temp_file))
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to clean up temp file {temp_file}: {e}")
        shutil.rmtree(os.path.dirname(temp_file), ignore_errors=True)


def _preprocess(manifest_path: str, ctx: RewriteContext) -> str:
    try:
        with open(manifest_path, encoding="utf-8") as f:
            content = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"Cannot read compose file {manifest_path}: {e}") from e

    translated = dump_manifest(translate_manifest(parse_manifest(content), ctx))

    temp_dir = tempfile.mkdtemp(prefix=TEMP_PREFIX)
    temp_file = os.path.join(temp_dir, TRANSLATED_FILENAME)
    try:
        with open(temp_file, "w", encoding="utf-8") as f:
            f.write(translated)
    except OSError:
        _remove_temp(temp_file)
        raise
    return temp_file


async def preprocess(manifest_path: str, project_dir: str, paths: PathMapper) -> PreprocessResult:
    """
    Write a host-namespace copy of a manifest to a fresh temp directory.

    Raises ManifestError for unreadable or malformed YAML, before anything
    is written. The caller must await ``cleanup()`` on every exit path.
    """
    ctx = RewriteContext(paths=paths, project_dir=os.path.normpath(project_dir))
    temp_file = await asyncio.to_thread(_preprocess, manifest_path, ctx)
    logger.debug(f"Translated {manifest_path} to {temp_file}")

    done = False

    async def cleanup() -> None:
        nonlocal done
        if done:
            return
        done = True
        await asyncio.to_thread(_remove_temp, temp_file)

    return PreprocessResult(temp_file=temp_file, cleanup=cleanup)


@asynccontextmanager
async def translated_manifest(
    manifest_path: str, project_dir: str, paths: PathMapper
) -> AsyncIterator[str]:
    """Scope a translated manifest to a block; it is removed however the block exits."""
    result = await preprocess(manifest_path, project_dir, paths)
    try:
        yield result.temp_file
    finally:
        await result.cleanup()
