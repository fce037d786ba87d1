"""Load pipeline configuration from a YAML file and ``DOCPUB_*`` environment variables.

Precedence, lowest first: built-in defaults, the YAML file, environment
variables. The file is looked up from ``DOCPUB_CONFIG`` or ``docpub.yaml`` in
the working directory and is optional. Example::

    publish_branch: main
    gating: skip-build
    build:
      command: cargo +nightly doc --release --lib -Zrustdoc-map
      output_dir: target/doc
      exclude_dependencies: true
    publish:
      branch: gh-pages
      remote: origin
      disable_processing: true
      author:
        name: github-actions[bot]
        email: github-actions@users.noreply.github.com
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any

import yaml

from docpub.models.publisher import AuthorIdentity, PublishTarget
from docpub.services.builder import DEFAULT_BUILD_COMMAND, DEFAULT_OUTPUT_DIR, CommandBuilder, parse_command
from docpub.services.pipeline import GatingPolicy


DEFAULT_CONFIG_FILENAME = "docpub.yaml"

_TOP_LEVEL_KEYS = {"publish_branch", "gating", "build", "publish"}
_BUILD_KEYS = {"command", "output_dir", "exclude_dependencies", "timeout"}
_PUBLISH_KEYS = {"branch", "remote", "publish_dir", "disable_processing", "commit_message", "author"}
_AUTHOR_KEYS = {"name", "email"}


class ConfigError(ValueError):
    """Raised when the configuration file or environment contains invalid values."""


@dataclass(slots=True, frozen=True)
class BuildSettings:
    """Options forwarded to the documentation build command."""

    command: tuple[str, ...] = DEFAULT_BUILD_COMMAND
    output_dir: str = DEFAULT_OUTPUT_DIR
    exclude_dependencies: bool = True
    timeout: float | None = None

    def create_builder(self) -> CommandBuilder:
        return CommandBuilder(
            command=self.command,
            output_dir=self.output_dir,
            exclude_dependencies=self.exclude_dependencies,
            timeout=self.timeout,
        )


@dataclass(slots=True, frozen=True)
class PipelineConfig:
    """Complete configuration for one pipeline deployment."""

    publish_branch: str = "main"
    gating: GatingPolicy = GatingPolicy.SKIP_BUILD
    build: BuildSettings = field(default_factory=BuildSettings)
    target: PublishTarget = field(default_factory=PublishTarget)
    token: str | None = field(default=None, repr=False)


def _parse_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"'{key}' must be a boolean, got {value!r}")


def _scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not isinstance(value, bool)


def _text(value: Any, *, key: str) -> str:
    if not _scalar(value):
        raise ConfigError(f"'{key}' must be a string, got {value!r}")
    text = str(value).strip()
    if not text:
        raise ConfigError(f"'{key}' must not be empty")
    return text


def _optional_text(value: Any, *, key: str) -> str | None:
    if value is None:
        return None
    if not _scalar(value):
        raise ConfigError(f"'{key}' must be a string, got {value!r}")
    text = str(value).strip()
    return text or None


def _parse_command(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)) and all(_scalar(part) for part in value):
        return parse_command([str(part) for part in value])
    if isinstance(value, str):
        return parse_command(value)
    raise ConfigError(f"'build.command' must be a string or a list of arguments, got {value!r}")


def _parse_timeout(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        timeout = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'build.timeout' must be a number, got {value!r}") from exc
    if timeout <= 0:
        raise ConfigError("'build.timeout' must be positive")
    return timeout


def _parse_gating(value: Any) -> GatingPolicy:
    try:
        return GatingPolicy(str(value).strip().lower())
    except ValueError as exc:
        choices = ", ".join(policy.value for policy in GatingPolicy)
        raise ConfigError(f"'gating' must be one of {choices}, got {value!r}") from exc


def _section(data: Mapping[str, Any], key: str, allowed: set[str]) -> dict[str, Any]:
    raw = data.get(key) or {}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"'{key}' must be a mapping")
    unknown = set(raw) - allowed
    if unknown:
        raise ConfigError(f"Unknown keys in '{key}': {', '.join(sorted(unknown))}")
    return dict(raw)


def read_config_file(path: Path) -> dict[str, Any]:
    """Return the raw mapping stored in a YAML configuration file."""

    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return dict(payload)


def _apply_environment(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    build = _section(data, "build", _BUILD_KEYS)
    publish = _section(data, "publish", _PUBLISH_KEYS)
    author = _section(publish, "author", _AUTHOR_KEYS)

    overrides = (
        ("DOCPUB_PUBLISH_BRANCH", data, "publish_branch"),
        ("DOCPUB_GATING", data, "gating"),
        ("DOCPUB_BUILD_COMMAND", build, "command"),
        ("DOCPUB_OUTPUT_DIR", build, "output_dir"),
        ("DOCPUB_EXCLUDE_DEPS", build, "exclude_dependencies"),
        ("DOCPUB_BUILD_TIMEOUT", build, "timeout"),
        ("DOCPUB_TARGET_BRANCH", publish, "branch"),
        ("DOCPUB_REMOTE", publish, "remote"),
        ("DOCPUB_PUBLISH_DIR", publish, "publish_dir"),
        ("DOCPUB_DISABLE_PROCESSING", publish, "disable_processing"),
        ("DOCPUB_COMMIT_MESSAGE", publish, "commit_message"),
        ("DOCPUB_AUTHOR_NAME", author, "name"),
        ("DOCPUB_AUTHOR_EMAIL", author, "email"),
    )
    for variable, section, key in overrides:
        value = environ.get(variable)
        if value is not None and value.strip():
            section[key] = value.strip()

    publish["author"] = author
    return {**data, "build": build, "publish": publish}


def build_config(data: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> PipelineConfig:
    """Convert a raw configuration mapping, plus environment overrides, into a :class:`PipelineConfig`."""

    unknown = set(data) - _TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    merged = _apply_environment(dict(data), environ or {})
    build = merged["build"]
    publish = merged["publish"]
    author = publish["author"]

    try:
        build_settings = BuildSettings(
            command=_parse_command(build.get("command", DEFAULT_BUILD_COMMAND)),
            output_dir=_text(build.get("output_dir", DEFAULT_OUTPUT_DIR), key="build.output_dir"),
            exclude_dependencies=_parse_bool(
                build.get("exclude_dependencies", True), key="build.exclude_dependencies"
            ),
            timeout=_parse_timeout(build.get("timeout")),
        )
        defaults = AuthorIdentity()
        target = PublishTarget(
            branch=_text(publish.get("branch", "gh-pages"), key="publish.branch"),
            author=AuthorIdentity(
                name=_text(author.get("name", defaults.name), key="publish.author.name"),
                email=_text(author.get("email", defaults.email), key="publish.author.email"),
            ),
            publish_dir=_optional_text(publish.get("publish_dir"), key="publish.publish_dir"),
            remote=_optional_text(publish.get("remote"), key="publish.remote"),
            disable_processing=_parse_bool(
                publish.get("disable_processing", False), key="publish.disable_processing"
            ),
            commit_message=_optional_text(publish.get("commit_message"), key="publish.commit_message"),
        )
    except ConfigError:
        raise
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    publish_branch = _text(merged.get("publish_branch", "main"), key="publish_branch")

    env = environ or {}
    token = env.get("DOCPUB_TOKEN") or env.get("GITHUB_TOKEN") or None

    return PipelineConfig(
        publish_branch=publish_branch,
        gating=_parse_gating(merged.get("gating", GatingPolicy.SKIP_BUILD.value)),
        build=build_settings,
        target=target,
        token=token,
    )


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> PipelineConfig:
    """Load configuration from ``path`` (or the default location) and the environment."""

    env = os.environ if environ is None else environ
    if path is None:
        configured = env.get("DOCPUB_CONFIG")
        path = Path(configured) if configured else Path(DEFAULT_CONFIG_FILENAME)
        if not configured and not path.exists():
            return build_config({}, env)

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' does not exist")
    return build_config(read_config_file(path), env)


__all__ = [
    "BuildSettings",
    "ConfigError",
    "DEFAULT_CONFIG_FILENAME",
    "PipelineConfig",
    "build_config",
    "load_config",
    "read_config_file",
]
