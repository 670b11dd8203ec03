"""Layered engine configuration.

Sources, lowest priority first:
- Package defaults (canvasflow/config/defaults.yaml)
- User-global (~/.canvasflow/config.yaml)
- Project (./.canvasflow/config.yaml)
- Explicit file passed to load_config()
- Environment: CANVASFLOW_BACKEND_URL, CANVASFLOW_LOG_LEVEL

Merge semantics: dicts deep merge, everything else overrides. The merged
result is validated against config_schema.json before use.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from canvasflow.core.graph_schema import JobKind
from canvasflow.core.job_driver import PollPolicy

PACKAGE_CONFIG_DIR = Path(__file__).parent.parent / "config"

ENV_BACKEND_URL = "CANVASFLOW_BACKEND_URL"
ENV_LOG_LEVEL = "CANVASFLOW_LOG_LEVEL"


class ConfigError(Exception):
    """Configuration file is missing, malformed or fails schema validation."""

    pass


@dataclass
class JobPolicyConfig:
    """Per-kind polling budget."""

    max_attempts: int
    progress_step: float


@dataclass
class EngineConfig:
    """Resolved engine configuration."""

    parallel: bool = True
    stop_on_error: bool = True

    poll_interval: float = 1.0
    base_progress: float = 10.0
    max_poll_errors: int = 3
    jobs: dict[JobKind, JobPolicyConfig] = field(default_factory=dict)

    backend_url: str = "http://localhost:3000"
    backend_timeout: float = 30.0

    log_level: str = "INFO"

    # Files that contributed to this config, in merge order
    sources: list[Path] = field(default_factory=list)

    def poll_policy(self, kind: JobKind) -> PollPolicy:
        """Build the PollPolicy for a job kind."""
        job = self.jobs.get(kind)
        if job is None:
            raise ConfigError(f"No polling policy configured for job kind '{kind.value}'")
        return PollPolicy(
            max_attempts=job.max_attempts,
            interval=self.poll_interval,
            base_progress=self.base_progress,
            progress_step=job.progress_step,
            max_poll_errors=self.max_poll_errors,
        )

    def poll_policies(self) -> dict[JobKind, PollPolicy]:
        return {kind: self.poll_policy(kind) for kind in self.jobs}


def default_search_paths() -> list[Path]:
    """Config files considered after the package defaults, in merge order."""
    return [
        Path.home() / ".canvasflow" / "config.yaml",  # User-global
        Path(".canvasflow") / "config.yaml",  # Project-specific
    ]


def load_config(
    path: str | Path | None = None,
    search_paths: list[Path] | None = None,
    env: dict[str, str] | None = None,
) -> EngineConfig:
    """Load and merge configuration from all sources.

    Args:
        path: Explicit config file; must exist when given
        search_paths: Override the user/project search paths (tests)
        env: Override the process environment (tests)

    Raises:
        ConfigError: On missing explicit file, invalid YAML or schema violations
    """
    env = os.environ if env is None else env

    defaults_path = PACKAGE_CONFIG_DIR / "defaults.yaml"
    merged = _load_yaml(defaults_path)
    sources = [defaults_path]

    candidates = default_search_paths() if search_paths is None else list(search_paths)
    for candidate in candidates:
        if candidate.exists():
            merged = _deep_merge(merged, _load_yaml(candidate))
            sources.append(candidate)

    if path is not None:
        explicit = Path(path)
        if not explicit.exists():
            raise ConfigError(f"Config file not found: {explicit}")
        merged = _deep_merge(merged, _load_yaml(explicit))
        sources.append(explicit)

    if env.get(ENV_BACKEND_URL):
        merged.setdefault("backend", {})["base_url"] = env[ENV_BACKEND_URL]
    if env.get(ENV_LOG_LEVEL):
        merged.setdefault("logging", {})["level"] = env[ENV_LOG_LEVEL].upper()

    _validate(merged)
    return _to_engine_config(merged, sources)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with proper error handling."""
    try:
        with open(path, encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    # An empty override file is allowed and changes nothing
    if config is None:
        return {}

    if not isinstance(config, dict):
        raise ConfigError(f"Config must be a mapping, got {type(config).__name__} in {path}")

    return config


def _load_schema() -> dict:
    schema_path = PACKAGE_CONFIG_DIR / "config_schema.json"
    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise ConfigError(
            f"Config schema not found at {schema_path}. "
            f"Ensure canvasflow package is properly installed."
        )
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config schema at {schema_path}: {e}")


def _validate(config: dict[str, Any]) -> None:
    try:
        jsonschema.validate(config, _load_schema())
    except jsonschema.ValidationError as e:
        location = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"Config validation failed at '{location}': {e.message}")
    except jsonschema.SchemaError as e:
        raise ConfigError(f"Invalid config schema definition: {e.message}")


def _deep_merge(parent: dict, child: dict) -> dict:
    """Deep merge two dictionaries."""
    result = parent.copy()
    for key, value in child.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _to_engine_config(config: dict[str, Any], sources: list[Path]) -> EngineConfig:
    execution = config.get("execution", {})
    polling = config.get("polling", {})
    backend = config.get("backend", {})
    logging_cfg = config.get("logging", {})
    defaults = EngineConfig()

    jobs = {
        JobKind(kind): JobPolicyConfig(
            max_attempts=job["max_attempts"],
            progress_step=float(job["progress_step"]),
        )
        for kind, job in polling.get("jobs", {}).items()
    }

    return EngineConfig(
        parallel=execution.get("parallel", defaults.parallel),
        stop_on_error=execution.get("stop_on_error", defaults.stop_on_error),
        poll_interval=float(polling.get("interval", defaults.poll_interval)),
        base_progress=float(polling.get("base_progress", defaults.base_progress)),
        max_poll_errors=polling.get("max_poll_errors", defaults.max_poll_errors),
        jobs=jobs,
        backend_url=backend.get("base_url", defaults.backend_url),
        backend_timeout=float(backend.get("timeout", defaults.backend_timeout)),
        log_level=logging_cfg.get("level", defaults.log_level),
        sources=sources,
    )
