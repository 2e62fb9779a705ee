"""
Runner Configuration
====================

Loads and validates the settings that drive a parallel run.

Key Features:
- Pydantic model with range checks (values are rejected, never clamped)
- Optional YAML config file
- Environment overrides (PARALLEL_RUNNER_*), with .env support via python-dotenv
"""

from pathlib import Path
from typing import List, Literal, Optional, Union
import logging
import os

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from parallel_runner.errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "PARALLEL_RUNNER_"
CONFIG_PATH_ENV = "PARALLEL_RUNNER_CONFIG"
SCHEMA_VERSION = "1.0.0"

DEFAULT_COMPLETION_MARKERS = [
    "spec completed successfully",
    "implementation completed",
    "all tests passed",
    "/moai:3-sync",
]

DEFAULT_FAILURE_MARKERS = [
    "fatal error",
    "critical error",
]


class RunnerConfig(BaseModel):
    """Settings for a parallel run."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    schema_version: str = SCHEMA_VERSION
    max_parallel_sessions: int = Field(10, ge=1, le=10, description="Sessions running at once")
    merge_strategy: Literal["squash", "merge", "rebase"] = "merge"
    target_branch: str = Field("main", min_length=1)
    require_tests_pass: bool = False
    test_command: List[str] = Field(default_factory=lambda: ["pytest", "-q"])
    test_timeout: int = Field(300, ge=1)
    auto_cleanup: bool = True
    push_to_remote: bool = False
    remote_name: str = "origin"
    worktree_dir: str = ".worktrees"
    stale_lock_seconds: float = Field(3600.0, ge=0)
    session_command: List[str] = Field(
        default_factory=lambda: ["claude", "-p", "{prompt}"],
        min_length=1,
        description="Command template; {work_item_id}, {title} and {prompt} are substituted",
    )
    output_buffer_chars: int = Field(10 * 1024 * 1024, ge=1024)
    event_queue_size: int = Field(1000, ge=1)
    completion_markers: List[str] = Field(default_factory=lambda: list(DEFAULT_COMPLETION_MARKERS))
    failure_markers: List[str] = Field(default_factory=lambda: list(DEFAULT_FAILURE_MARKERS))
    dependency_failure_policy: Literal["skip", "dispatch"] = "skip"
    specs_dir: str = ".moai/specs"


# Fields that are lists are read from the environment as whitespace or
# comma separated strings.
_LIST_FIELDS = {"test_command", "session_command", "completion_markers", "failure_markers"}
_SPLIT_ON_COMMA = {"completion_markers", "failure_markers"}


def _env_overrides() -> dict:
    overrides = {}
    for name in RunnerConfig.model_fields:
        raw = os.environ.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        if name in _SPLIT_ON_COMMA:
            overrides[name] = [part.strip() for part in raw.split(",") if part.strip()]
        elif name in _LIST_FIELDS:
            overrides[name] = raw.split()
        else:
            overrides[name] = raw
    return overrides


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file is not valid YAML: {path}", details=str(e))

    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")
    return data


def validate_config(values: dict) -> RunnerConfig:
    """
    Build a RunnerConfig from raw values.

    Raises:
        ConfigError: If any value is out of range or unknown
    """
    try:
        return RunnerConfig(**values)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError("Invalid configuration", details=problems)


def load_config(path: Optional[Union[str, Path]] = None, use_env: bool = True) -> RunnerConfig:
    """
    Load configuration.

    Precedence: environment variables > YAML file > defaults. The YAML file is
    taken from ``path`` or, when not given, from $PARALLEL_RUNNER_CONFIG.

    Args:
        path: Optional YAML config file
        use_env: Whether to read .env and PARALLEL_RUNNER_* variables

    Returns:
        Validated RunnerConfig

    Raises:
        ConfigError: If the file cannot be read or a value is invalid
    """
    values: dict = {}

    if use_env:
        load_dotenv()

    if path is None and use_env:
        path = os.environ.get(CONFIG_PATH_ENV)

    if path:
        values.update(_read_yaml(Path(path)))
        logger.info(f"Loaded config file {path}")

    if use_env:
        overrides = _env_overrides()
        if overrides:
            logger.info(f"Applying environment overrides: {sorted(overrides)}")
        values.update(overrides)

    return validate_config(values)
