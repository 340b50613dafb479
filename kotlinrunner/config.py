"""
Configuration loading and validation for kotlinrunner.

Settings come from three places, lowest precedence first:

1. Environment variables (KOTLINC_PATH, KOTLIN_HOME)
2. A ``kotlinrunner.yaml`` file (explicit path, $KOTLINRUNNER_CONFIG, or
   found by walking up from the working directory)
3. Command-line flags, applied by the CLI with ``with_overrides``

The YAML file is nested by concern (``kotlinc:`` and ``runner:`` sections);
it is flattened into a single RunnerConfig that the execution engine reads.
"""
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from kotlinrunner.utils.commands import DEFAULT_WINDOWS_LIB_DIR

CONFIG_FILENAME = "kotlinrunner.yaml"
CONFIG_ENV_VAR = "KOTLINRUNNER_CONFIG"
KOTLINC_PATH_ENV_VAR = "KOTLINC_PATH"
KOTLIN_HOME_ENV_VAR = "KOTLIN_HOME"


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v.strip() if isinstance(v, str) else v


class KotlincConfig(BaseModel):
    """The ``kotlinc:`` section: where the compiler lives."""
    path: Optional[str] = Field(default=None, description="kotlinc executable (default: kotlinc on PATH)")
    kotlin_home: Optional[str] = Field(default=None, description="Kotlin install root for the classpath probe")
    fallback_lib_dir: Optional[str] = Field(default=DEFAULT_WINDOWS_LIB_DIR, description="Last lib dir probed on Windows")

    @field_validator("path", "kotlin_home", "fallback_lib_dir", mode="before")
    @classmethod
    def validate_paths(cls, v: Any) -> Any:
        """Treat blank paths as unset."""
        return _blank_to_none(v)


class TimingConfig(BaseModel):
    """The ``runner:`` section: bounded waits used during teardown."""
    grace_interval: float = Field(default=0.12, gt=0, description="Seconds between graceful and forced kill")
    poll_interval: float = Field(default=0.05, gt=0, description="Wait-thread polling slice")
    drain_timeout: float = Field(default=2.0, gt=0, description="Max wait for output pipes after exit")
    teardown_timeout: float = Field(default=5.0, gt=0, description="Max wait for the previous run before a new spawn")


class RunnerConfig(BaseModel):
    """Flattened settings consumed by RunController and ProcessSession."""
    kotlinc_path: Optional[str] = None
    kotlin_home: Optional[str] = None
    fallback_lib_dir: Optional[str] = DEFAULT_WINDOWS_LIB_DIR
    grace_interval: float = Field(default=0.12, gt=0)
    poll_interval: float = Field(default=0.05, gt=0)
    drain_timeout: float = Field(default=2.0, gt=0)
    teardown_timeout: float = Field(default=5.0, gt=0)
    config_path: Optional[Path] = Field(default=None, description="File this config was loaded from")

    @field_validator("kotlinc_path", "kotlin_home", "fallback_lib_dir", mode="before")
    @classmethod
    def validate_paths(cls, v: Any) -> Any:
        """Treat blank paths as unset."""
        return _blank_to_none(v)

    @model_validator(mode="after")
    def validate_teardown(self) -> "RunnerConfig":
        """The pre-spawn wait must outlast a full two-phase kill."""
        if self.teardown_timeout < 2 * self.grace_interval:
            raise ValueError(
                f"teardown_timeout ({self.teardown_timeout}) must be at least "
                f"twice grace_interval ({self.grace_interval})"
            )
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "RunnerConfig":
        """Build a config from KOTLINC_PATH / KOTLIN_HOME plus explicit overrides."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {
            "kotlinc_path": environ.get(KOTLINC_PATH_ENV_VAR),
            "kotlin_home": environ.get(KOTLIN_HOME_ENV_VAR),
        }
        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "RunnerConfig":
        """Return a validated copy with the non-None overrides applied."""
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RunnerConfig(**values)

    def to_yaml_dict(self) -> Dict[str, Any]:
        """Nested form written by ``kotlinrunner init``."""
        return {
            "kotlinc": {
                "path": self.kotlinc_path,
                "kotlin_home": self.kotlin_home,
                "fallback_lib_dir": self.fallback_lib_dir,
            },
            "runner": {
                "grace_interval": self.grace_interval,
                "poll_interval": self.poll_interval,
                "drain_timeout": self.drain_timeout,
                "teardown_timeout": self.teardown_timeout,
            },
        }


def find_config_file(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find kotlinrunner.yaml in current or parent directories.

    Args:
        start_path: Starting directory (defaults to current working directory)

    Returns:
        Path to config file, or None if not found
    """
    current = start_path or Path.cwd()

    # Search up to 5 levels
    for _ in range(5):
        config_path = current / CONFIG_FILENAME
        if config_path.exists():
            return config_path

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def load_config(config_path: Path, environ: Optional[Mapping[str, str]] = None) -> RunnerConfig:
    """
    Load and validate configuration from a YAML file.

    Values missing from the file fall back to the environment, then to the
    built-in defaults.

    Args:
        config_path: Path to kotlinrunner.yaml
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated RunnerConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If configuration is invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Malformed YAML in {config_path}: {e}") from e

    if not raw_config or not isinstance(raw_config, dict):
        raise ValueError(f"Empty or invalid config file: {config_path}")

    normalized: Dict[str, Any] = {"config_path": config_path}

    if "kotlinc" in raw_config:
        kotlinc_conf = raw_config["kotlinc"]
        if not isinstance(kotlinc_conf, dict):
            raise ValueError(f"'kotlinc' must be a mapping in {config_path}")
        kotlinc = KotlincConfig(**kotlinc_conf)
        # Unset (null or blank) paths fall back to the environment
        if kotlinc.path is not None:
            normalized["kotlinc_path"] = kotlinc.path
        if kotlinc.kotlin_home is not None:
            normalized["kotlin_home"] = kotlinc.kotlin_home
        if "fallback_lib_dir" in kotlinc_conf:
            normalized["fallback_lib_dir"] = kotlinc.fallback_lib_dir

    if "runner" in raw_config:
        runner_conf = raw_config["runner"]
        if not isinstance(runner_conf, dict):
            raise ValueError(f"'runner' must be a mapping in {config_path}")
        normalized.update(TimingConfig(**runner_conf).model_dump(include=set(runner_conf)))

    environ = os.environ if environ is None else environ
    if "kotlinc_path" not in normalized:
        normalized["kotlinc_path"] = environ.get(KOTLINC_PATH_ENV_VAR)
    if "kotlin_home" not in normalized:
        normalized["kotlin_home"] = environ.get(KOTLIN_HOME_ENV_VAR)

    return RunnerConfig(**normalized)


def resolve_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    start_path: Optional[Path] = None,
) -> RunnerConfig:
    """
    Locate and load the effective configuration.

    Order: explicit ``config_path``, then $KOTLINRUNNER_CONFIG, then a
    kotlinrunner.yaml found from ``start_path`` upwards. Without any file the
    config is built from the environment alone.
    """
    environ = os.environ if environ is None else environ
    if config_path is None and environ.get(CONFIG_ENV_VAR):
        config_path = Path(environ[CONFIG_ENV_VAR])
    if config_path is None:
        config_path = find_config_file(start_path)
    if config_path is None:
        return RunnerConfig.from_env(environ)
    return load_config(config_path, environ)
