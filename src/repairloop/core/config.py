"""Configuration management for repairloop."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..correction.models import SelfCorrectionPolicy
from ..exceptions import ConfigError
from . import defaults as D

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "true", "yes", "on")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class SelfCorrectionConfig:
    """Repair loop policy settings."""

    max_repair_iterations: int = D.DEFAULT_MAX_REPAIR_ITERATIONS
    max_consecutive_same_failure: int = D.DEFAULT_MAX_CONSECUTIVE_SAME_FAILURE
    allow_auto_rerun_allowlisted_tests: bool = D.DEFAULT_ALLOW_AUTO_RERUN_ALLOWLISTED_TESTS
    stop_on_scope_expansion_denied: bool = D.DEFAULT_STOP_ON_SCOPE_EXPANSION_DENIED
    stop_on_repeated_stale_context: bool = D.DEFAULT_STOP_ON_REPEATED_STALE_CONTEXT
    timeout_retry_once: bool = D.DEFAULT_TIMEOUT_RETRY_ONCE
    repair_diagnosis_timeout_ms: int = D.DEFAULT_REPAIR_DIAGNOSIS_TIMEOUT_MS
    repair_diff_gen_timeout_ms: int = D.DEFAULT_REPAIR_DIFF_GEN_TIMEOUT_MS
    test_run_timeout_ms: int = D.DEFAULT_TEST_RUN_TIMEOUT_MS


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = D.DEFAULT_LOG_LEVEL


# Keys accepted in the `self_correction` section, with their coercion
_POLICY_KEYS: dict[str, type] = {
    "max_repair_iterations": int,
    "max_consecutive_same_failure": int,
    "allow_auto_rerun_allowlisted_tests": bool,
    "stop_on_scope_expansion_denied": bool,
    "stop_on_repeated_stale_context": bool,
    "timeout_retry_once": bool,
    "repair_diagnosis_timeout_ms": int,
    "repair_diff_gen_timeout_ms": int,
    "test_run_timeout_ms": int,
}

_ENV_OVERRIDES: dict[str, str] = {
    "REPAIRLOOP_MAX_REPAIR_ITERATIONS": "max_repair_iterations",
    "REPAIRLOOP_MAX_CONSECUTIVE_SAME_FAILURE": "max_consecutive_same_failure",
    "REPAIRLOOP_DIAGNOSIS_TIMEOUT_MS": "repair_diagnosis_timeout_ms",
    "REPAIRLOOP_DIFF_GEN_TIMEOUT_MS": "repair_diff_gen_timeout_ms",
    "REPAIRLOOP_TEST_RUN_TIMEOUT_MS": "test_run_timeout_ms",
    "REPAIRLOOP_AUTO_RERUN": "allow_auto_rerun_allowlisted_tests",
}


def _coerce(key: str, value: Any, kind: type) -> Any:
    if kind is bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE_VALUES
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from e


@dataclass
class Config:
    """Main application configuration."""

    self_correction: SelfCorrectionConfig = field(default_factory=SelfCorrectionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Standard paths
    USER_CONFIG_DIR: Path = Path.home() / ".repairloop"
    USER_CONFIG_FILE: Path = USER_CONFIG_DIR / "config.yaml"
    PROJECT_CONFIG_FILE: Path = Path(".repairloop") / "config.yaml"

    @classmethod
    def load(
        cls,
        project_dir: Path | None = None,
        user_config_file: Path | None = None,
    ) -> Config:
        """Load configuration from user and project files, then environment."""
        config = cls()

        user_file = user_config_file or cls.USER_CONFIG_FILE
        if user_file.exists():
            config._merge_from_file(user_file)

        # Project config overrides user config
        project_config = (project_dir or Path.cwd()) / cls.PROJECT_CONFIG_FILE
        if project_config.exists():
            config._merge_from_file(project_config)

        config._apply_env_overrides()

        return config

    @classmethod
    def from_file(cls, path: Path) -> Config:
        """Load a single YAML file, without project or environment overrides."""
        config = cls()
        if path.exists():
            config._merge_from_file(path)
        return config

    def _merge_from_file(self, path: Path) -> None:
        """Merge configuration from a YAML file."""
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError):
            logger.warning("Ignoring unreadable config file %s", path, exc_info=True)
            return

        if not isinstance(data, dict):
            logger.warning("Ignoring config file %s: top level is not a mapping", path)
            return

        section = data.get("self_correction") or {}
        for key, kind in _POLICY_KEYS.items():
            if key in section:
                self.set_value(key, _coerce(key, section[key], kind))

        logging_section = data.get("logging") or {}
        if "level" in logging_section:
            self.set_value("log_level", logging_section["level"])

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""
        for env_name, key in _ENV_OVERRIDES.items():
            if (raw := os.environ.get(env_name)) is not None:
                self.set_value(key, _coerce(key, raw, _POLICY_KEYS[key]))
        if level := os.environ.get("REPAIRLOOP_LOG_LEVEL"):
            self.set_value("log_level", level)

    def set_value(self, key: str, value: Any) -> None:
        """Set a single configuration value by its flat key.

        Raises:
            ConfigError: If the key is unknown or the value is invalid.
        """
        if key == "log_level":
            level = str(value).upper()
            if level not in _LOG_LEVELS:
                raise ConfigError(f"Unknown log level: {value}")
            self.logging.level = level
            return
        if key not in _POLICY_KEYS:
            raise ConfigError(f"Unknown config key: {key}")
        setattr(self.self_correction, key, _coerce(key, value, _POLICY_KEYS[key]))

    def to_policy(self) -> SelfCorrectionPolicy:
        """Build a validated policy from the self-correction section."""
        sc = self.self_correction
        if sc.max_repair_iterations < 0:
            raise ConfigError("max_repair_iterations must be >= 0")
        if sc.max_consecutive_same_failure < 1:
            raise ConfigError("max_consecutive_same_failure must be >= 1")
        for key in ("repair_diagnosis_timeout_ms", "repair_diff_gen_timeout_ms", "test_run_timeout_ms"):
            if getattr(sc, key) <= 0:
                raise ConfigError(f"{key} must be > 0")

        return SelfCorrectionPolicy(
            max_repair_iterations=sc.max_repair_iterations,
            max_consecutive_same_failure=sc.max_consecutive_same_failure,
            allow_auto_rerun_allowlisted_tests=sc.allow_auto_rerun_allowlisted_tests,
            stop_on_scope_expansion_denied=sc.stop_on_scope_expansion_denied,
            stop_on_repeated_stale_context=sc.stop_on_repeated_stale_context,
            timeout_retry_once=sc.timeout_retry_once,
            repair_diagnosis_timeout_ms=sc.repair_diagnosis_timeout_ms,
            repair_diff_gen_timeout_ms=sc.repair_diff_gen_timeout_ms,
            test_run_timeout_ms=sc.test_run_timeout_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the YAML file layout."""
        sc = self.self_correction
        return {
            "self_correction": {key: getattr(sc, key) for key in _POLICY_KEYS},
            "logging": {"level": self.logging.level},
        }

    def save_user_config(self, path: Path | None = None) -> Path:
        """Save current configuration to the user config file."""
        file_path = path or self.USER_CONFIG_FILE
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(file_path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False)

        return file_path
