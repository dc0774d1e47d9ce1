"""
Configuration module for loading and validating environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")


class Config:
    """
    Sandbox orchestrator configuration loaded from environment variables.

    Any attribute can be overridden with a keyword argument, which is how
    tests build configurations without touching the process environment.
    """

    def __init__(self, load_env: bool = True, **overrides: Any):
        if load_env:
            # Load .env file from project root
            env_path = Path(__file__).parent.parent / ".env"
            load_dotenv(dotenv_path=env_path)

        # Port pool (end is exclusive)
        self.port_range_start = _env_int("SANDBOX_PORT_RANGE_START", 5000)
        self.port_range_end = _env_int("SANDBOX_PORT_RANGE_END", 5050)
        self.check_ports = _env_bool("SANDBOX_CHECK_PORTS", True)
        self.host = os.getenv("SANDBOX_HOST", "localhost")

        # Scratch directories for generated project files
        self.sandbox_dir = Path(os.getenv("SANDBOX_DIR", str(Path.cwd() / "sandboxes")))

        # Retirement
        self.ttl_minutes = _env_int("SANDBOX_TTL_MINUTES", 120)
        self.error_grace_minutes = _env_int("SANDBOX_ERROR_GRACE_MINUTES", 15)
        self.cleanup_interval_seconds = _env_float("SANDBOX_CLEANUP_INTERVAL_SECONDS", 300)
        self.cleanup_delete_records = _env_bool("SANDBOX_CLEANUP_DELETE_RECORDS", False)

        # Health monitoring
        self.health_interval_seconds = _env_float("SANDBOX_HEALTH_INTERVAL_SECONDS", 5)
        self.health_failure_threshold = _env_int("SANDBOX_HEALTH_FAILURE_THRESHOLD", 3)
        # Unset means the provider chain's worst case, see provider_budget_seconds
        self.provisioning_timeout_seconds = _env_float("SANDBOX_PROVISIONING_TIMEOUT_SECONDS", None)
        self.max_restarts = _env_int("SANDBOX_MAX_RESTARTS", 5)

        # Provider chain
        self.local_timeout_seconds = _env_float("SANDBOX_LOCAL_TIMEOUT_SECONDS", 300)
        self.hosted_timeout_seconds = _env_float("SANDBOX_HOSTED_TIMEOUT_SECONDS", 30)
        self.static_timeout_seconds = _env_float("SANDBOX_STATIC_TIMEOUT_SECONDS", 10)
        self.provider_retries = _env_int("SANDBOX_PROVIDER_RETRIES", 1)
        self.max_concurrent_builds = _env_int("SANDBOX_MAX_CONCURRENT_BUILDS", 2)

        # Container resource limits
        self.memory_limit = os.getenv("SANDBOX_MEMORY_LIMIT", "1g")
        self.cpu_limit = _env_float("SANDBOX_CPU_LIMIT", 1.0)

        # Log buffers
        self.log_tail_lines = _env_int("SANDBOX_LOG_TAIL_LINES", 200)
        self.transport_log_lines = _env_int("SANDBOX_TRANSPORT_LOG_LINES", 10)

        # Hosted providers
        self.e2b_api_key = os.getenv("E2B_API_KEY")
        self.e2b_api_url = os.getenv("E2B_API_URL", "https://api.e2b.dev")
        self.codesandbox_url = os.getenv("CODESANDBOX_URL", "https://codesandbox.io")
        self.codesandbox_api_key = os.getenv("CODESANDBOX_API_KEY")
        self.enable_codesandbox = _env_bool("SANDBOX_ENABLE_CODESANDBOX", True)
        self.enable_stackblitz = _env_bool("SANDBOX_ENABLE_STACKBLITZ", True)

        # Persistence
        registry_file = os.getenv("SANDBOX_REGISTRY_FILE")
        self.registry_file: Optional[Path] = Path(registry_file) if registry_file else None

        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ConfigError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

        if self.provisioning_timeout_seconds is None:
            self.provisioning_timeout_seconds = self.provider_budget_seconds

        # Validate settings
        self._validate()

    def _validate(self):
        """Validate that the settings are usable together."""
        problems = []

        if self.port_range_start <= 0 or self.port_range_end > 65536:
            problems.append("port range must lie within 1-65535")
        if self.port_range_end <= self.port_range_start:
            problems.append("SANDBOX_PORT_RANGE_END must be greater than SANDBOX_PORT_RANGE_START")
        if self.ttl_minutes <= 0:
            problems.append("SANDBOX_TTL_MINUTES must be positive")
        if self.health_failure_threshold < 1:
            problems.append("SANDBOX_HEALTH_FAILURE_THRESHOLD must be at least 1")
        if self.health_interval_seconds <= 0 or self.cleanup_interval_seconds <= 0:
            problems.append("health and cleanup intervals must be positive")
        if self.provider_retries < 0:
            problems.append("SANDBOX_PROVIDER_RETRIES cannot be negative")
        if self.max_concurrent_builds < 1:
            problems.append("SANDBOX_MAX_CONCURRENT_BUILDS must be at least 1")
        if self.provisioning_timeout_seconds < self.provider_budget_seconds:
            problems.append(
                f"SANDBOX_PROVISIONING_TIMEOUT_SECONDS ({self.provisioning_timeout_seconds:g}s) is shorter "
                f"than the provider chain can take ({self.provider_budget_seconds:g}s)"
            )

        if problems:
            raise ConfigError(
                "Invalid sandbox configuration:\n- " + "\n- ".join(problems)
            )

    @property
    def provider_budget_seconds(self) -> float:
        """Longest the fallback chain can spend when every attempt times out."""
        hosted = sum(1 for enabled in (self.e2b_api_key, self.enable_codesandbox, self.enable_stackblitz) if enabled)
        per_round = self.local_timeout_seconds + hosted * self.hosted_timeout_seconds + self.static_timeout_seconds
        return per_round * (self.provider_retries + 1)

    @property
    def port_range(self) -> range:
        return range(self.port_range_start, self.port_range_end)


def configure_logging(config: Config) -> None:
    """Configure root logging for the process."""
    logging.basicConfig(
        level=getattr(logging, str(config.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
