# workflow_engine/config.py
"""
Engine Configuration - layered settings for schedulers, resilience and caching.

Layers, later ones winning:
    built-in defaults -> APP_ENV overrides (dev/test/prod)
    -> YAML file (ENGINE_CONFIG_PATH) -> ENGINE_* environment variables
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .batch import BatchConfig
from .cache.tiers import TieredCache
from .engine_logging import get_logger
from .resilience.circuit_breaker import CircuitBreakerConfig
from .resilience.retry import RetryPolicy

logger = get_logger(__name__)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _optional_path(value: str) -> Optional[str]:
    return value or None


class EngineConfig:
    """Workflow engine configuration management"""

    ENV_MAPPINGS = {
        "ENGINE_CONCURRENCY_LIMIT": ("scheduler", "concurrency_limit", int),
        "ENGINE_MAX_RETRIES": ("retry", "max_retries", int),
        "ENGINE_RETRY_BASE_DELAY_S": ("retry", "base_delay_s", float),
        "ENGINE_RETRY_MAX_DELAY_S": ("retry", "max_delay_s", float),
        "ENGINE_RETRY_JITTER": ("retry", "jitter", float),
        "ENGINE_BREAKER_FAILURE_THRESHOLD": ("circuit_breaker", "failure_threshold", int),
        "ENGINE_BREAKER_COOLDOWN_S": ("circuit_breaker", "cooldown_s", float),
        "ENGINE_BREAKER_PERSIST_PATH": ("circuit_breaker", "persist_path", _optional_path),
        "ENGINE_CACHE_LOCAL_MAX_ENTRIES": ("cache", "local_max_entries", int),
        "ENGINE_CACHE_LOCAL_TTL_S": ("cache", "local_ttl_s", float),
        "ENGINE_CACHE_SHARED_MAX_ENTRIES": ("cache", "shared_max_entries", int),
        "ENGINE_CACHE_SHARED_TTL_S": ("cache", "shared_ttl_s", float),
        "ENGINE_CACHE_PERSIST_PATH": ("cache", "persist_path", _optional_path),
        "ENGINE_BATCH_MAX_SIZE": ("batch", "max_size", int),
        "ENGINE_BATCH_WINDOW_S": ("batch", "window_s", float),
        "ENGINE_RECURSION_MAX_DEPTH": ("recursion", "max_depth", int),
        "ENGINE_STATE_ENABLED": ("state", "enabled", _as_bool),
        "ENGINE_STATE_PATH": ("state", "storage_path", str),
    }

    def __init__(self, env: Optional[str] = None, config_path: Optional[Path] = None):
        """
        Initialize engine configuration for an environment.

        Args:
            env: Environment name (dev, test, prod). Defaults to APP_ENV.
            config_path: YAML file with overrides. Defaults to ENGINE_CONFIG_PATH.
        """
        self.env = env or os.getenv("APP_ENV", "dev")
        path = config_path or os.getenv("ENGINE_CONFIG_PATH")
        self.config_path = Path(path) if path else None
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        config = {
            "scheduler": {
                "concurrency_limit": 8,
            },
            "retry": {
                "max_retries": 3,
                "base_delay_s": 0.5,
                "max_delay_s": 30.0,
                "exponential_base": 2.0,
                "jitter": 0.1,
            },
            "circuit_breaker": {
                "failure_threshold": 5,
                "cooldown_s": 30.0,
                "persist_path": None,
            },
            "cache": {
                "local_max_entries": 256,
                "local_ttl_s": 60.0,
                "shared_max_entries": 4096,
                "shared_ttl_s": 3600.0,
                "persist_path": None,
            },
            "batch": {
                "min_size": 1,
                "max_size": 32,
                "initial_size": 8,
                "window_s": 0.05,
                "target_error_rate": 0.2,
                "target_latency_s": 2.0,
            },
            "recursion": {
                "max_depth": 10,
            },
            "state": {
                "enabled": False,
                "storage_path": "artifacts/runs",
            },
        }

        env_overrides = {
            "dev": {
                "scheduler": {"concurrency_limit": 4},
            },
            "test": {
                "scheduler": {"concurrency_limit": 2},
                "retry": {"base_delay_s": 0.01, "max_delay_s": 0.1, "jitter": 0.0},
                "circuit_breaker": {"cooldown_s": 1.0},
                "batch": {"window_s": 0.01},
            },
            "prod": {
                "scheduler": {"concurrency_limit": 32},
                "state": {"enabled": True},
            },
        }

        if self.env in env_overrides:
            config = self._merge_config(config, env_overrides[self.env])

        if self.config_path is not None:
            config = self._merge_config(config, self._load_file(self.config_path))

        config = self._apply_env_overrides(config)

        logger.info(f"Engine configuration loaded for environment: {self.env}")
        logger.debug(f"Configuration: {config}")
        return config

    def _load_file(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            logger.warning(f"Engine config file {path} not found, using defaults")
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Could not load engine config {path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Engine config {path} must be a mapping, got {type(data).__name__}")
            return {}
        logger.info(f"Loaded engine config overrides from {path}")
        return data

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries"""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides with ENGINE_ prefix"""
        for env_var, (section, key, converter) in self.ENV_MAPPINGS.items():
            if env_value := os.getenv(env_var):
                try:
                    config.setdefault(section, {})[key] = converter(env_value)
                    logger.info(f"Applied env override: {env_var}={env_value}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"Invalid env override {env_var}={env_value}: {e}")
        return config

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get configuration value with optional default"""
        return self._config.get(section, {}).get(key, default)

    def section(self, name: str) -> Dict[str, Any]:
        return dict(self._config.get(name, {}))

    @property
    def concurrency_limit(self) -> int:
        return int(self.get("scheduler", "concurrency_limit", 8))

    @property
    def max_recursion_depth(self) -> int:
        return int(self.get("recursion", "max_depth", 10))

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.section("retry"))

    def breaker_config(self) -> CircuitBreakerConfig:
        section = self.section("circuit_breaker")
        return CircuitBreakerConfig(
            failure_threshold=section["failure_threshold"],
            cooldown_s=section["cooldown_s"],
        )

    def batch_config(self) -> BatchConfig:
        return BatchConfig(**self.section("batch"))

    def build_cache(self) -> TieredCache:
        section = self.section("cache")
        persist_path = section.get("persist_path")
        return TieredCache.create(
            local_max_entries=section["local_max_entries"],
            local_ttl=section["local_ttl_s"],
            shared_max_entries=section["shared_max_entries"],
            shared_ttl=section["shared_ttl_s"],
            persist_path=Path(persist_path) if persist_path else None,
        )

    @property
    def breaker_persist_path(self) -> Optional[Path]:
        path = self.get("circuit_breaker", "persist_path")
        return Path(path) if path else None

    @property
    def state_path(self) -> Optional[Path]:
        if not self.get("state", "enabled", False):
            return None
        return Path(self.get("state", "storage_path", "artifacts/runs"))

    def validate_config(self) -> bool:
        """Validate configuration values are within acceptable ranges"""
        issues = []

        if not (1 <= self.concurrency_limit <= 1024):
            issues.append(f"Invalid concurrency limit: {self.concurrency_limit} (must be 1-1024)")

        if self.max_recursion_depth < 1:
            issues.append(f"Invalid recursion depth: {self.max_recursion_depth} (must be >= 1)")

        for name, build in (("retry", self.retry_policy), ("circuit_breaker", self.breaker_config), ("batch", self.batch_config)):
            try:
                build()
            except (ValueError, TypeError, KeyError) as e:
                issues.append(f"Invalid {name} settings: {e}")

        for key in ("local_max_entries", "shared_max_entries"):
            if int(self.get("cache", key, 0)) < 1:
                issues.append(f"Invalid cache {key}: must be >= 1")

        if issues:
            for issue in issues:
                logger.error(f"Configuration validation error: {issue}")
            return False

        logger.info("Engine configuration validation passed")
        return True


# Global configuration instance
_config_instance: Optional[EngineConfig] = None


def get_engine_config(env: Optional[str] = None) -> EngineConfig:
    """Get global engine configuration instance"""
    global _config_instance

    if _config_instance is None or (env and _config_instance.env != env):
        _config_instance = EngineConfig(env)

        if not _config_instance.validate_config():
            logger.error("Engine configuration validation failed")

    return _config_instance
