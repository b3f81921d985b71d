"""
Rentcycle Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (RENTCYCLE_*)
    2. Runtime overrides
    3. User config file (~/.rentcycle/config.yaml)
    4. Project config file (./rentcycle.yaml or ./config/rentcycle.yaml)
    5. Default values
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from rentcycle.errors import RentcycleError

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ConfigError(RentcycleError):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with validation."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        elif isinstance(self.default, Decimal) and not isinstance(value, Decimal):
            value = Decimal(str(value))
        elif isinstance(self.default, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value
        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        elif target_type == Decimal:
            return Decimal(value)  # type: ignore
        elif target_type == list:
            return [v.strip() for v in value.split(",") if v.strip()]  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


@dataclass
class StoreConfig:
    """Configuration for the SQLite state store."""
    path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="rentcycle.db",
        env_var="RENTCYCLE_STORE_PATH",
        description="Path to the SQLite database file",
        validator=lambda x: bool(x) and x != ":memory:",
    ))
    busy_timeout_ms: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5000,
        env_var="RENTCYCLE_STORE_BUSY_TIMEOUT_MS",
        description="How long a writer waits for the database lock",
        validator=lambda x: x >= 0,
    ))


@dataclass
class SchedulerConfig:
    """Configuration for the Scheduled Activator."""
    interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=3600.0,
        env_var="RENTCYCLE_SCHEDULER_INTERVAL",
        description="Seconds between activation sweeps",
        validator=lambda x: x > 0,
    ))
    batch_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=500,
        env_var="RENTCYCLE_SCHEDULER_BATCH_SIZE",
        description="Maximum records examined per sweep and status",
        validator=lambda x: x > 0,
    ))
    sweep_paid: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="RENTCYCLE_SCHEDULER_SWEEP_PAID",
        description="Also promote records left in paid",
    ))


@dataclass
class NoticeConfig:
    """Configuration for best-effort notice dispatch."""
    max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="RENTCYCLE_NOTICES_MAX_ATTEMPTS",
        description="Delivery attempts before a notice is dead-lettered",
        validator=lambda x: x >= 1,
    ))
    base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var="RENTCYCLE_NOTICES_BASE_DELAY",
        description="Initial retry delay (exponential backoff)",
        validator=lambda x: x >= 0,
    ))
    max_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=300.0,
        env_var="RENTCYCLE_NOTICES_MAX_DELAY",
        description="Upper bound on retry delay",
        validator=lambda x: x >= 0,
    ))
    breaker_failure_threshold: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="RENTCYCLE_NOTICES_BREAKER_THRESHOLD",
        description="Consecutive failures before the notice channel is short-circuited",
        validator=lambda x: x >= 1,
    ))
    breaker_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="RENTCYCLE_NOTICES_BREAKER_TIMEOUT",
        description="Seconds before a tripped notice channel is retried",
        validator=lambda x: x > 0,
    ))


@dataclass
class PolicyConfig:
    """Business policy knobs used by guards and settlement."""
    cancellation_cutoff_hours: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=24,
        env_var="RENTCYCLE_POLICY_CANCEL_CUTOFF_HOURS",
        description="Hours before the start date after which pickup-stage cancellation closes",
        validator=lambda x: x >= 0,
    ))
    late_cancellation_penalty_rate: ConfigValue[Decimal] = field(default_factory=lambda: ConfigValue(
        default=Decimal("0.50"),
        env_var="RENTCYCLE_POLICY_LATE_CANCEL_PENALTY",
        description="Share of the rental amount kept by the provider on late cancellation (0-1)",
        validator=lambda x: Decimal("0") <= x <= Decimal("1"),
    ))
    cap_claim_at_deposit: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="RENTCYCLE_POLICY_CAP_CLAIM_AT_DEPOSIT",
        description="Reject damage claims larger than the held deposit",
    ))


@dataclass
class AuthConfig:
    """Identities outside the two rental parties."""
    system_actor_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="system:scheduler",
        env_var="RENTCYCLE_AUTH_SYSTEM_ACTOR",
        description="Principal id the scheduler acts as",
        validator=lambda x: bool(x),
    ))
    resolver_ids: ConfigValue[list] = field(default_factory=lambda: ConfigValue(
        default=[],
        env_var="RENTCYCLE_AUTH_RESOLVER_IDS",
        description="Principal ids allowed to resolve disputes (comma separated in env)",
    ))


@dataclass
class FeedConfig:
    """Configuration for the change feed."""
    async_delivery: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="RENTCYCLE_FEED_ASYNC",
        description="Deliver change events on a background thread",
    ))
    max_delivery_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=0.1,
        env_var="RENTCYCLE_FEED_MAX_DELAY",
        description="Poll interval of the async delivery worker",
        validator=lambda x: x > 0,
    ))
    queue_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1000,
        env_var="RENTCYCLE_FEED_QUEUE_SIZE",
        description="Async delivery queue capacity",
        validator=lambda x: x > 0,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="RENTCYCLE_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="RENTCYCLE_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class RentcycleConfig:
    """
    Root configuration for rentcycle.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    store: StoreConfig = field(default_factory=StoreConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    notices: NoticeConfig = field(default_factory=NoticeConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                return str(value) if isinstance(value, Decimal) else value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        """Convert to YAML string."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = RentcycleConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[RentcycleConfig], None]] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> RentcycleConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data:
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            self._apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path.home() / ".rentcycle" / "config.yaml",
            Path("config/rentcycle.yaml"),
            Path("rentcycle.yaml"),
        ]

        for path in default_paths:
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    logger.warning("Ignoring default config %s: %s", path, e)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    logger.warning("Unknown config key %s%s", prefix, key)
                    continue
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")

        apply_to_config(self._config, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("policy.cancellation_cutoff_hours", 48)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("scheduler.interval_seconds")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def watch(self, callback: Callable[[RentcycleConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                except (ValueError, ArithmeticError) as e:
                    errors.append(f"{path}: {e}")
                    return
                if obj.validator and not obj.validator(value):
                    errors.append(f"{path}: validation failed for value {value!r}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> RentcycleConfig:
    """Get the current rentcycle configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
