"""
Configuration management and loading.

Handles batch limits, admission control settings, and storage locations.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


@dataclass(frozen=True)
class GenerationConfig:
    """Upstream image model settings."""
    model: str = "gpt-image-1"
    size: str = "1024x1024"
    cost_per_image: Optional[float] = None

    def __post_init__(self):
        if not self.model:
            raise ValueError("generation.model must not be empty")
        if self.cost_per_image is not None and self.cost_per_image < 0:
            raise ValueError("generation.cost_per_image must be >= 0")


@dataclass(frozen=True)
class LimitsConfig:
    """Batch shape limits."""
    max_items_per_batch: int = 10
    max_variants_per_item: int = 3

    def __post_init__(self):
        if self.max_items_per_batch < 1:
            raise ValueError("limits.max_items_per_batch must be >= 1")
        if self.max_variants_per_item < 1:
            raise ValueError("limits.max_variants_per_item must be >= 1")


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-user submission throttling.

    Cooldowns and daily batch counts are held in the memory of the running
    process. Each CLI invocation starts with a fresh limiter; only a
    long-running service enforces them across submissions.
    """
    cooldown_seconds: float = 600.0
    daily_batch_limit: int = 100

    def __post_init__(self):
        if self.cooldown_seconds < 0:
            raise ValueError("rate_limit.cooldown_seconds must be >= 0")
        if self.daily_batch_limit < 0:
            raise ValueError("rate_limit.daily_batch_limit must be >= 0")


@dataclass(frozen=True)
class BudgetConfig:
    """Daily spend limits.

    ``store: sqlite`` keeps spend in the database at ``storage.db_path``
    and shares it between processes; ``memory`` lasts one process.
    """
    daily_limit: float = 10.0
    alert_threshold: float = 0.8
    per_user: Dict[str, float] = field(default_factory=dict)
    store: str = "sqlite"

    def __post_init__(self):
        if self.daily_limit <= 0:
            raise ValueError("budget.daily_limit must be > 0")
        if not 0 < self.alert_threshold <= 1:
            raise ValueError("budget.alert_threshold must be in (0, 1]")
        for user_id, limit in self.per_user.items():
            if limit <= 0:
                raise ValueError(f"budget.per_user.{user_id} must be > 0")
        if self.store not in ("memory", "sqlite"):
            raise ValueError("budget.store must be one of: ['memory', 'sqlite']")

    def limit_for(self, user_id: str) -> float:
        """Daily limit for a user, using the default if not overridden."""
        return self.per_user.get(user_id, self.daily_limit)


@dataclass(frozen=True)
class IdempotencyConfig:
    ttl_seconds: float = 24 * 60 * 60

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("idempotency.ttl_seconds must be > 0")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings for flaky upstream calls."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 15.0
    jitter: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("retry.max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0 or self.jitter < 0:
            raise ValueError("retry delays must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("retry.max_delay must be >= retry.base_delay")


@dataclass(frozen=True)
class CircuitConfig:
    fail_threshold: int = 5
    cooldown_seconds: float = 10.0

    def __post_init__(self):
        if self.fail_threshold < 0:
            raise ValueError("circuit.fail_threshold must be >= 0")
        if self.cooldown_seconds < 0:
            raise ValueError("circuit.cooldown_seconds must be >= 0")


@dataclass(frozen=True)
class ReferencesConfig:
    """Signed reference URL lifetimes."""
    staleness_seconds: float = 300.0
    url_ttl_seconds: float = 7 * 24 * 60 * 60

    def __post_init__(self):
        if self.staleness_seconds < 0:
            raise ValueError("references.staleness_seconds must be >= 0")
        if self.url_ttl_seconds <= 0:
            raise ValueError("references.url_ttl_seconds must be > 0")


@dataclass(frozen=True)
class StreamConfig:
    poll_interval: float = 2.0
    heartbeat_interval: float = 30.0

    def __post_init__(self):
        if self.poll_interval <= 0:
            raise ValueError("stream.poll_interval must be > 0")
        if self.heartbeat_interval <= 0:
            raise ValueError("stream.heartbeat_interval must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Where job state, ledgers, and the SQLite database live."""
    backend: str = "local"
    root: str = ".ai-batch-guard"
    bucket: Optional[str] = None
    db_path: str = ".ai-batch-guard.db"
    base_url: Optional[str] = None
    signing_key: str = "local-signing-key"

    def __post_init__(self):
        if self.backend not in ("local", "gcs"):
            raise ValueError("storage.backend must be one of: ['local', 'gcs']")
        if self.backend == "gcs" and not self.bucket:
            raise ValueError("storage.bucket is required for the gcs backend")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"

    def __post_init__(self):
        if self.level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("logging.level must be a standard level name")


@dataclass(frozen=True)
class BatchGuardConfig:
    """Complete configuration."""
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit: CircuitConfig = field(default_factory=CircuitConfig)
    references: ReferencesConfig = field(default_factory=ReferencesConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def default_config() -> BatchGuardConfig:
    """Configuration with every section at its defaults."""
    return BatchGuardConfig()


_NUMBER = (int, float)

# section -> (dataclass, {key: accepted types})
_SECTIONS: Dict[str, Any] = {
    "generation": (GenerationConfig, {"model": str, "size": str, "cost_per_image": _NUMBER}),
    "limits": (LimitsConfig, {"max_items_per_batch": int, "max_variants_per_item": int}),
    "rate_limit": (RateLimitConfig, {"cooldown_seconds": _NUMBER, "daily_batch_limit": int}),
    "budget": (BudgetConfig, {"daily_limit": _NUMBER, "alert_threshold": _NUMBER, "per_user": dict, "store": str}),
    "idempotency": (IdempotencyConfig, {"ttl_seconds": _NUMBER}),
    "retry": (RetryConfig, {"max_attempts": int, "base_delay": _NUMBER, "max_delay": _NUMBER, "jitter": _NUMBER}),
    "circuit": (CircuitConfig, {"fail_threshold": int, "cooldown_seconds": _NUMBER}),
    "references": (ReferencesConfig, {"staleness_seconds": _NUMBER, "url_ttl_seconds": _NUMBER}),
    "stream": (StreamConfig, {"poll_interval": _NUMBER, "heartbeat_interval": _NUMBER}),
    "storage": (StorageConfig, {
        "backend": str, "root": str, "bucket": str, "db_path": str, "base_url": str, "signing_key": str,
    }),
    "logging": (LoggingConfig, {"level": str}),
}


def load_config(path: str) -> BatchGuardConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys,
    wrong types, and out-of-range values are all rejected. Omitted
    sections and keys take their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BatchGuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, data in raw_config.items():
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        section_cls, schema = _SECTIONS[name]
        sections[name] = section_cls(**_parse_section(data, schema, name))

    return BatchGuardConfig(**sections)


def _parse_section(data: Dict, schema: Dict[str, Any], path: str) -> Dict[str, Any]:
    """Type-check one configuration section.

    Args:
        data: Raw section data
        schema: Accepted keys mapped to accepted types
        path: Path for error messages

    Returns:
        Keyword arguments for the section dataclass

    Raises:
        ValueError: If a key is unknown or a value has the wrong type
    """
    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    parsed = {}
    for key, value in data.items():
        expected = schema[key]
        if value is None:
            continue
        # bool is an int subclass; never accept it for numeric settings
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ValueError(f"'{key}' in {path} has invalid type {type(value).__name__}")
        if expected is dict:
            value = _parse_per_user(value, f"{path}.{key}")
        elif expected is _NUMBER:
            value = float(value)
        parsed[key] = value
    return parsed


def _parse_per_user(data: Dict, path: str) -> Dict[str, float]:
    limits = {}
    for user_id, limit in data.items():
        if isinstance(limit, bool) or not isinstance(limit, _NUMBER):
            raise ValueError(f"'{user_id}' in {path} must be a number")
        limits[str(user_id)] = float(limit)
    return limits
