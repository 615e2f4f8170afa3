"""
Pipeline configuration

Loaded from the environment (after .env via python-dotenv) or from a YAML
file with environment overrides.
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError


ENV_PREFIX = "ADREC_"

DEFAULT_FIELDS = ["user_id", "offer_id", "country_code", "category", "merchant"]


@dataclass
class PipelineConfig:
    """Configuration for the serving pipeline"""
    # Scoring endpoint
    scoring_endpoint: str = "http://localhost:8080/invocations"
    scoring_model_id: str = "offer-ranker"
    scoring_timeout: float = 0.25
    scoring_max_attempts: int = 3
    scoring_backoff_base: float = 0.05
    scoring_backoff_max: float = 1.0
    scoring_max_in_flight: int = 64

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 30.0

    # Notifications
    notification_threshold: float = 0.5
    notification_max_attempts: int = 3
    notification_webhook: Optional[str] = None
    dedup_window: float = 3600.0
    dedup_max_entries: int = 100000
    redis_url: Optional[str] = None

    # Archive
    archive_flush_size: int = 500
    archive_flush_bytes: int = 5 * 1024 * 1024
    archive_flush_interval: float = 60.0
    archive_buffer_capacity: int = 5000
    archive_max_flush_attempts: int = 5
    archive_backoff_base: float = 0.5
    archive_backoff_max: float = 30.0
    archive_prefix: str = "ads/"
    click_archive_prefix: str = "clicks/"
    archive_root: Optional[str] = None
    dead_letter_path: Optional[str] = None

    # Vocabulary
    encoded_fields: List[str] = field(default_factory=lambda: list(DEFAULT_FIELDS))
    hashed_fields: List[str] = field(default_factory=list)
    max_vocabulary_size: int = 100000
    hash_buckets: int = 1024
    vocabulary_path: Optional[str] = None

    # Consumption
    batch_size: int = 10
    worker_count: int = 16
    queue_size: int = 256
    poll_interval: float = 0.1
    shutdown_grace_period: float = 10.0
    kafka_brokers: List[str] = field(default_factory=list)
    kafka_topic: str = "clickstream"
    kafka_group: str = "adrec"
    partitions: List[int] = field(default_factory=lambda: [0])

    log_level: str = "INFO"

    def validate(self) -> "PipelineConfig":
        """Check value ranges; raises ConfigError"""
        positive = [
            "scoring_timeout", "scoring_max_attempts", "scoring_max_in_flight",
            "breaker_failure_threshold", "breaker_reset_timeout",
            "notification_max_attempts", "dedup_window", "dedup_max_entries",
            "archive_flush_size", "archive_flush_bytes", "archive_flush_interval",
            "archive_buffer_capacity", "archive_max_flush_attempts",
            "max_vocabulary_size", "hash_buckets", "batch_size", "worker_count",
            "queue_size", "poll_interval",
        ]
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        if not 0.0 <= self.notification_threshold <= 1.0:
            raise ConfigError(
                f"notification_threshold must be in [0, 1], got {self.notification_threshold}"
            )
        if self.click_archive_prefix and self.click_archive_prefix == self.archive_prefix:
            raise ConfigError("click_archive_prefix must differ from archive_prefix")
        if self.archive_buffer_capacity < self.archive_flush_size:
            raise ConfigError("archive_buffer_capacity must be >= archive_flush_size")
        if self.max_vocabulary_size < 2:
            raise ConfigError("max_vocabulary_size must leave room beyond the unknown slot")
        if not self.encoded_fields:
            raise ConfigError("encoded_fields must not be empty")
        if len(set(self.encoded_fields)) != len(self.encoded_fields):
            raise ConfigError("encoded_fields contains duplicates")
        unknown = set(self.hashed_fields) - set(self.encoded_fields)
        if unknown:
            raise ConfigError(f"hashed_fields not in encoded_fields: {sorted(unknown)}")
        if self.shutdown_grace_period < 0:
            raise ConfigError("shutdown_grace_period must not be negative")
        return self

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "PipelineConfig":
        known = {f.name: f for f in fields(cls)}
        kwargs = {}
        for name, value in values.items():
            if name not in known:
                raise ConfigError(f"unknown configuration key '{name}'")
            kwargs[name] = _coerce(name, value, known[name].default, known[name].default_factory)
        return cls(**kwargs).validate()

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, dotenv: bool = True) -> "PipelineConfig":
        """
        Build configuration from ADREC_* environment variables

        Args:
            environ: Mapping to read instead of os.environ
            dotenv: Load a .env file first when reading os.environ
        """
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ
        return cls.from_dict(_env_values(environ))

    @classmethod
    def from_yaml(cls, path: str, environ: Optional[Dict[str, str]] = None) -> "PipelineConfig":
        """Load a YAML file; ADREC_* environment variables override it"""
        with open(path, "r") as fh:
            values = yaml.safe_load(fh) or {}
        if not isinstance(values, dict):
            raise ConfigError(f"{path} must contain a mapping")
        values.update(_env_values(os.environ if environ is None else environ))
        return cls.from_dict(values)


def _env_values(environ) -> Dict[str, str]:
    names = {f.name for f in fields(PipelineConfig)}
    values = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            name = key[len(ENV_PREFIX):].lower()
            if name in names:
                values[name] = value
    return values


def _coerce(name: str, value: Any, default: Any, default_factory: Any) -> Any:
    """Coerce strings from the environment to the field's type"""
    if not isinstance(value, str):
        return value

    if callable(default_factory):
        sample = default_factory()
        items = [item.strip() for item in value.split(",") if item.strip()]
        if sample and isinstance(sample[0], int):
            try:
                return [int(item) for item in items]
            except ValueError:
                raise ConfigError(f"{name} must be a comma-separated list of integers")
        return items

    if default is None:
        return value or None
    if isinstance(default, str):
        return value

    try:
        if isinstance(default, bool):
            return value.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except ValueError:
        raise ConfigError(f"invalid value for {name}: {value!r}")
    return value
