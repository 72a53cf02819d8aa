"""
Configuration loader for the notification worker.
Reads settings from an optional YAML file with environment variable
substitution, then applies direct environment overrides so operators can
tune throughput without redeploying.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml


class SettingsError(ValueError):
    """Raised when a configuration value cannot be parsed."""


@dataclass
class WorkerConfig:
    max_messages: int = 50              # per-batch fetch cap
    idle_sleep_ms: int = 2000           # empty or disabled queues
    error_sleep_ms: int = 10000         # connectivity / runner exceptions
    shutdown_timeout_s: float = 30.0    # grace period for an in-flight batch


@dataclass
class QueueConfig:
    enabled: bool = True                # process-wide switch
    backend: str = "redis"              # "redis" for production, "memory" for dev
    redis_url: str = ""                 # empty -> queues disabled
    consumer_group: str = "notification-workers"
    consumer_name: str = ""
    notification_jobs_enabled: bool = True
    completed_email_enabled: bool = True
    max_attempts: int = 5               # deliveries before dead-lettering
    retry_backoff_base_s: int = 30      # base seconds for exponential redelivery delay
    reclaim_idle_ms: int = 300_000      # pending entries older than this are redelivered


@dataclass
class EmailConfig:
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    use_tls: bool = False
    from_email: str = ""
    from_name: str = "GENFITY"
    timeout_s: float = 30.0


@dataclass
class PushConfig:
    vapid_private_key: str = ""
    vapid_email: str = "admin@genfity.com"
    ttl_s: int = 86400


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./notification_worker.db"
    idempotency_backend: str = "memory"     # "sql" | "memory"


@dataclass
class Settings:
    app_name: str = "notification-worker"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    push: PushConfig = field(default_factory=PushConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise SettingsError(f"Invalid boolean value: {value!r}")


def parse_positive_int(value: Any, allow_zero: bool = False) -> int:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise SettingsError(f"Invalid integer value: {value!r}") from None
    if number < 0 or (number == 0 and not allow_zero):
        raise SettingsError(f"Value must be {'>= 0' if allow_zero else '> 0'}: {value!r}")
    return number


def _non_negative_int(value: Any) -> int:
    return parse_positive_int(value, allow_zero=True)


# (env var, section, attribute, parser)
_ENV_OVERRIDES: list[tuple[str, str, str, Callable[[Any], Any]]] = [
    ("QUEUE_WORKER_MAX_MESSAGES", "worker", "max_messages", parse_positive_int),
    ("QUEUE_WORKER_IDLE_SLEEP_MS", "worker", "idle_sleep_ms", _non_negative_int),
    ("QUEUE_WORKER_ERROR_SLEEP_MS", "worker", "error_sleep_ms", _non_negative_int),
    ("QUEUE_ENABLED", "queue", "enabled", parse_bool),
    ("QUEUE_BACKEND", "queue", "backend", str),
    ("QUEUE_REDIS_URL", "queue", "redis_url", str),
    ("QUEUE_CONSUMER_NAME", "queue", "consumer_name", str),
    ("NOTIFICATION_JOBS_QUEUE_ENABLED", "queue", "notification_jobs_enabled", parse_bool),
    ("COMPLETED_EMAIL_QUEUE_ENABLED", "queue", "completed_email_enabled", parse_bool),
    ("QUEUE_MAX_ATTEMPTS", "queue", "max_attempts", parse_positive_int),
    ("SMTP_HOST", "email", "smtp_host", str),
    ("SMTP_PORT", "email", "smtp_port", parse_positive_int),
    ("SMTP_USER", "email", "smtp_user", str),
    ("SMTP_PASS", "email", "smtp_password", str),
    ("SMTP_SECURE", "email", "use_tls", parse_bool),
    ("SMTP_FROM", "email", "from_email", str),
    ("VAPID_PRIVATE_KEY", "push", "vapid_private_key", str),
    ("VAPID_EMAIL", "push", "vapid_email", str),
    ("DATABASE_URL", "database", "url", str),
    ("IDEMPOTENCY_BACKEND", "database", "idempotency_backend", str),
]


def _apply_section(target: Any, raw: dict[str, Any], section: str) -> None:
    """Copy known keys from a YAML section onto a config dataclass."""
    for key, value in (raw or {}).items():
        if not hasattr(target, key):
            continue
        current = getattr(target, key)
        try:
            if isinstance(current, bool):
                value = parse_bool(value)
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, float):
                value = float(value)
        except (TypeError, ValueError):
            raise SettingsError(f"Invalid value for {section}.{key}: {value!r}") from None
        setattr(target, key, value)


def apply_env_overrides(settings: Settings, environ: Optional[dict[str, str]] = None) -> Settings:
    """Apply direct environment variable overrides onto loaded settings."""
    env = os.environ if environ is None else environ

    for var, section, attr, parser in _ENV_OVERRIDES:
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = parser(raw)
        except SettingsError as e:
            raise SettingsError(f"{var}: {e}") from None
        setattr(getattr(settings, section), attr, value)

    settings.environment = env.get("ENVIRONMENT", settings.environment)
    settings.log_level = env.get("LOG_LEVEL", settings.log_level)
    if not settings.email.from_email:
        settings.email.from_email = settings.email.smtp_user
    return settings


def load_settings(config_path: str = None, environ: Optional[dict[str, str]] = None) -> Settings:
    """Load settings from YAML (if present) and the environment."""
    global _settings
    env = os.environ if environ is None else environ

    if config_path is None:
        config_path = env.get(
            "NOTIFY_WORKER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.environment = raw.get("environment", settings.environment)
        settings.debug = parse_bool(raw.get("debug", settings.debug))
        settings.log_level = raw.get("log_level", settings.log_level)

        _apply_section(settings.worker, raw.get("worker"), "worker")
        _apply_section(settings.queue, raw.get("queue"), "queue")
        _apply_section(settings.email, raw.get("email"), "email")
        _apply_section(settings.push, raw.get("push"), "push")
        _apply_section(settings.database, raw.get("database"), "database")

    apply_env_overrides(settings, env)
    validate_settings(settings)

    _settings = settings
    return settings


def validate_settings(settings: Settings) -> None:
    if settings.worker.max_messages <= 0:
        raise SettingsError("worker.max_messages must be > 0")
    if settings.worker.idle_sleep_ms < 0 or settings.worker.error_sleep_ms < 0:
        raise SettingsError("worker sleep durations must be >= 0")
    if settings.queue.backend not in ("redis", "memory"):
        raise SettingsError(f"Unknown queue backend: {settings.queue.backend!r}")
    if settings.database.idempotency_backend not in ("sql", "memory"):
        raise SettingsError(
            f"Unknown idempotency backend: {settings.database.idempotency_backend!r}"
        )


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
