"""Configuration for the sync core.

Settings are plain dataclasses. ``load_settings()`` is the only function
that reads the process environment; everything else receives settings
objects explicitly through the ``SyncContext``.

Environment variables (all prefixed ``ERP_SYNC_``):
    URL, DATABASE, USERNAME, API_KEY, PROTOCOL, TIMEOUT, SESSION_TTL
    TENANT_ID, DB_PATH, BATCH_SIZE, MAX_BATCHES, TIME_LIMIT,
    STALE_TIMEOUT, MAX_ATTEMPTS, CONFLICT_POLICY, RUN_INTERVAL, DRY_RUN
    RETRY_MAX, RETRY_BASE_DELAY, RETRY_MAX_DELAY
    BACKOFF_BASE, BACKOFF_CAP, BACKOFF_JITTER
    NOTIFY_WINDOW, NOTIFY_RATE_THRESHOLD, NOTIFY_MIN_SAMPLES,
    NOTIFY_COOLDOWN, NOTIFY_WEBHOOK_URL
    BREAKER_ENABLED, BREAKER_RATIO, BREAKER_THRESHOLD, BREAKER_RECOVERY,
    BREAKER_MODULE_THRESHOLD, BREAKER_MODULE_RECOVERY
"""

import os
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from dotenv import load_dotenv


DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "erp_sync.db"
ENV_PREFIX = "ERP_SYNC_"

PROTOCOLS = ("jsonrpc", "xmlrpc")
CONFLICT_POLICIES = ("remote_wins", "local_wins", "newest_wins")


@dataclass
class ConnectionSettings:
    """Connection to the remote ERP.

    Attributes:
        url: Base URL of the ERP server
        database: Remote database name
        username: Login used for authentication
        api_key: API key or password
        protocol: Wire protocol, "jsonrpc" or "xmlrpc"
        timeout_seconds: Upper bound for a single remote call
        session_ttl_seconds: How long an authenticated session is trusted
    """
    url: str = ""
    database: str = ""
    username: str = ""
    api_key: str = ""
    protocol: str = "jsonrpc"
    timeout_seconds: float = 30.0
    session_ttl_seconds: int = 3600

    def __post_init__(self):
        if self.protocol not in PROTOCOLS:
            raise ValueError(
                f"Unsupported protocol {self.protocol!r}; expected one of {PROTOCOLS}"
            )

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.database and self.username and self.api_key)


@dataclass
class RetryConfig:
    """Connection-level retry for a single remote call."""
    max_retries: int = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class BackoffPolicy:
    """Job-level backoff applied when a queue item is rescheduled.

    ``jitter_seconds`` must not exceed ``base_seconds``; with that bound
    successive delays never decrease.
    """
    base_seconds: float = 60.0
    cap_seconds: float = 3600.0
    jitter_seconds: float = 60.0
    rng: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    def __post_init__(self):
        if self.jitter_seconds > self.base_seconds:
            raise ValueError("jitter_seconds must not exceed base_seconds")

    def delay_for(self, attempts: int) -> float:
        """Delay in seconds before the next attempt after ``attempts`` failures."""
        jitter = self.rng(0, self.jitter_seconds) if self.jitter_seconds > 0 else 0.0
        return min(self.base_seconds * (2 ** attempts) + jitter, self.cap_seconds)


@dataclass
class SyncSettings:
    """Queue draining and conflict policy."""
    tenant_id: str = "default"
    db_path: Path = DEFAULT_DB_PATH
    batch_size: int = 50
    max_batches: int = 20
    time_limit_seconds: float = 55.0
    stale_timeout_seconds: int = 600
    recovery_interval_seconds: int = 60
    max_attempts: int = 3
    conflict_policy: str = "newest_wins"
    run_interval_seconds: int = 60
    dry_run: bool = False

    def __post_init__(self):
        if self.conflict_policy not in CONFLICT_POLICIES:
            raise ValueError(
                f"Unsupported conflict policy {self.conflict_policy!r}; "
                f"expected one of {CONFLICT_POLICIES}"
            )
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.db_path = Path(self.db_path)


@dataclass
class NotifierSettings:
    """Failure notification thresholds."""
    window_seconds: int = 900
    rate_threshold: float = 0.5
    min_samples: int = 10
    cooldown_seconds: int = 3600
    delivery_timeout_seconds: float = 10.0
    webhook_url: Optional[str] = None


@dataclass
class CircuitBreakerSettings:
    """Pausing queue processing while the remote or a module keeps failing.

    A batch counts as failed when at least ``failure_ratio`` of its jobs
    failed. After ``failure_threshold`` consecutive failed batches the
    breaker opens for ``recovery_seconds``; then one trial batch is let
    through. The ``module_*`` values apply to the per-module breakers.
    """
    enabled: bool = True
    failure_ratio: float = 0.8
    failure_threshold: int = 3
    recovery_seconds: int = 300
    module_failure_threshold: int = 5
    module_recovery_seconds: int = 600

    def __post_init__(self):
        if not 0 < self.failure_ratio <= 1:
            raise ValueError("failure_ratio must be in (0, 1]")
        if self.failure_threshold < 1 or self.module_failure_threshold < 1:
            raise ValueError("failure thresholds must be at least 1")


@dataclass
class AppSettings:
    """Aggregate of all settings, built once at process start."""
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    retry: RetryConfig = field(default_factory=RetryConfig)
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    notifier: NotifierSettings = field(default_factory=NotifierSettings)
    breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)


# =============================================================================
# Environment loading
# =============================================================================

def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name, default)


def _env_number(name: str, default, cast):
    raw = _env(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a {cast.__name__}, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings(env_path: Optional[Path] = None) -> AppSettings:
    """Build ``AppSettings`` from the environment.

    Args:
        env_path: Optional .env file to load first (existing variables win)

    Raises:
        ValueError: If a variable holds an invalid value
    """
    if env_path is not None and Path(env_path).exists():
        load_dotenv(env_path)

    connection = ConnectionSettings(
        url=_env("URL", ""),
        database=_env("DATABASE", ""),
        username=_env("USERNAME", ""),
        api_key=_env("API_KEY", ""),
        protocol=_env("PROTOCOL", "jsonrpc"),
        timeout_seconds=_env_number("TIMEOUT", 30.0, float),
        session_ttl_seconds=_env_number("SESSION_TTL", 3600, int),
    )
    sync = SyncSettings(
        tenant_id=_env("TENANT_ID", "default"),
        db_path=Path(_env("DB_PATH", str(DEFAULT_DB_PATH))),
        batch_size=_env_number("BATCH_SIZE", 50, int),
        max_batches=_env_number("MAX_BATCHES", 20, int),
        time_limit_seconds=_env_number("TIME_LIMIT", 55.0, float),
        stale_timeout_seconds=_env_number("STALE_TIMEOUT", 600, int),
        max_attempts=_env_number("MAX_ATTEMPTS", 3, int),
        conflict_policy=_env("CONFLICT_POLICY", "newest_wins"),
        run_interval_seconds=_env_number("RUN_INTERVAL", 60, int),
        dry_run=_env_bool("DRY_RUN", False),
    )
    retry = RetryConfig(
        max_retries=_env_number("RETRY_MAX", 3, int),
        base_delay=_env_number("RETRY_BASE_DELAY", 0.5, float),
        max_delay=_env_number("RETRY_MAX_DELAY", 10.0, float),
    )
    backoff = BackoffPolicy(
        base_seconds=_env_number("BACKOFF_BASE", 60.0, float),
        cap_seconds=_env_number("BACKOFF_CAP", 3600.0, float),
        jitter_seconds=_env_number("BACKOFF_JITTER", 60.0, float),
    )
    notifier = NotifierSettings(
        window_seconds=_env_number("NOTIFY_WINDOW", 900, int),
        rate_threshold=_env_number("NOTIFY_RATE_THRESHOLD", 0.5, float),
        min_samples=_env_number("NOTIFY_MIN_SAMPLES", 10, int),
        cooldown_seconds=_env_number("NOTIFY_COOLDOWN", 3600, int),
        webhook_url=_env("NOTIFY_WEBHOOK_URL") or None,
    )
    breaker = CircuitBreakerSettings(
        enabled=_env_bool("BREAKER_ENABLED", True),
        failure_ratio=_env_number("BREAKER_RATIO", 0.8, float),
        failure_threshold=_env_number("BREAKER_THRESHOLD", 3, int),
        recovery_seconds=_env_number("BREAKER_RECOVERY", 300, int),
        module_failure_threshold=_env_number("BREAKER_MODULE_THRESHOLD", 5, int),
        module_recovery_seconds=_env_number("BREAKER_MODULE_RECOVERY", 600, int),
    )
    return AppSettings(
        connection=connection,
        sync=sync,
        retry=retry,
        backoff=backoff,
        notifier=notifier,
        breaker=breaker,
    )
