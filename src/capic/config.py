"""Configuration management with validation.

All tunables of the reconciliation engine (poll interval, backoff curve,
staleness threshold, worker count) are loaded from the environment and
validated once at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_API_URL = "https://api.ionos.com/cloudapi/v6"
DEFAULT_STATE_DIR = "/var/lib/capic"

DEFAULT_WORKERS = 4
MIN_WORKERS = 1
MAX_WORKERS = 64

DEFAULT_POLL_INTERVAL_SECONDS = 10
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 300

DEFAULT_RESYNC_INTERVAL_SECONDS = 600
MIN_RESYNC_INTERVAL_SECONDS = 60
MAX_RESYNC_INTERVAL_SECONDS = 86400

DEFAULT_BACKOFF_BASE_SECONDS = 5
DEFAULT_BACKOFF_MAX_SECONDS = 300

# In-flight requests older than this are logged and requeued with backoff
DEFAULT_REQUEST_STALE_AFTER_SECONDS = 1800

DEFAULT_HTTP_TIMEOUT_SECONDS = 60
MAX_HTTP_TIMEOUT_SECONDS = 600
DEFAULT_HTTP_RETRIES = 3
MAX_HTTP_RETRIES = 10

DEFAULT_QUEUE_MAX_KEYS = 10000
DEFAULT_CONFLICT_RETRIES = 3
MAX_CONFLICT_RETRIES = 10

# Manifest files larger than this are rejected before parsing
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024

TRACKER_STATE_FILENAME = "requests.json"
STORE_STATE_FILENAME = "resources.json"


@dataclass(frozen=True)
class Config:
    """Provider configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    api_url: str = DEFAULT_API_URL
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    manifests_dir: Path | None = None

    # Concurrency
    workers: int = DEFAULT_WORKERS
    queue_max_keys: int = DEFAULT_QUEUE_MAX_KEYS
    conflict_retries: int = DEFAULT_CONFLICT_RETRIES

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    backoff_base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: int = DEFAULT_BACKOFF_MAX_SECONDS
    request_stale_after_seconds: int = DEFAULT_REQUEST_STALE_AFTER_SECONDS

    # Cloud API transport
    http_timeout_seconds: int = DEFAULT_HTTP_TIMEOUT_SECONDS
    http_retries: int = DEFAULT_HTTP_RETRIES

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.api_url.startswith(("https://", "http://")):
            errors.append(f"IONOS_API_URL must be an http(s) URL: {self.api_url}")

        if not (MIN_WORKERS <= self.workers <= MAX_WORKERS):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between {MIN_WORKERS} and {MAX_WORKERS}"
            )

        if self.queue_max_keys < 1:
            errors.append("QUEUE_MAX_KEYS must be at least 1")

        if not (1 <= self.conflict_retries <= MAX_CONFLICT_RETRIES):
            errors.append(f"CONFLICT_RETRIES must be between 1 and {MAX_CONFLICT_RETRIES}")

        # Timing validation
        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"REQUEST_POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if self.backoff_base_seconds < 1:
            errors.append("BACKOFF_BASE must be at least 1 second")
        elif self.backoff_max_seconds < self.backoff_base_seconds:
            errors.append("BACKOFF_MAX must not be smaller than BACKOFF_BASE")

        if self.request_stale_after_seconds < self.poll_interval_seconds:
            errors.append("REQUEST_STALE_AFTER must not be smaller than REQUEST_POLL_INTERVAL")

        if not (1 <= self.http_timeout_seconds <= MAX_HTTP_TIMEOUT_SECONDS):
            errors.append(f"HTTP_TIMEOUT must be between 1 and {MAX_HTTP_TIMEOUT_SECONDS} seconds")

        if not (0 <= self.http_retries <= MAX_HTTP_RETRIES):
            errors.append(f"HTTP_RETRIES must be between 0 and {MAX_HTTP_RETRIES}")

        # Path validation
        if self.manifests_dir is not None and not self.manifests_dir.is_dir():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def tracker_state_path(self) -> Path:
        """File holding the durable Request Tracker entries."""
        return self.state_dir / TRACKER_STATE_FILENAME

    @property
    def store_state_path(self) -> Path:
        """File holding the local resource store snapshot."""
        return self.state_dir / STORE_STATE_FILENAME

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            IONOS_API_URL: Cloud API base URL (default: public v6 endpoint)
            STATE_DIR: Directory for durable tracker/store state (default: /var/lib/capic)
            MANIFESTS_DIR: Optional directory of YAML manifests to sync into the store
            MAX_CONCURRENT_RECONCILES: Workers per resource kind (default: 4)
            QUEUE_MAX_KEYS: Work queue capacity (default: 10000)
            CONFLICT_RETRIES: Re-read attempts on optimistic conflicts (default: 3)
            REQUEST_POLL_INTERVAL: Requeue delay while a request is in flight (default: 10)
            RESYNC_INTERVAL: Periodic drift check for ready resources (default: 600)
            BACKOFF_BASE: First backoff delay after a transient error (default: 5)
            BACKOFF_MAX: Backoff cap (default: 300)
            REQUEST_STALE_AFTER: Age after which a pending request is stale (default: 1800)
            HTTP_TIMEOUT: Per-call timeout against the cloud API (default: 60)
            HTTP_RETRIES: Transport retries for read calls (default: 3)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        manifests_dir = os.environ.get("MANIFESTS_DIR")

        return cls(
            api_url=os.environ.get("IONOS_API_URL", DEFAULT_API_URL),
            state_dir=Path(os.environ.get("STATE_DIR", DEFAULT_STATE_DIR)),
            manifests_dir=Path(manifests_dir) if manifests_dir else None,
            workers=get_int("MAX_CONCURRENT_RECONCILES", DEFAULT_WORKERS),
            queue_max_keys=get_int("QUEUE_MAX_KEYS", DEFAULT_QUEUE_MAX_KEYS),
            conflict_retries=get_int("CONFLICT_RETRIES", DEFAULT_CONFLICT_RETRIES),
            poll_interval_seconds=get_int("REQUEST_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            backoff_base_seconds=get_int("BACKOFF_BASE", DEFAULT_BACKOFF_BASE_SECONDS),
            backoff_max_seconds=get_int("BACKOFF_MAX", DEFAULT_BACKOFF_MAX_SECONDS),
            request_stale_after_seconds=get_int(
                "REQUEST_STALE_AFTER", DEFAULT_REQUEST_STALE_AFTER_SECONDS
            ),
            http_timeout_seconds=get_int("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS),
            http_retries=get_int("HTTP_RETRIES", DEFAULT_HTTP_RETRIES),
        )
