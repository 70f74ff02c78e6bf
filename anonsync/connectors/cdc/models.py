"""Configuration and callable types shared by the sync paths."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping

Transform = Callable[[Mapping[str, Any]], Dict[str, Any]]


@dataclass
class SyncConfig:
    """Configuration for the live sync path and the catch-up worker."""
    batch_size: int = 1000  # Records before a size-triggered flush
    flush_interval: float = 1.0  # Seconds between time-triggered flushes
    max_flush_failures: int = 5  # Consecutive failed flushes before giving up
    max_retries: int = 5  # Change stream reconnects and catch-up re-runs
    retry_backoff_base: int = 2  # Exponential backoff: base^attempt seconds
    max_retry_delay: int = 60
    max_await_time_ms: int = 500  # Longest the feed blocks before checking for stop

    def __post_init__(self):
        """Validate configuration values."""
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        if self.max_flush_failures <= 0:
            raise ValueError("max_flush_failures must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_backoff_base <= 0:
            raise ValueError("retry_backoff_base must be positive")
        if self.max_retry_delay <= 0:
            raise ValueError("max_retry_delay must be positive")

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.retry_backoff_base ** attempt, self.max_retry_delay)

    @classmethod
    def from_settings(cls, sync_settings) -> "SyncConfig":
        return cls(
            batch_size=sync_settings.batch_size,
            flush_interval=sync_settings.flush_interval_ms / 1000.0,
            max_flush_failures=sync_settings.max_flush_failures,
            max_retries=sync_settings.max_retries,
            retry_backoff_base=sync_settings.retry_backoff_base,
            max_retry_delay=sync_settings.max_retry_delay,
        )
