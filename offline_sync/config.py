"""
Configuration for the offline sync client.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass
class SyncConfig:
    """Configuration for the sync client."""

    # API settings
    api_base_url: str = "http://localhost:8000/api/v1"
    health_url: str = "http://localhost:8000/health"
    api_timeout: float = 30.0

    # Identity of the local user (resolved by the session layer)
    owner_id: str = ""
    access_token: Optional[str] = None  # Bearer token for the reconciliation API

    # Batch settings
    max_batch_size: int = 50  # Max operations per dispatch batch

    # Retry settings
    max_attempts: int = 5
    backoff_schedule: tuple[float, ...] = (1.0, 2.0, 4.0, 8.0, 16.0)

    # Connectivity
    probe_timeout: float = 5.0
    probe_interval: float = 30.0  # Health probe cadence while idle

    # Scheduling (seconds)
    periodic_interval: float = 300.0  # Sync every 5 minutes while online
    debounce_window: float = 0.5  # Coalesce rapid local writes
    pass_timeout: float = 120.0  # Safety net for a stuck pass
    pull_after_push: bool = True

    # Local store settings
    cache_dir: Path = field(default_factory=lambda: Path.home() / ".offline_sync")
    db_name: str = "offline_sync.db"
    synced_retention_days: int = 7

    def __post_init__(self):
        """Ensure cache directory exists."""
        self.cache_dir = Path(self.cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        if not self.backoff_schedule:
            raise ValueError("backoff_schedule must not be empty")

    @property
    def db_path(self) -> Path:
        """Full path to the local store database."""
        return self.cache_dir / self.db_name

    def retry_delay(self, attempt: int) -> float:
        """Backoff delay for a failure observed after ``attempt`` prior failures."""
        index = min(max(attempt, 0), len(self.backoff_schedule) - 1)
        return self.backoff_schedule[index]
