"""Configuration management for marketplace sync."""

import os
import logging
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def setup_logging(level: str = "INFO") -> None:
    """Set up logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def load_environment(env_file: Optional[str] = None) -> None:
    """Load environment variables from .env file.

    Args:
        env_file: Path to .env file. If None, looks for .env in current directory.
    """
    env_path = Path(env_file) if env_file else Path('.env')

    if env_path.exists():
        load_dotenv(env_path)
        logging.info(f"Loaded environment from {env_path}")
    else:
        logging.debug(f"No .env file found at {env_path}")


def get_optional_env(key: str, default: str = "") -> str:
    """Get an optional environment variable, or the default if unset."""
    return os.getenv(key, default)


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value == "":
        return default
    return int(value)


class SyncTuning(BaseModel):
    """Window sizes and intervals used when planning incremental syncs."""
    initial_window_days: int = Field(30, ge=1, description="Lookback of the first backfill")
    catch_up_window_days: int = Field(30, ge=1, description="Chunk size when walking history backwards")
    history_months: int = Field(12, ge=1, description="Retention horizon of the backfill")
    delta_interval_days: int = Field(1, ge=1, description="Minimum age before a delta refresh")
    manual_lookback_days: int = Field(7, ge=1, description="Default window of manual sales/orders jobs")
    regional_lookback_days: int = Field(30, ge=1, description="Default window of manual regional jobs")
    statistics_sample_size: int = Field(100, ge=1)

    @classmethod
    def from_env(cls) -> "SyncTuning":
        defaults = cls()
        return cls(
            initial_window_days=_env_int("SYNC_INITIAL_WINDOW_DAYS", defaults.initial_window_days),
            catch_up_window_days=_env_int("SYNC_CATCH_UP_WINDOW_DAYS", defaults.catch_up_window_days),
            history_months=_env_int("SYNC_HISTORY_MONTHS", defaults.history_months),
            delta_interval_days=_env_int("SYNC_DELTA_INTERVAL_DAYS", defaults.delta_interval_days),
            manual_lookback_days=_env_int("SYNC_MANUAL_LOOKBACK_DAYS", defaults.manual_lookback_days),
            regional_lookback_days=_env_int("SYNC_REGIONAL_LOOKBACK_DAYS", defaults.regional_lookback_days),
        )


class QueueRetryPolicy(BaseModel):
    """Default retry policy of a task queue."""
    max_attempts: int = 3
    min_backoff_ms: int = 2000
    max_backoff_ms: int = 300000
    max_doublings: int = 16


class DeliveryRetryPolicy(BaseModel):
    """Backoff for outbound webhook deliveries."""
    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    max_attempts: int = 3
    timeout_seconds: int = 10


class CadenceSchedule(BaseModel):
    """Cron expressions of the independent scheduler timers."""
    catch_up: str = "0 * * * *"
    full_resync: str = "0 3 * * *"
    stock: str = "*/30 * * * *"
    time_zone: str = "UTC"


class AppSettings(BaseModel):
    """Process-wide settings read from the environment."""
    project_id: Optional[str] = None
    region: str = "us-central1"
    sync_queue_name: str = "marketsync-sync"
    webhook_queue_name: str = "marketsync-webhook-retry"
    api_base_url: str = "http://localhost:8000"
    allowed_origins: List[str] = Field(default_factory=list)
    log_level: str = "INFO"
    tuning: SyncTuning = Field(default_factory=SyncTuning)
    sync_queue_policy: QueueRetryPolicy = Field(default_factory=QueueRetryPolicy)
    delivery_policy: DeliveryRetryPolicy = Field(default_factory=DeliveryRetryPolicy)
    cadences: CadenceSchedule = Field(default_factory=CadenceSchedule)

    @classmethod
    def from_env(cls) -> "AppSettings":
        origins = get_optional_env("ALLOWED_ORIGINS")
        return cls(
            project_id=os.getenv("GOOGLE_CLOUD_PROJECT"),
            region=get_optional_env("GOOGLE_CLOUD_REGION", "us-central1"),
            sync_queue_name=get_optional_env("SYNC_QUEUE_NAME", "marketsync-sync"),
            webhook_queue_name=get_optional_env("WEBHOOK_QUEUE_NAME", "marketsync-webhook-retry"),
            api_base_url=get_optional_env("API_BASE_URL", "http://localhost:8000"),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=get_optional_env("LOG_LEVEL", "INFO"),
            tuning=SyncTuning.from_env(),
        )
