"""Engine configuration loaded from environment variables."""

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class EngineSettings:
    """Runtime settings for the scheduler, interpreter and stores."""

    database_path: str = "./data/flowengine.db"
    sweep_interval_seconds: float = 5.0
    sweep_batch_size: int = 100
    max_workers: int = 8
    max_action_attempts: int = 3
    retry_backoff_seconds: float = 30.0
    retry_backoff_max_seconds: float = 3600.0
    action_timeout_seconds: float = 10.0
    lease_seconds: float = 120.0
    max_steps_per_cycle: int = 100
    auto_resume_inbound: bool = True
    actions_base_url: str = "http://localhost:8080"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from FLOWENGINE_* environment variables."""
        return cls(
            database_path=os.getenv("FLOWENGINE_DATABASE_PATH", cls.database_path),
            sweep_interval_seconds=float(
                os.getenv("FLOWENGINE_SWEEP_INTERVAL_SECONDS", cls.sweep_interval_seconds)
            ),
            sweep_batch_size=int(
                os.getenv("FLOWENGINE_SWEEP_BATCH_SIZE", cls.sweep_batch_size)
            ),
            max_workers=int(os.getenv("FLOWENGINE_MAX_WORKERS", cls.max_workers)),
            max_action_attempts=int(
                os.getenv("FLOWENGINE_MAX_ACTION_ATTEMPTS", cls.max_action_attempts)
            ),
            retry_backoff_seconds=float(
                os.getenv("FLOWENGINE_RETRY_BACKOFF_SECONDS", cls.retry_backoff_seconds)
            ),
            retry_backoff_max_seconds=float(
                os.getenv(
                    "FLOWENGINE_RETRY_BACKOFF_MAX_SECONDS", cls.retry_backoff_max_seconds
                )
            ),
            action_timeout_seconds=float(
                os.getenv("FLOWENGINE_ACTION_TIMEOUT_SECONDS", cls.action_timeout_seconds)
            ),
            lease_seconds=float(os.getenv("FLOWENGINE_LEASE_SECONDS", cls.lease_seconds)),
            max_steps_per_cycle=int(
                os.getenv("FLOWENGINE_MAX_STEPS_PER_CYCLE", cls.max_steps_per_cycle)
            ),
            auto_resume_inbound=_env_bool(
                "FLOWENGINE_AUTO_RESUME_INBOUND", cls.auto_resume_inbound
            ),
            actions_base_url=os.getenv(
                "FLOWENGINE_ACTIONS_BASE_URL", cls.actions_base_url
            ),
        )
