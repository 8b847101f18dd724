import logging

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

RESOLUTION_SOURCES = ("assignment", "subscription", "default")


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Periodic allowances
    PERIOD_CYCLE: str = "billing_cycle"  # used when a periodic limit names no period

    # Limit defaults
    DEFAULT_GRACE_DAYS: int = 7
    DEFAULT_WARN_THRESHOLDS: str = "0.6,0.8,0.95"  # comma-separated fractions

    # Enforcement state writes
    STATE_WRITE_MAX_ATTEMPTS: int = 3
    STATE_WRITE_BACKOFF_SECONDS: float = 0.1

    # Plan resolution priority, highest first
    PLAN_RESOLUTION_ORDER: str = "assignment,subscription,default"

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def warn_thresholds(self) -> List[float]:
        values = [part.strip() for part in self.DEFAULT_WARN_THRESHOLDS.split(",")]
        return sorted(float(v) for v in values if v)

    def resolution_order(self) -> List[str]:
        return [part.strip() for part in self.PLAN_RESOLUTION_ORDER.split(",") if part.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate engine configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Connection strings are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("plan_limits")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []
    if not getattr(cfg, "DATABASE_URL", None):
        problems.append("Missing required configuration: DATABASE_URL")

    unknown = [src for src in cfg.resolution_order() if src not in RESOLUTION_SOURCES]
    if unknown:
        problems.append(f"Unknown plan resolution sources: {', '.join(unknown)}")

    try:
        thresholds = cfg.warn_thresholds()
    except ValueError:
        problems.append("DEFAULT_WARN_THRESHOLDS must be comma-separated numbers")
    else:
        if any(t <= 0 or t > 1 for t in thresholds):
            problems.append("DEFAULT_WARN_THRESHOLDS must be fractions in (0, 1]")

    if cfg.STATE_WRITE_MAX_ATTEMPTS < 1:
        problems.append("STATE_WRITE_MAX_ATTEMPTS must be at least 1")

    for message in problems:
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return not problems
