import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Database
    database_file: str = os.getenv("LIBRARY_DB_FILE", "school_library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "5"))

    # Lending policy
    fine_per_day: str = os.getenv("FINE_PER_DAY", "10.00")
    blacklist_window_days: int = int(os.getenv("BLACKLIST_WINDOW_DAYS", "14"))
    default_due_period_value: int = int(os.getenv("DEFAULT_DUE_PERIOD_VALUE", "24"))
    default_due_period_unit: str = os.getenv("DEFAULT_DUE_PERIOD_UNIT", "hours")
    verification_max_age_seconds: int = int(os.getenv("VERIFICATION_MAX_AGE_SECONDS", "300"))

    # Transient failure handling
    retry_attempts: int = int(os.getenv("RETRY_ATTEMPTS", "3"))
    retry_backoff: float = float(os.getenv("RETRY_BACKOFF", "0.1"))

    # Background sweep inside the API process (0 = disabled)
    sweep_interval_seconds: int = int(os.getenv("SWEEP_INTERVAL_SECONDS", "0"))

    # External identity verification service
    biometric_service_url: Optional[str] = os.getenv("BIOMETRIC_SERVICE_URL")
    biometric_timeout: float = float(os.getenv("BIOMETRIC_TIMEOUT", "10"))

    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")
    admin_api_key: str = os.getenv("ADMIN_API_KEY", "super-secret-admin-key")

    # Application
    app_name: str = os.getenv("APP_NAME", "School Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_bool("DEBUG")


@dataclass(frozen=True)
class LendingPolicy:
    """Policy values handed to the ledger, the sweep and the blacklist policy.

    Built from :class:`Settings` once and passed around explicitly so that no
    component reads fine rates or blacklist windows from module state.
    """

    fine_per_day: Decimal = Decimal("10.00")
    blacklist_window: timedelta = timedelta(days=14)
    default_due_period_value: int = 24
    default_due_period_unit: str = "hours"
    verification_max_age: timedelta = timedelta(minutes=5)

    @classmethod
    def from_settings(cls, s: "Settings") -> "LendingPolicy":
        return cls(
            fine_per_day=Decimal(str(s.fine_per_day)),
            blacklist_window=timedelta(days=s.blacklist_window_days),
            default_due_period_value=s.default_due_period_value,
            default_due_period_unit=s.default_due_period_unit,
            verification_max_age=timedelta(seconds=s.verification_max_age_seconds),
        )


settings = Settings()
