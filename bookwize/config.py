import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional
from dotenv import load_dotenv

load_dotenv()

MEMBERSHIP_TYPES = ("student", "faculty", "staff", "external")

_DEFAULT_BORROWING_LIMITS = {"student": 5, "faculty": 10, "staff": 8, "external": 3}
_DEFAULT_LOAN_PERIODS = {"student": 14, "faculty": 30, "staff": 21, "external": 7}


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _per_type(prefix: str, defaults: Dict[str, int]) -> Dict[str, int]:
    """Read BORROWING_LIMIT_STUDENT style overrides for every membership type."""
    return {
        kind: int(os.getenv(f"{prefix}_{kind.upper()}", str(defaults[kind])))
        for kind in MEMBERSHIP_TYPES
    }


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "BookWize Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Record store settings
    store_backend: str = os.getenv("STORE_BACKEND", "sqlite")
    database_file: str = os.getenv("LIBRARY_DB_FILE", "bookwize.db")
    supabase_url: Optional[str] = os.getenv("SUPABASE_URL")
    supabase_key: Optional[str] = os.getenv("SUPABASE_KEY")
    supabase_timeout: float = float(os.getenv("SUPABASE_TIMEOUT", "10"))

    # Circulation rules
    daily_fine_rate: Decimal = Decimal(os.getenv("DAILY_FINE_RATE", "1.00"))
    max_renewals: int = int(os.getenv("MAX_RENEWALS", "2"))
    borrowing_limits: Dict[str, int] = field(
        default_factory=lambda: _per_type("BORROWING_LIMIT", _DEFAULT_BORROWING_LIMITS)
    )
    loan_periods: Dict[str, int] = field(
        default_factory=lambda: _per_type("LOAN_PERIOD", _DEFAULT_LOAN_PERIODS)
    )
    inventory_cas_retries: int = int(os.getenv("INVENTORY_CAS_RETRIES", "10"))


settings = Settings()


@dataclass(frozen=True)
class CirculationPolicy:
    """Circulation rules handed to the services at construction time."""

    daily_fine_rate: Decimal = Decimal("1.00")
    max_renewals: int = 2
    borrowing_limits: Dict[str, int] = field(default_factory=lambda: dict(_DEFAULT_BORROWING_LIMITS))
    loan_periods: Dict[str, int] = field(default_factory=lambda: dict(_DEFAULT_LOAN_PERIODS))
    inventory_cas_retries: int = 10

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "CirculationPolicy":
        config = config or settings
        return cls(
            daily_fine_rate=config.daily_fine_rate,
            max_renewals=config.max_renewals,
            borrowing_limits=dict(config.borrowing_limits),
            loan_periods=dict(config.loan_periods),
            inventory_cas_retries=config.inventory_cas_retries,
        )

    def borrowing_limit(self, membership_type) -> int:
        return self.borrowing_limits[getattr(membership_type, "value", membership_type)]

    def loan_period_days(self, membership_type) -> int:
        return self.loan_periods[getattr(membership_type, "value", membership_type)]
