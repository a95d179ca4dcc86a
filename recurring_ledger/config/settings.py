"""
Configuration Management for Recurring Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what knobs the scheduler and ledger expose and
ensures all configuration is validated at startup.
"""

from decimal import Decimal, ROUND_HALF_EVEN
from enum import Enum
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EndTimePolicy(str, Enum):
    """
    How a rule's optional end_time is interpreted.

    ANNOTATE: end_time is display metadata only. Occurrences fire at
    start_time no matter how late the scheduler reaches them.
    ENFORCE_WINDOW: an occurrence reached after end_time on its own day
    is skipped (cursor advances, no transaction is written).
    """
    ANNOTATE = "annotate"
    ENFORCE_WINDOW = "enforce_window"


class DatabaseSettings(BaseSettings):
    """Ledger database configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_DB_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///./ledger.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)"
    )
    sqlite_busy_timeout_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="How long SQLite waits on a locked database before failing"
    )


class SchedulerSettings(BaseSettings):
    """Recurring-transaction scheduler configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SCHEDULER_",
        extra="ignore"
    )

    # Rules carry minute precision, so a tick must never be coarser than that
    tick_interval_seconds: float = Field(
        default=60.0,
        gt=0.0,
        le=60.0,
        description="Seconds between scheduler ticks"
    )
    claim_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        le=30.0,
        description="Upper bound on time spent retrying a locked claim"
    )
    stale_claim_grace_seconds: int = Field(
        default=300,
        ge=1,
        description="Claims older than this are considered abandoned"
    )
    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Rules processed in parallel within one tick"
    )
    max_occurrences_per_rule: int = Field(
        default=31,
        ge=1,
        description="Catch-up limit for a rule that is behind, per tick"
    )
    missing_rate_alert_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive missing-rate failures before alerting the operator"
    )
    end_time_policy: EndTimePolicy = Field(
        default=EndTimePolicy.ANNOTATE,
        description="How rule end_time is interpreted"
    )


class LedgerSettings(BaseSettings):
    """Ledger arithmetic and currency defaults."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        extra="ignore"
    )

    default_base_currency: str = Field(
        default="USD",
        min_length=3,
        max_length=3,
        description="Base currency for owners without settings"
    )
    default_timezone: str = Field(
        default="UTC",
        description="Reference zone for owners without settings"
    )
    amount_scale: int = Field(
        default=2,
        ge=0,
        le=8,
        description="Decimal places kept for amounts and balances"
    )
    rate_scale: int = Field(
        default=10,
        ge=2,
        le=18,
        description="Decimal places kept for exchange rates"
    )
    rounding: str = Field(
        default=ROUND_HALF_EVEN,
        description="decimal rounding mode applied to derived amounts"
    )
    conversion_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Accepted drift when a conversion is reversed"
    )

    @field_validator('default_base_currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator('default_timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject zone names the tz database doesn't know."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v

    @field_validator('rounding')
    @classmethod
    def validate_rounding(cls, v: str) -> str:
        allowed = {
            "ROUND_HALF_EVEN", "ROUND_HALF_UP", "ROUND_HALF_DOWN",
            "ROUND_UP", "ROUND_DOWN", "ROUND_CEILING", "ROUND_FLOOR",
        }
        if v not in allowed:
            raise ValueError(f"Unsupported rounding mode: {v}. Allowed: {sorted(allowed)}")
        return v

    @property
    def amount_quantum(self) -> Decimal:
        """Smallest representable amount, e.g. Decimal('0.01')."""
        return Decimal(1).scaleb(-self.amount_scale)

    @property
    def rate_quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.rate_scale)


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Minimum level for local structured logs"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def scheduler(self) -> SchedulerSettings:
        return SchedulerSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("database", "scheduler", "ledger", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
