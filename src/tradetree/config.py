"""Configuration system using pydantic-settings with environment variable loading."""

from decimal import Decimal
from typing import Literal

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class VenueSettings(BaseSettings):
    """Execution venue connection settings."""

    model_config = SettingsConfigDict(env_prefix="VENUE_")

    mode: Literal["paper", "live"] = "paper"
    exchange_id: str = "binance"  # any ccxt exchange id
    api_key: SecretStr = SecretStr("")
    api_secret: SecretStr = SecretStr("")
    sandbox: bool = False
    cost_profile: Literal["demo", "binance", "mt5"] = "demo"
    paper_balance: Decimal = Decimal("100000")
    health_check_symbol: str = "BTC/USDT"


class StakingSettings(BaseSettings):
    """Stake solver and risk cap parameters."""

    model_config = SettingsConfigDict(env_prefix="STAKE_")

    tolerance: Decimal = Decimal("0.01")  # currency units
    max_iterations: int = 10
    holding_days: int = 1
    max_stake_fraction: Decimal = Decimal("0.5")  # of account capital
    max_risk_per_trade: Decimal = Decimal("0.02")  # capital lost at stop


class ExecutionSettings(BaseSettings):
    """Order submission retry and fill validation parameters."""

    model_config = SettingsConfigDict(env_prefix="EXECUTION_")

    max_attempts: int = 3
    base_delay: float = 5.0  # seconds, doubled per attempt
    backoff_multiplier: float = 2.0
    partial_fill_threshold: Decimal = Decimal("0.01")  # 1%
    balance_cache_seconds: float = 300.0
    capital_rebase_threshold: Decimal = Decimal("0.05")  # 5% balance move


class ResilienceSettings(BaseSettings):
    """Failure cache and reconciliation configuration.

    The cache holds session snapshots that could not be written to the
    durable store. All fields configurable via RESILIENCE_ prefix.
    """

    model_config = SettingsConfigDict(env_prefix="RESILIENCE_")

    max_retry_count: int = 3
    cache_ttl_seconds: float = 3600.0
    reconcile_interval: float = 60.0
    cache_file: str | None = None  # JSON snapshot of the cache, optional
    store_retry_attempts: int = 2
    store_retry_delay: float = 0.5


class SignalSettings(BaseSettings):
    """Inbound signal validation thresholds."""

    model_config = SettingsConfigDict(env_prefix="SIGNAL_")

    max_age_hours: float = 24.0
    notable_age_hours: float = 1.0
    min_risk_reward: Decimal = Decimal("1")
    max_risk_reward: Decimal = Decimal("10")
    min_risk_percent: Decimal = Decimal("0.1")
    max_risk_percent: Decimal = Decimal("5")
    large_range_threshold: Decimal = Decimal("0.1")  # 10% of entry
    dedup_memory_size: int = 10_000  # recent ids kept in memory; the store is authoritative


class OvernightSettings(BaseSettings):
    """Overnight forced-closure schedule.

    The cutoff is a wall-clock time in a fixed reference timezone. Trades
    still active past it are closed at market and their session is rolled
    back to the pre-trade node.
    """

    model_config = SettingsConfigDict(env_prefix="OVERNIGHT_")

    enabled: bool = True
    cutoff_time: str = "03:00"
    timezone: str = "Europe/Berlin"
    grace_minutes: int = 15
    scan_interval: float = 60.0
    proximity_threshold: Decimal = Decimal("0.005")  # 0.5% from target/stop
    max_hours_open: float = 4.0
    minutes_to_cutoff: int = 30
    close_enabled_default: bool = True


class AlertSettings(BaseSettings):
    """Alert thresholds."""

    model_config = SettingsConfigDict(env_prefix="ALERT_")

    signal_delay_seconds: float = 30.0
    venue_timeout_seconds: float = 60.0
    stake_deviation_threshold: Decimal = Decimal("0.10")
    deviation_history: int = 10
    max_alerts: int = 200


class DatabaseSettings(BaseSettings):
    """SQLite persistence settings."""

    model_config = SettingsConfigDict(env_prefix="DATABASE_")

    path: str = "data/tradetree.db"


class ServerSettings(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    venue: VenueSettings = VenueSettings()
    staking: StakingSettings = StakingSettings()
    execution: ExecutionSettings = ExecutionSettings()
    resilience: ResilienceSettings = ResilienceSettings()
    signal: SignalSettings = SignalSettings()
    overnight: OvernightSettings = OvernightSettings()
    alerts: AlertSettings = AlertSettings()
    database: DatabaseSettings = DatabaseSettings()
    server: ServerSettings = ServerSettings()
