"""Bot configuration, loaded once at start and immutable for the run."""

from dataclasses import replace
from datetime import time
from typing import Any, Dict, List, Mapping, Optional
import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .core.enums import DEFAULT_RISK_LIMITS, RiskLevel, RiskLimits


class ExchangeConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "bybit"
    sandbox: bool = True  # testnet by default
    api_key: Optional[str] = None
    secret: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)

    def ccxt_options(self) -> Dict[str, Any]:
        """Options understood by a ccxt exchange constructor."""
        options: Dict[str, Any] = {}
        if self.api_key:
            options["apiKey"] = self.api_key
        if self.secret:
            options["secret"] = self.secret
        if self.sandbox:
            options["sandbox"] = True
        return options


class TaskCadence(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_monitoring_seconds: float = Field(default=5.0, gt=0)
    trading_analysis_seconds: float = Field(default=15.0, gt=0)
    market_data_seconds: float = Field(default=60.0, gt=0)
    daily_reset_at: time = time(0, 0)  # UTC


class EmergencyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    cooldown_seconds: float = Field(default=300.0, ge=0)
    max_consecutive_data_failures: int = Field(default=3, ge=1)


class RiskLimitsOverride(BaseModel):
    """Partial override of one level's limits; unset fields keep the defaults."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_position_size_pct: Optional[float] = Field(default=None, ge=0)
    stop_loss_pct: Optional[float] = Field(default=None, ge=0)
    take_profit_pct: Optional[float] = Field(default=None, ge=0)
    max_simultaneous_positions: Optional[int] = Field(default=None, ge=0)
    daily_loss_limit_pct: Optional[float] = Field(default=None, ge=0)
    analysis_interval_seconds: Optional[int] = Field(default=None, ge=0)
    max_volatility_pct: Optional[float] = Field(default=None, ge=0)

    def apply(self, limits: RiskLimits) -> RiskLimits:
        return replace(limits, **self.model_dump(exclude_none=True))


class BotConfig(BaseModel):
    """Top-level configuration."""

    model_config = ConfigDict(frozen=True)

    pairs: List[str] = Field(default_factory=lambda: ["BTC/USDT", "ETH/USDT"])
    timeframe: str = "1m"
    capital: float = Field(default=10000.0, gt=0, description="Account capital in quote currency")
    size_cap_pct: float = Field(default=5.0, gt=0, description="Cap on recommended position size")
    daily_loss_limit_pct: float = Field(default=2.0, gt=0)
    correlation_ceiling: float = Field(default=0.8, ge=-1.0, le=1.0)
    max_risk_snapshot_age_seconds: float = Field(default=15.0, gt=0)
    notification_attempts: int = Field(default=3, ge=1)
    signal_source: Optional[str] = Field(
        default=None, description="Import path 'package.module:factory' of the signal source"
    )
    risk_limits: Dict[RiskLevel, RiskLimitsOverride] = Field(default_factory=dict)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    cadence: TaskCadence = Field(default_factory=TaskCadence)
    emergency: EmergencyConfig = Field(default_factory=EmergencyConfig)
    log_level: str = "INFO"
    log_file: str = "scalping_bot.log"

    @field_validator("pairs")
    @classmethod
    def _check_pairs(cls, pairs: List[str]) -> List[str]:
        cleaned = [p.strip().upper() for p in pairs if p.strip()]
        if not cleaned:
            raise ValueError("At least one trading pair is required")
        for pair in cleaned:
            if "/" not in pair:
                raise ValueError(f"Trading pair must look like BASE/QUOTE, got '{pair}'")
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("Trading pairs must be unique")
        return cleaned

    @field_validator("risk_limits")
    @classmethod
    def _check_risk_limits(cls, overrides: Dict[RiskLevel, RiskLimitsOverride]):
        if RiskLevel.CRITICAL in overrides:
            raise ValueError("CRITICAL limits cannot be overridden")
        return overrides

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, level: str) -> str:
        level = level.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{level}'")
        return level

    def resolved_risk_limits(self) -> Mapping[RiskLevel, RiskLimits]:
        """Default limits table with the configured overrides merged in."""
        limits = dict(DEFAULT_RISK_LIMITS)
        for level, override in self.risk_limits.items():
            limits[level] = override.apply(limits[level])
        return limits


def _split(raw: str) -> List[str]:
    return [s.strip() for s in raw.split(",") if s.strip()]


def _config_from_env() -> Dict:
    """Build a config dict from environment variables. Values are validated by BotConfig."""
    config: Dict = {}

    pairs = os.getenv("TRADING_PAIRS", "").strip()
    if pairs:
        config["pairs"] = _split(pairs)

    for env_name, key in (
        ("TRADING_TIMEFRAME", "timeframe"),
        ("ACCOUNT_CAPITAL", "capital"),
        ("DAILY_LOSS_LIMIT_PCT", "daily_loss_limit_pct"),
        ("CORRELATION_CEILING", "correlation_ceiling"),
        ("SIGNAL_SOURCE", "signal_source"),
        ("LOG_LEVEL", "log_level"),
    ):
        value = os.getenv(env_name, "").strip()
        if value:
            config[key] = value

    # Exchange
    exchange: Dict = {}
    name = os.getenv("EXCHANGE_NAME", "").strip()
    if name:
        exchange["name"] = name
    sandbox = os.getenv("EXCHANGE_SANDBOX", "").strip().lower()
    if sandbox in ("0", "false", "no"):
        exchange["sandbox"] = False
    elif sandbox in ("1", "true", "yes"):
        exchange["sandbox"] = True
    if os.getenv("EXCHANGE_API_KEY"):
        exchange["api_key"] = os.getenv("EXCHANGE_API_KEY")
    if os.getenv("EXCHANGE_SECRET"):
        exchange["secret"] = os.getenv("EXCHANGE_SECRET")
    if exchange:
        config["exchange"] = exchange

    # Cadences
    cadence: Dict = {}
    for env_name, key in (
        ("RISK_INTERVAL_SECONDS", "risk_monitoring_seconds"),
        ("ANALYSIS_INTERVAL_SECONDS", "trading_analysis_seconds"),
        ("MARKET_DATA_INTERVAL_SECONDS", "market_data_seconds"),
        ("DAILY_RESET_TIME", "daily_reset_at"),
    ):
        value = os.getenv(env_name, "").strip()
        if value:
            cadence[key] = value
    if cadence:
        config["cadence"] = cadence

    cooldown = os.getenv("EMERGENCY_COOLDOWN_SECONDS", "").strip()
    if cooldown:
        config["emergency"] = {"cooldown_seconds": cooldown}

    return config


def _merge(base: Dict, overrides: Mapping) -> Dict:
    merged = dict(base)
    for key, val in overrides.items():
        if isinstance(val, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(merged[key], val)
        else:
            merged[key] = val
    return merged


def load_config(env_file: Optional[str] = None, overrides: Optional[Mapping] = None) -> BotConfig:
    """Load configuration from a .env file, the environment and explicit overrides.

    Raises pydantic.ValidationError on invalid values.
    """
    load_dotenv(env_file)
    config = _config_from_env()
    if overrides:
        config = _merge(config, overrides)
    return BotConfig.model_validate(config)
