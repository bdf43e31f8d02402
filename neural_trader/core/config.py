"""Configuration management for the Neural Trader orchestrator."""

from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )
    app_name: str = Field(default="Neural Trader")
    app_version: str = Field(default="2.5.0")


# =============================================================================
# Exchange Configuration
# =============================================================================


class ExchangeConfig(BaseSettings):
    """Credentials and connection settings for the ccxt venue."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Any ccxt exchange id (binance, bybit, kraken, ...)
    exchange_id: str = Field(default="binance", validation_alias="EXCHANGE_ID")
    api_key: str = Field(default="", validation_alias="EXCHANGE_API_KEY")
    api_secret: str = Field(default="", validation_alias="EXCHANGE_API_SECRET")
    sandbox: bool = Field(default=True, validation_alias="EXCHANGE_SANDBOX")
    timeout_ms: int = Field(default=30000, validation_alias="EXCHANGE_TIMEOUT_MS")
    retry_attempts: int = Field(default=3, validation_alias="EXCHANGE_RETRY_ATTEMPTS")

    @computed_field
    @property
    def has_credentials(self) -> bool:
        """True if both key and secret are configured."""
        return bool(self.api_key) and bool(self.api_secret) and not self.api_key.startswith("your_")


# =============================================================================
# Trading Mode Configuration
# =============================================================================


class TradingModeConfig(BaseSettings):
    """Trading mode, domain and instrument universe."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # paper (simulated fills) or live (real venue)
    trading_mode: Literal["paper", "live"] = Field(default="paper")

    # crypto runs 24/7, equities gate on NYSE hours
    trading_domain: Literal["crypto", "equities"] = Field(default="crypto")

    crypto_symbols_str: str = Field(
        default="BTC/USDT,ETH/USDT,SOL/USDT,AVAX/USDT",
        validation_alias="CRYPTO_SYMBOLS",
    )
    equity_symbols_str: str = Field(
        default="AAPL,MSFT,GOOGL,AMZN,NVDA",
        validation_alias="EQUITY_SYMBOLS",
    )

    # Strategy registry names run on every prediction cycle
    crypto_strategies_str: str = Field(default="neural", validation_alias="CRYPTO_STRATEGIES")
    equity_strategies_str: str = Field(
        default="momentum,mean_reversion", validation_alias="EQUITY_STRATEGIES"
    )

    @staticmethod
    def _split(value: str) -> List[str]:
        return [s.strip() for s in value.split(",") if s.strip()]

    @property
    def crypto_symbols(self) -> List[str]:
        return self._split(self.crypto_symbols_str)

    @property
    def equity_symbols(self) -> List[str]:
        return self._split(self.equity_symbols_str)

    @property
    def instruments(self) -> List[str]:
        """Instruments tracked for the active domain."""
        if self.trading_domain == "equities":
            return self.equity_symbols
        return self.crypto_symbols

    @property
    def strategies(self) -> List[str]:
        """Strategy names active for the current domain."""
        if self.trading_domain == "equities":
            return self._split(self.equity_strategies_str)
        return self._split(self.crypto_strategies_str)


# =============================================================================
# Risk Configuration
# =============================================================================


class RiskConfig(BaseSettings):
    """Risk gate thresholds and position sizing limits."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Notional cap per position (quote currency)
    max_position_size: Decimal = Field(default=Decimal("10000"))

    # Percent of balance risked per trade; RISK_PERCENTAGE=2 means 2%
    risk_percentage: float = Field(default=2.0)

    max_drawdown: float = Field(default=0.20)
    max_open_positions: int = Field(default=10)
    max_correlation: float = Field(default=0.80)
    min_confidence: float = Field(default=0.65)
    max_volatility: float = Field(default=0.50)
    min_kelly_fraction: float = Field(default=0.01)

    # Safety multiplier on raw Kelly, and cap applied when sizing
    kelly_multiplier: float = Field(default=0.25)
    kelly_cap: float = Field(default=0.25)

    # Orders below this notional are not worth sending
    min_trade_value: Decimal = Field(default=Decimal("10"))

    @property
    def risk_per_trade(self) -> float:
        """Risk per trade as a fraction of balance."""
        return self.risk_percentage / 100

    @field_validator("risk_percentage")
    @classmethod
    def validate_risk_percentage(cls, v):
        """Validate risk percentage is within 0-100."""
        if v <= 0 or v > 100:
            raise ValueError("Risk percentage must be between 0 and 100")
        return v

    @field_validator("max_drawdown", "max_correlation", "min_confidence", "max_volatility")
    @classmethod
    def validate_fraction(cls, v):
        """Validate fractional thresholds lie in (0, 1]."""
        if v <= 0 or v > 1:
            raise ValueError("Threshold must be between 0 and 1")
        return v

    @field_validator("max_open_positions")
    @classmethod
    def validate_max_open_positions(cls, v):
        if v < 1:
            raise ValueError("max_open_positions must be at least 1")
        return v


# =============================================================================
# Signal Configuration
# =============================================================================


class SignalConfig(BaseSettings):
    """Signal generation gates and protective offsets."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Minimum forecast confidence
    prediction_threshold: float = Field(default=0.65)

    # Minimum absolute predicted move (fraction of price)
    min_price_change: float = Field(default=0.01)

    stop_loss_pct: float = Field(default=0.02)
    take_profit_pct: float = Field(default=0.05)

    # Queued signals older than this are discarded
    signal_ttl_seconds: int = Field(default=300)

    timeframe: str = Field(default="1h")

    @field_validator("prediction_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if v < 0 or v > 1:
            raise ValueError("Prediction threshold must be between 0 and 1")
        return v


# =============================================================================
# Scheduler Configuration
# =============================================================================


class SchedulerConfig(BaseSettings):
    """Cycle cadences and execution behaviour."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    prediction_interval_seconds: float = Field(default=300)
    execution_interval_seconds: float = Field(default=60)

    # Adaptive risk adjustment runs at most this often
    risk_adjust_interval_seconds: float = Field(default=3600)

    # Entry order type; limit orders are priced at the signal price
    entry_order_type: Literal["limit", "market"] = Field(default="limit")
    protective_orders: bool = Field(default=True)

    market_timezone: str = Field(default="America/New_York")


# =============================================================================
# Portfolio & Market Data Configuration
# =============================================================================


class PortfolioConfig(BaseSettings):
    """Starting balances and history bounds."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    initial_balance: Decimal = Field(default=Decimal("10000"))
    trade_history_limit: int = Field(default=1000)
    baseline_equity: Decimal = Field(default=Decimal("10000"))

    def initial_balances(self, domain: str) -> Dict[str, Decimal]:
        """Starting balance map for a trading domain."""
        if domain == "equities":
            return {"USD": self.initial_balance}
        return {"USDT": self.initial_balance, "BTC": Decimal("0"), "ETH": Decimal("0")}


class MarketDataConfig(BaseSettings):
    """Market data cache and streaming feed settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    history_window: int = Field(default=500)
    volatility_window: int = Field(default=20)
    candle_timeframe: str = Field(default="1h")

    # Optional WebSocket ticker feed
    stream_url: Optional[str] = Field(default=None)
    stream_reconnect_delay: float = Field(default=5.0)

    # Paper crypto: take prices from the public exchange feed instead of a random walk
    paper_exchange_data: bool = Field(default=True)


# =============================================================================
# Notification Configuration
# =============================================================================


class NotificationConfig(BaseSettings):
    """Notification configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Telegram settings
    telegram_bot_token: Optional[str] = Field(default=None)
    telegram_chat_id: Optional[str] = Field(default=None)
    telegram_timeout: int = Field(default=10)

    # Notification triggers
    notify_on_signal: bool = Field(default=True)
    notify_on_trade: bool = Field(default=True)
    notify_on_error: bool = Field(default=True)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    database_url: str = Field(default="sqlite:///./data/neural_trader.db")
    persistence_enabled: bool = Field(default=True)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_file: str = Field(default="logs/neural_trader.log")


# =============================================================================
# Global Configuration Container
# =============================================================================


class NeuralTraderConfig:
    """
    Container for all Neural Trader configuration sections.

    Usage:
        from neural_trader.core.config import app_config

        if app_config.is_paper_trading:
            ...
        risk = app_config.risk.risk_per_trade
    """

    def __init__(self):
        self.system = SystemConfig()
        self.exchange = ExchangeConfig()
        self.trading_mode = TradingModeConfig()
        self.risk = RiskConfig()
        self.signal = SignalConfig()
        self.scheduler = SchedulerConfig()
        self.portfolio = PortfolioConfig()
        self.market_data = MarketDataConfig()
        self.notification = NotificationConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def is_paper_trading(self) -> bool:
        """Check if running in paper trading mode."""
        return self.trading_mode.trading_mode == "paper"

    @property
    def is_live_trading(self) -> bool:
        """Check if running in live trading mode."""
        return self.trading_mode.trading_mode == "live"

    @property
    def domain(self) -> str:
        return self.trading_mode.trading_domain

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if self.is_live_trading:
            if self.domain == "equities":
                issues.append(
                    "Live equities trading has no broker venue; use paper mode"
                )
            elif not self.exchange.has_credentials:
                issues.append(
                    f"Missing API credentials for {self.exchange.exchange_id} in live mode"
                )

        if not self.trading_mode.instruments:
            issues.append(f"No instruments configured for {self.domain}")

        if not self.trading_mode.strategies:
            issues.append(f"No strategies configured for {self.domain}")

        if self.signal.stop_loss_pct <= 0 or self.signal.take_profit_pct <= 0:
            issues.append("Stop loss and take profit percentages must be positive")

        if self.scheduler.execution_interval_seconds > self.signal.signal_ttl_seconds:
            issues.append(
                "Execution interval exceeds signal TTL; queued signals would always expire"
            )

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

database_config = DatabaseConfig()
logging_config = LoggingConfig()

app_config = NeuralTraderConfig()


__all__ = [
    "NeuralTraderConfig",
    "app_config",
    "database_config",
    "logging_config",
    "SystemConfig",
    "ExchangeConfig",
    "TradingModeConfig",
    "RiskConfig",
    "SignalConfig",
    "SchedulerConfig",
    "PortfolioConfig",
    "MarketDataConfig",
    "NotificationConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
