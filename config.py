"""
Order Pipeline — Configuration
All tunable parameters in one place.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class RetryConfig:
    max_attempts: int = 5
    initial_retry_delay: float = 10.0       # Seconds
    max_retry_delay: float = 3600.0         # 1 hour cap
    retry_backoff_multiplier: float = 2.0
    jitter: float = 0.2                     # ±20%
    abandon_after_errors: int = 50          # Force FAILED past this error history
    # None = insufficient funds is retried until max_attempts like any transient error
    max_insufficient_funds_attempts: Optional[int] = None


@dataclass
class RateLimitConfig:
    max_orders_per_second: float = 2.0
    max_concurrent_orders: int = 5


@dataclass
class CircuitBreakerConfig:
    enabled: bool = True
    failure_threshold: int = 3              # Failures before opening circuit
    reset_timeout: float = 300.0            # Seconds before HALF_OPEN trial
    failure_window: float = 300.0           # Max gap between counted failures


@dataclass
class ExecutionConfig:
    stuck_order_timeout: float = 120.0      # PROCESSING longer than this = stuck
    exchange_timeout_sec: float = 15.0      # Per exchange call
    verify_attempts: int = 3                # Order status polls after acceptance
    verify_delay_sec: float = 1.0
    credential_selection: str = "insertion"  # "insertion" | "round_robin"
    poll_interval_sec: float = 10.0         # Scheduler tick
    cleanup_days: int = 30                  # Keep terminal orders this long


@dataclass
class ExchangeConfig:
    base_url: str = "https://api.kraken.com"


@dataclass
class NotificationConfig:
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    enabled: bool = True


@dataclass
class StorageConfig:
    db_path: str = "./data/orders.db"


@dataclass
class DashboardConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class ServiceConfig:
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        """Load config with environment variable overrides."""
        config = cls()
        config.exchange.base_url = os.getenv("KRAKEN_BASE_URL", config.exchange.base_url)
        config.notifications.telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "")
        config.notifications.telegram_chat_id = os.getenv("TELEGRAM_CHAT_ID", "")
        config.storage.db_path = os.getenv("DB_PATH", "./data/orders.db")
        config.log_level = os.getenv("LOG_LEVEL", "INFO")

        config.retry.max_attempts = int(os.getenv("MAX_ATTEMPTS", config.retry.max_attempts))
        config.rate_limit.max_concurrent_orders = int(
            os.getenv("MAX_CONCURRENT_ORDERS", config.rate_limit.max_concurrent_orders)
        )
        config.rate_limit.max_orders_per_second = float(
            os.getenv("MAX_ORDERS_PER_SECOND", config.rate_limit.max_orders_per_second)
        )
        config.circuit_breaker.enabled = (
            os.getenv("CIRCUIT_BREAKER_ENABLED", "true").lower() == "true"
        )
        config.execution.poll_interval_sec = float(
            os.getenv("POLL_INTERVAL_SEC", config.execution.poll_interval_sec)
        )
        config.execution.credential_selection = os.getenv(
            "CREDENTIAL_SELECTION", config.execution.credential_selection
        ).lower()
        config.dashboard.port = int(os.getenv("DASHBOARD_PORT", config.dashboard.port))
        return config
