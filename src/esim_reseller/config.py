import secrets
from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service
    env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./esim_reseller.db"
    database_echo: bool = False

    # API Security
    api_keys: str = ""  # Comma-separated list of valid service keys
    api_key_header: str = "X-API-Key"
    agent_id_header: str = "X-Agent-ID"  # Set by the upstream auth gateway
    require_api_key: bool = True  # Set to False to disable auth (dev only)

    # Rate Limiting
    rate_limit_requests: int = 100  # requests per window
    rate_limit_window: str = "minute"  # second, minute, hour, day

    # Retry Settings
    retry_max_attempts: int = 3
    retry_min_wait: float = 1.0  # seconds
    retry_max_wait: float = 10.0  # seconds
    retry_multiplier: float = 2.0  # exponential backoff multiplier

    # Circuit Breaker
    circuit_breaker_threshold: int = 5  # failures before opening
    circuit_breaker_timeout: float = 60.0  # seconds before half-open

    # HTTP Client
    http_timeout: float = 30.0
    http_max_connections: int = 20
    http_max_keepalive: int = 10

    # Pricing
    default_markup_percent: Decimal = Decimal("300")
    max_checkout_amount: Decimal = Decimal("10000")

    # Provisioning
    poll_max_attempts: int = 10
    poll_interval: float = 3.0  # seconds between supplier A query attempts
    retry_batch_size: int = 10
    retry_delay: float = 2.0  # seconds between retry sweep attempts
    sync_delay: float = 0.1  # seconds between status sweep requests

    # Supplier A (batch/polling)
    supplier_a_base_url: str = "https://api.esimaccess.com"
    supplier_a_access_code: str = ""
    supplier_a_secret_key: str = ""

    # Supplier B (synchronous create)
    supplier_b_base_url: str = "https://api.maya.net"
    supplier_b_api_key: str = ""
    supplier_b_api_secret: str = ""

    # Stripe
    stripe_secret_key: str = ""
    stripe_reconcile_days: int = 7  # only sessions this recent are reconciled
    stripe_reconcile_limit: int = 30  # sessions fetched per reconciliation

    # Razorpay
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def get_api_keys(self) -> set[str]:
        """Get the set of valid API keys."""
        if not self.api_keys:
            return set()
        return {k.strip() for k in self.api_keys.split(",") if k.strip()}

    def is_valid_api_key(self, key: str) -> bool:
        """Check if the given API key is valid."""
        return key in self.get_api_keys()

    @staticmethod
    def generate_api_key() -> str:
        """Generate a new secure API key."""
        return secrets.token_urlsafe(32)


settings = Settings()
