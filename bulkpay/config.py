"""Application configuration via environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./bulkpay.db"
    log_level: str = "INFO"
    default_environment: str = "sandbox"

    # PayPal Payouts
    paypal_sandbox_client_id: Optional[str] = None
    paypal_sandbox_client_secret: Optional[str] = None
    paypal_production_client_id: Optional[str] = None
    paypal_production_client_secret: Optional[str] = None

    # Giftogram gift cards
    giftogram_api_key: Optional[str] = None
    giftogram_sandbox_api_key: Optional[str] = None
    giftogram_production_api_key: Optional[str] = None

    # XE bank transfers
    xe_access_key: Optional[str] = None
    xe_access_secret: Optional[str] = None
    xe_account_number: Optional[str] = None
    xe_bank_account_id: Optional[str] = None
    xe_sandbox_access_key: Optional[str] = None
    xe_sandbox_access_secret: Optional[str] = None
    xe_sandbox_account_number: Optional[str] = None
    xe_sandbox_bank_account_id: Optional[str] = None
    xe_production_access_key: Optional[str] = None
    xe_production_access_secret: Optional[str] = None
    xe_production_account_number: Optional[str] = None
    xe_production_bank_account_id: Optional[str] = None

    provider_timeout_seconds: float = 30.0
    token_refresh_buffer_seconds: int = 300  # refresh tokens 5 min before expiry
    giftcard_window_size: int = 5
    giftcard_window_delay_ms: int = 1000
    status_max_retries: int = 3
    status_retry_base_delay: float = 1.0
    processing_lease_seconds: int = 900
    processing_lease_renew_seconds: int = 300
    reference_cache_days: int = 30

    max_payment_amount: float = 10_000.0
    supported_currencies: list[str] = ["USD", "EUR", "GBP", "CAD", "AUD"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def credential(self, provider: str, environment: str, key: str) -> Optional[str]:
        """
        Look up a provider credential for one environment.

        Environment-specific keys win (``xe_sandbox_access_key``); the
        un-prefixed key (``xe_access_key``) is the fallback.
        """
        specific = getattr(self, f"{provider}_{environment}_{key}", None)
        if specific:
            return specific
        return getattr(self, f"{provider}_{key}", None)


settings = Settings()
