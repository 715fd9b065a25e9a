"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./settlements.db"
    log_level: str = "INFO"
    currency: str = "KES"

    max_payout_attempts: int = 5
    provider_timeout_seconds: float = 30.0
    lease_grace_seconds: float = 30.0  # lease outlives the provider timeout by this much

    payout_provider: str = "mock"  # "mock" or "mpesa"

    mock_failure_rate: float = 0.05
    mock_drop_rate: float = 0.0  # share of requests that never get a callback
    mock_latency_ms: int = 100

    mpesa_base_url: str = "https://sandbox.safaricom.co.ke"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = "600000"
    mpesa_initiator_name: str = "testapi"
    mpesa_security_credential: str = ""
    mpesa_result_url: str = "http://localhost:8000/api/settlements/payouts/callback/mpesa"
    mpesa_timeout_url: str = "http://localhost:8000/api/settlements/payouts/callback/mpesa"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
