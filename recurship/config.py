"""recurship configuration."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the recurship service.

    Built once at startup and passed to each component; nothing reads
    credentials from module globals.
    """

    # Storage
    database_url: str = ""
    redis_url: str = ""
    dedup_ttl_seconds: int = 0  # 0 = keep charge ids forever

    # Payment provider (Razorpay)
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_base_url: str = "https://api.razorpay.com/v1"
    charge_event_type: str = "subscription.charged"
    subscription_total_count: int = 12

    # Shipping provider (Shiprocket)
    shiprocket_token: str = ""
    shiprocket_base_url: str = "https://apiv2.shiprocket.in/v1/external"
    pickup_location: str = "Primary Pickup Location"
    default_city: str = "Noida"
    default_pincode: str = "201301"
    default_country: str = "India"

    # Dispatch
    io_timeout: float = 10.0
    retry_max_attempts: int = 4
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.3
    pending_lease_seconds: int = 900  # must outlive one dispatch, see below

    # Sweep
    sweep_enabled: bool = True
    sweep_cron: str = "0 0 * * *"
    sweep_verify_charges: bool = True

    # Server
    admin_token: str = ""
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    model_config = {"env_prefix": "RECURSHIP_", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _lease_outlives_dispatch(self) -> Settings:
        """A live PENDING claim must not expire while its worker is still sending."""
        budget = self.retry_max_attempts * (self.io_timeout + self.retry_max_delay)
        if self.pending_lease_seconds <= budget:
            raise ValueError(
                f"pending_lease_seconds ({self.pending_lease_seconds}) must exceed the "
                f"worst-case dispatch time of {budget:.0f}s "
                "(retry_max_attempts * (io_timeout + retry_max_delay))"
            )
        return self
