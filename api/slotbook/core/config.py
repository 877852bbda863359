"""Application configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "SlotBook"
    debug: bool = True
    secret_key: str = "dev-secret-change-in-production"
    api_prefix: str = "/api/v1"
    app_url: str = "http://localhost:3000"

    # Database
    database_url: str = "postgresql+asyncpg://slotbook:slotbook@db:5432/slotbook"
    database_echo: bool = False

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://redis:6379/0"

    # Auth (tokens are issued elsewhere, we only verify them)
    access_token_expire_minutes: int = 60
    jwt_algorithm: str = "HS256"

    # eSewa (UAT defaults)
    esewa_secret_key: str = ""
    esewa_product_code: str = "EPAYTEST"
    esewa_payment_url: str = "https://rc-epay.esewa.com.np/api/epay/main/v2/form"
    esewa_verify_url: str = "https://rc-epay.esewa.com.np/api/epay/transaction/status/"
    gateway_timeout_seconds: float = 15.0

    # Invoice check-in QR
    invoice_qr_secret: str = ""
    invoice_qr_max_age_hours: int = 24

    # Slots
    default_timezone: str = "Asia/Kathmandu"
    hold_ttl_minutes: int = 5
    default_advance_percentage: int = 20
    cancel_cutoff_hours: int = 5  # owners cannot cancel closer than this to the slot start

    # Background jobs
    sweep_interval_seconds: int = 60
    reconcile_interval_seconds: int = 300
    reconcile_grace_minutes: int = 5
    reconcile_window_hours: int = 24  # how long expired bookings with a payment in flight are re-checked

    model_config = {"env_prefix": "SB_", "env_file": ".env", "extra": "ignore"}

    @property
    def success_url(self) -> str:
        return f"{self.app_url}/payment/success"

    @property
    def failure_url(self) -> str:
        return f"{self.app_url}/payment/failure"


settings = Settings()
