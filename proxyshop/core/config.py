"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
import json

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # TELEGRAM BOT (уведомления из воркеров)
    # ===========================================
    telegram_bot_token: str  # Required, no default

    # ===========================================
    # PROXY-SELLER API
    # ===========================================
    proxy_seller_api_key: str  # Required, no default
    proxy_seller_api_url: str = "https://proxy-seller.com/personal/api/v1"
    proxy_seller_payment_id: int = 1  # 1 = внутренний баланс, 43 = привязанная карта
    proxy_seller_timeout: float = 30.0
    # Обязательное поле в order/calc и order/make, иначе API возвращает ошибку
    proxy_seller_target_name: str = "surfing"
    proxy_seller_ipv6_protocol: str = "HTTPS"

    # ===========================================
    # CRYPTO PAY (CryptoBot)
    # ===========================================
    crypto_pay_api_token: str  # Required, no default
    crypto_pay_api_url: str = "https://pay.crypt.bot/api"
    crypto_pay_asset: str = "USDT"
    crypto_pay_timeout: float = 15.0
    # Куда ведёт кнопка после оплаты
    bot_url: str = ""

    # ===========================================
    # PRICING
    # ===========================================
    # {max_days: markup_percent}; longer rentals get a smaller markup
    markup_schedule: str = '{"7": 80, "14": 70, "30": 60, "60": 50, "90": 40}'
    markup_tail_percent: int = 40
    quote_ttl_seconds: int = 300
    price_retry_attempts: int = 2
    price_retry_delay_seconds: float = 1.0

    # ===========================================
    # PURCHASES
    # ===========================================
    purchase_max_quantity: int = 100
    # Proxies activate with a delay of up to a minute or two
    provisioning_poll_attempts: int = 12
    provisioning_poll_delay_seconds: float = 10.0
    provisioning_retry_max_attempts: int = 3
    provisioning_retry_backoff_seconds: float = 1.0
    public_id_prefix: str = "CM"
    public_id_width: int = 6

    # ===========================================
    # DEPOSITS
    # ===========================================
    deposit_min_amount: float = 1.0
    deposit_max_amount: float = 10000.0
    deposit_invoice_ttl_seconds: int = 900  # 15 минут
    deposit_poll_interval_seconds: int = 5
    deposit_max_polls: int = 180  # 15 min * 60 s / 5 s

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_storage: str = "redis"  # redis | memory

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # ===========================================
    # STATE MANAGEMENT
    # ===========================================
    state_secret: str  # Required, no default
    idempotency_ttl: int = 300  # 5 minutes

    @field_validator("markup_schedule")
    @classmethod
    def validate_markup_schedule(cls, v: str) -> str:
        """Schedule must be a JSON object of {days: percent}."""
        try:
            raw = json.loads(v)
            parsed = {int(k): int(p) for k, p in raw.items()}
        except (ValueError, TypeError, AttributeError) as exc:
            raise ValueError(f"markup_schedule must be a JSON object: {exc}") from exc
        if any(days <= 0 or percent < 0 for days, percent in parsed.items()):
            raise ValueError("markup_schedule: days must be > 0 and percent >= 0")
        return v

    @field_validator("state_secret")
    @classmethod
    def validate_state_secret(cls, v: str) -> str:
        """Ensure state secret is reasonably secure."""
        if len(v) < 16:
            raise ValueError("state_secret must be at least 16 characters")
        if v in ("changeme", "secret", "password", "admin"):
            raise ValueError("state_secret is too weak, please change it")
        return v

    @field_validator("cb_storage")
    @classmethod
    def validate_cb_storage(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("redis", "memory"):
            raise ValueError("cb_storage must be 'redis' or 'memory'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper().strip()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log_level: {v}")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Игнорировать неизвестные поля из .env


settings = Settings()
