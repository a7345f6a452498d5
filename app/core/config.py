from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"  # local|test|staging|production
    APP_NAME: str = "Villa Payments API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 25
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = False
    SMTP_FROM: str = "bookings@villapay.local"

    SENDGRID_API_KEY: str = ""
    SENDGRID_FROM_EMAIL: str = ""

    # Treasury wallet that every valid payment must reach (0x + 40 hex)
    TREASURY_ADDRESS: str = ""
    # Used only outside production when TREASURY_ADDRESS is missing or malformed
    DEV_FALLBACK_TREASURY_ADDRESS: str = "0x317914bc4db3f61c0cba933a3e00d7a8bed124a5"

    # Alchemy RPC keys per chain
    ALCHEMY_API_KEY_ARBITRUM: str = ""
    ALCHEMY_API_KEY_BNB: str = ""
    ALCHEMY_API_KEY_BASE: str = ""
    BSC_PUBLIC_RPC_URL: str = "https://bsc-dataseed.binance.org"
    RPC_TIMEOUT_SECONDS: int = 15

    # Native token / USD price feed (gas fee reporting only)
    COINGECKO_API_URL: str = "https://api.coingecko.com/api/v3/simple/price"
    COINCAP_API_URL: str = "https://api.coincap.io/v2/assets"
    BINANCE_API_URL: str = "https://api.binance.com/api/v3/ticker/price"
    PRICE_FEED_TIMEOUT_SECONDS: int = 10
    PRICE_CACHE_TTL_SECONDS: int = 300

    # Verification retry budget
    VERIFY_MAX_RETRIES: int = 10
    VERIFY_RETRY_DELAY_SECONDS: float = 3.0
    # Tolerance between the locked amount and the room price
    PAYMENT_AMOUNT_EPSILON: Decimal = Decimal("0.01")

    @property
    def is_production(self) -> bool:
        return self.ENV.strip().lower() in ("production", "prod")


settings = Settings()
