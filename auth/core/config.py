# /core/config.py
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    CORS_ALLOW_ORIGINS: str = "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173"
    LOG_LEVEL: str = "INFO"

    PAYMONGO_SECRET: str | None = None
    PAYMONGO_WEBHOOK_SECRET: str | None = None
    PAYMONGO_API_URL: str = "https://api.paymongo.com/v1/checkout_sessions"
    CURRENCY: str = "PHP"
    CURRENCY_SYMBOL: str = "₱"
    APP_DEEP_LINK: str = "parkinghub://payments/result"
    PORT: int = 3001

    # storage is always UTC; this zone is only for display and "today" bounds
    DISPLAY_TIMEZONE: str = "UTC"

    READ_TIMEOUT_SECONDS: float = 8.0
    ACTIVITY_WATCHDOG_SECONDS: float = 12.0
    EARNINGS_TIMEOUT_SECONDS: float = 30.0
    ACTIVITY_THROTTLE_SECONDS: float = 1.5
    POLL_INTERVAL_SECONDS: float = 30.0
    SESSION_DEBOUNCE_SECONDS: float = 0.6
    PAYMENT_DEBOUNCE_SECONDS: float = 0.8
    ACTIVITY_DEBOUNCE_SECONDS: float = 0.6

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ALLOW_ORIGINS.split(",") if o.strip()]

settings = Settings()
