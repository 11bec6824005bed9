import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Storage
    DB_PATH: str = os.getenv(
        "DB_PATH", os.path.join(os.path.dirname(__file__), "..", "data", "signalbot.db")
    )
    DB_BUSY_TIMEOUT_SECONDS: float = float(os.getenv("DB_BUSY_TIMEOUT_SECONDS", "30"))

    # Binance
    BINANCE_BASE_URL: str = os.getenv("BINANCE_BASE_URL", "https://api.binance.com")
    BINANCE_RECV_WINDOW: int = int(os.getenv("BINANCE_RECV_WINDOW", "5000"))
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    EXCHANGE_INFO_CACHE_SECONDS: int = int(os.getenv("EXCHANGE_INFO_CACHE_SECONDS", "3600"))
    DEFAULT_MIN_NOTIONAL: float = float(os.getenv("DEFAULT_MIN_NOTIONAL", "5"))

    # Position monitor (0 = only external cron triggers a sweep)
    MONITOR_INTERVAL_SECONDS: float = float(os.getenv("MONITOR_INTERVAL_SECONDS", "0"))
    CRON_SECRET: str = os.getenv("CRON_SECRET", "")

    # API
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    def validate(self):
        errors = []
        if not self.BINANCE_BASE_URL.startswith("http"):
            errors.append("BINANCE_BASE_URL must be an http(s) URL")
        if self.MONITOR_INTERVAL_SECONDS < 0:
            errors.append("MONITOR_INTERVAL_SECONDS cannot be negative")
        if self.DEFAULT_MIN_NOTIONAL < 0:
            errors.append("DEFAULT_MIN_NOTIONAL cannot be negative")
        return errors


settings = Settings()
