"""
Application settings, read once from the environment (and a local .env).

Usage: ``from api.config import config``
"""

import os
from typing import List, Optional
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _csv(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class AppConfig:
    """Settings for the HTTP surface, the queue worker and the vending desks."""

    # HTTP
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "8080"))
    DEBUG: bool = _flag("DEBUG", "false")
    CORS_ORIGINS: List[str] = field(default_factory=lambda: _csv("CORS_ORIGINS", "http://localhost:3000"))
    CORS_ALLOW_CREDENTIALS: bool = True
    ADMIN_API_TOKEN: str = os.getenv("ADMIN_API_TOKEN", "")

    # Queue worker
    QUEUE_WORKER_ENABLED: bool = _flag("QUEUE_WORKER_ENABLED", "true")
    WORKER_CONCURRENCY: int = int(os.getenv("WORKER_CONCURRENCY", "5"))
    POLL_INTERVAL_SECONDS: float = float(os.getenv("QUEUE_POLL_INTERVAL_SECONDS", "0.5"))
    POOL_BACKOFF_SECONDS: float = float(os.getenv("QUEUE_POOL_BACKOFF_SECONDS", "2.0"))
    JOB_TIMEOUT_SECONDS: float = float(os.getenv("JOB_TIMEOUT_SECONDS", "60"))
    DEFAULT_MAX_RETRIES: int = int(os.getenv("JOB_MAX_RETRIES", "3"))
    # Used for the wait estimate returned on enqueue
    AVG_JOB_SECONDS: int = int(os.getenv("AVG_JOB_SECONDS", "30"))

    # Browser sessions. BROWSER_ENV is LOCAL (Playwright Chromium) or BROWSERBASE
    BROWSER_ENV: str = os.getenv("BROWSER_ENV", "LOCAL").upper()
    BROWSER_HEADLESS: bool = _flag("BROWSER_HEADLESS", "true")
    BROWSER_TIMEOUT_MS: int = int(os.getenv("BROWSER_TIMEOUT_MS", "30000"))
    BROWSERBASE_API_KEY: Optional[str] = os.getenv("BROWSERBASE_API_KEY")
    BROWSERBASE_PROJECT_ID: Optional[str] = os.getenv("BROWSERBASE_PROJECT_ID")
    POOL_MAX_SESSIONS: int = int(os.getenv("POOL_MAX_SESSIONS", "5"))
    POOL_ACQUIRE_TIMEOUT_SECONDS: float = float(os.getenv("POOL_ACQUIRE_TIMEOUT_SECONDS", "30"))
    POOL_MAX_USES_PER_SESSION: int = int(os.getenv("POOL_MAX_USES_PER_SESSION", "25"))
    POOL_MAX_SESSION_AGE_SECONDS: float = float(os.getenv("POOL_MAX_SESSION_AGE_SECONDS", "300"))
    POOL_MAX_IDLE_SECONDS: float = float(os.getenv("POOL_MAX_IDLE_SECONDS", "120"))

    # Provider portal settings are cached this long after a database read
    PROVIDER_CONFIG_TTL_SECONDS: float = float(os.getenv("PROVIDER_CONFIG_TTL_SECONDS", "300"))

    # Airtime to cash, in naira
    A2C_MIN_AMOUNT: float = float(os.getenv("A2C_MIN_AMOUNT", "100"))
    A2C_MAX_AMOUNT: float = float(os.getenv("A2C_MAX_AMOUNT", "50000"))
    A2C_DEFAULT_DAILY_LIMIT: float = float(os.getenv("A2C_DEFAULT_DAILY_LIMIT", "500000"))

    def validate(self) -> List[str]:
        """Return the names of required settings that are unset."""
        required = {"ADMIN_API_TOKEN": self.ADMIN_API_TOKEN}
        if self.BROWSER_ENV == "BROWSERBASE":
            required["BROWSERBASE_API_KEY"] = self.BROWSERBASE_API_KEY
            required["BROWSERBASE_PROJECT_ID"] = self.BROWSERBASE_PROJECT_ID
        return [name for name, value in required.items() if not value]


config = AppConfig()


# Percent of the airtime amount paid out, per network, unless a2c_rate_<network> is stored
DEFAULT_A2C_RATES = {
    "mtn": 70,
    "airtel": 70,
    "glo": 65,
    "9mobile": 65,
}

# Naira price per PIN unless pin_price_<exam> is stored
DEFAULT_PIN_PRICES = {
    "waec": 4000,
    "neco": 1500,
    "nabteb": 3000,
    "nbais": 2500,
}

# Rotated across pooled browser contexts
USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/130.0.0.0 Safari/537.36",
]
