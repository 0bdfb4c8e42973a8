import os
import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

REQUIRED = ("DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


class Settings(BaseModel):
    database_url: str
    stripe_secret_key: str
    stripe_webhook_secret: str
    webhook_tolerance: int = 300
    default_currency: str = "inr"
    fallback_match_window_minutes: int = 30
    jwt_secret: Optional[str] = None
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    missing = [name for name in REQUIRED if not os.getenv(name)]
    if missing:
        raise RuntimeError(f"{', '.join(missing)} not set. Check your .env file.")

    return Settings(
        database_url=os.environ["DATABASE_URL"],
        stripe_secret_key=os.environ["STRIPE_SECRET_KEY"],
        stripe_webhook_secret=os.environ["STRIPE_WEBHOOK_SECRET"],
        webhook_tolerance=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
        default_currency=os.getenv("STRIPE_CURRENCY", "inr").lower(),
        fallback_match_window_minutes=int(os.getenv("FALLBACK_MATCH_WINDOW_MINUTES", "30")),
        jwt_secret=os.getenv("JWT_SECRET"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=level, format=LOG_FORMAT)
