import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _default_fee_amounts() -> dict[str, Decimal]:
    return {
        "MATCH": _env_decimal("CLUB_FEE_MATCH", "12.00"),
        "TRAINING": _env_decimal("CLUB_FEE_TRAINING", "6.00"),
        "SOCIAL_EVENT": _env_decimal("CLUB_FEE_SOCIAL_EVENT", "0.00"),
        "YELLOW_CARD": _env_decimal("CLUB_FEE_YELLOW_CARD", "5.00"),
        "RED_CARD": _env_decimal("CLUB_FEE_RED_CARD", "25.00"),
        "YEARLY_SUBS": _env_decimal("CLUB_FEE_YEARLY_SUBS", "70.00"),
    }


@dataclass(frozen=True)
class Settings:
    currency: str = "GBP"
    overdue_days: int = 30
    social_window_hours: int = 24
    discount_rate: Decimal = Decimal("0.5")
    minutes_threshold: int = 60
    full_match_minutes: int = 90
    daily_job_hour: int = 2
    yearly_subs_fallback: Decimal = Decimal("50.00")
    log_level: str = "INFO"
    payment_gateway: str = ""
    square_access_token: str = ""
    square_location_id: str = ""
    square_environment: str = "sandbox"
    run_scheduler: bool = False
    fee_amounts: dict[str, Decimal] = field(default_factory=_default_fee_amounts)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            currency=os.getenv("CLUB_CURRENCY", "GBP").upper(),
            overdue_days=_env_int("CLUB_OVERDUE_DAYS", 30),
            social_window_hours=_env_int("CLUB_SOCIAL_WINDOW_HOURS", 24),
            discount_rate=_env_decimal("CLUB_DISCOUNT_RATE", "0.5"),
            minutes_threshold=_env_int("CLUB_MINUTES_THRESHOLD", 60),
            full_match_minutes=_env_int("CLUB_FULL_MATCH_MINUTES", 90),
            daily_job_hour=_env_int("CLUB_DAILY_JOB_HOUR", 2),
            yearly_subs_fallback=_env_decimal("CLUB_YEARLY_SUBS_FALLBACK", "50.00"),
            log_level=os.getenv("CLUB_LOG_LEVEL", "INFO").upper(),
            payment_gateway=os.getenv("CLUB_PAYMENT_GATEWAY", "").strip().lower(),
            square_access_token=os.getenv("SQUARE_ACCESS_TOKEN", ""),
            square_location_id=os.getenv("SQUARE_LOCATION_ID", ""),
            square_environment=os.getenv("SQUARE_ENVIRONMENT", "sandbox").strip().lower(),
            run_scheduler=_env_bool("CLUB_RUN_SCHEDULER", True),
            fee_amounts=_default_fee_amounts(),
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
