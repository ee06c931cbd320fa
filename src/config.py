# src/config.py

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import logging
import os

from dotenv import load_dotenv

from src.domain.exceptions import ConfigurationError

load_dotenv()


@dataclass(frozen=True)
class GatewaySettings:
    key_id: str
    key_secret: str
    webhook_secret: str | None = None

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        key_id = os.getenv("RAZORPAY_KEY_ID")
        key_secret = os.getenv("RAZORPAY_KEY_SECRET")
        if not key_id or not key_secret:
            raise ConfigurationError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        return cls(
            key_id=key_id,
            key_secret=key_secret,
            webhook_secret=os.getenv("RAZORPAY_WEBHOOK_SECRET") or None,
        )


@dataclass(frozen=True)
class PaymentSettings:
    platform_fee_percent: Decimal = Decimal("0")

    @classmethod
    def from_env(cls) -> "PaymentSettings":
        raw_percent = os.getenv("PLATFORM_FEE_PERCENT", "0")
        try:
            percent = Decimal(raw_percent)
        except InvalidOperation as exc:
            raise ConfigurationError(
                f"PLATFORM_FEE_PERCENT must be a number, got {raw_percent!r}"
            ) from exc
        if percent < 0 or percent > 100:
            raise ConfigurationError("PLATFORM_FEE_PERCENT must be between 0 and 100")
        return cls(platform_fee_percent=percent)


def schedule_timezone_name() -> str:
    return os.getenv("SCHEDULE_TIMEZONE", "UTC")


def configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
