import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal


def _env_bool(name, default=False):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name, default=None):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False
    ENV = os.getenv("FLASK_ENV", "development")
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY", "dev-secret-change-me")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=1)
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # pricing / checkout policy
    OFFER_STACKING = os.getenv("OFFER_STACKING", "additive")        # "additive" | "best"
    CART_MISSING_BOOK = os.getenv("CART_MISSING_BOOK", "skip")      # "skip" | "fail"
    TAX_RATE = os.getenv("TAX_RATE", "0")                           # fraction, e.g. "0.05"
    DEFAULT_DELIVERY_CHARGE = os.getenv("DEFAULT_DELIVERY_CHARGE", "50.00")

    # lifecycle policy
    COUPON_RELEASE_ON_CANCEL = _env_bool("COUPON_RELEASE_ON_CANCEL", False)
    CANCELLATION_WINDOW_MINUTES = _env_int("CANCELLATION_WINDOW_MINUTES")
    RETURN_WINDOW_DAYS = _env_int("RETURN_WINDOW_DAYS", 7)
    PAYMENT_TIMEOUT_MINUTES = _env_int("PAYMENT_TIMEOUT_MINUTES", 30)

    TOPUP_SIGNING_SECRET = os.environ.get("TOPUP_SIGNING_SECRET", "dev-topup-secret")

    @staticmethod
    def init_app(app):
        if not os.getenv("DATABASE_URL"):
            os.makedirs(app.instance_path, exist_ok=True)
            app.config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{os.path.join(app.instance_path, 'app.db')}"
        else:
            app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv("DATABASE_URL")


class TestConfig(Config):
    TESTING = True
    JWT_SECRET_KEY = "test-secret-with-enough-length-for-hs256"
    TOPUP_SIGNING_SECRET = "test-topup-secret"
    LOG_LEVEL = "WARNING"

    @staticmethod
    def init_app(app):
        app.config.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite://")


@dataclass(frozen=True)
class Policy:
    """Business switches the services consult; built once per app."""

    offer_stacking: str = "additive"
    missing_book: str = "skip"
    coupon_release_on_cancel: bool = False
    tax_rate: Decimal = Decimal("0")
    default_delivery_charge: Decimal = Decimal("50.00")
    cancellation_window: timedelta | None = None
    return_window: timedelta | None = timedelta(days=7)
    payment_timeout: timedelta = timedelta(minutes=30)
    topup_signing_secret: str = "dev-topup-secret"

    @classmethod
    def from_config(cls, config) -> "Policy":
        stacking = (config.get("OFFER_STACKING") or "additive").strip().lower()
        if stacking not in ("additive", "best"):
            raise ValueError("OFFER_STACKING must be 'additive' or 'best'")
        missing = (config.get("CART_MISSING_BOOK") or "skip").strip().lower()
        if missing not in ("skip", "fail"):
            raise ValueError("CART_MISSING_BOOK must be 'skip' or 'fail'")

        cancel_minutes = config.get("CANCELLATION_WINDOW_MINUTES")
        return_days = config.get("RETURN_WINDOW_DAYS")
        return cls(
            offer_stacking=stacking,
            missing_book=missing,
            coupon_release_on_cancel=bool(config.get("COUPON_RELEASE_ON_CANCEL", False)),
            tax_rate=Decimal(str(config.get("TAX_RATE") or "0")),
            default_delivery_charge=Decimal(str(config.get("DEFAULT_DELIVERY_CHARGE") or "0")),
            cancellation_window=timedelta(minutes=cancel_minutes) if cancel_minutes else None,
            return_window=timedelta(days=return_days) if return_days else None,
            payment_timeout=timedelta(minutes=config.get("PAYMENT_TIMEOUT_MINUTES") or 30),
            topup_signing_secret=config.get("TOPUP_SIGNING_SECRET") or "",
        )
