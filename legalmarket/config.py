from decimal import Decimal

from decouple import config


class Settings:
    """Runtime settings read from the environment or a local .env file."""

    DATABASE_URL = config("DATABASE_URL", default="sqlite:///./legalmarket.db")
    DB_ECHO = config("DB_ECHO", default=False, cast=bool)

    # Platform cut taken on every settled engagement
    COMMISSION_RATE = config("COMMISSION_RATE", default="0.10", cast=Decimal)

    TRIAL_DAYS = config("TRIAL_DAYS", default=14, cast=int)
    PENDING_PAYMENT_TTL_HOURS = config("PENDING_PAYMENT_TTL_HOURS", default=48, cast=int)

    LOG_LEVEL = config("LOG_LEVEL", default="INFO")
    SCHEDULER_MAX_ATTEMPTS = config("SCHEDULER_MAX_ATTEMPTS", default=3, cast=int)


settings = Settings()
