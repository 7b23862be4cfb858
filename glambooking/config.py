"""Application configuration loaded from the environment."""
from __future__ import annotations

import os


def _env_flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default) in {"1", "true", "True"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///glambooking.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Stripe
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_CURRENCY = os.environ.get("STRIPE_CURRENCY", "gbp")

    # Cache (empty URL disables caching)
    REDIS_URL = os.environ.get("REDIS_URL", "")
    CACHE_TTL_SECONDS = int(os.environ.get("CACHE_TTL_SECONDS", 300))

    # Public booking page, used for checkout redirects
    BOOKING_PAGE_URL = os.environ.get("BOOKING_PAGE_URL", "http://localhost:3002")

    # Business day grid
    BUSINESS_DAY_START_HOUR = int(os.environ.get("BUSINESS_DAY_START_HOUR", 9))
    BUSINESS_DAY_END_HOUR = int(os.environ.get("BUSINESS_DAY_END_HOUR", 18))
    SLOT_STEP_MINUTES = int(os.environ.get("SLOT_STEP_MINUTES", 30))

    # FREE plan monthly booking cap at creation time (off matches current product behaviour)
    ENFORCE_MONTHLY_BOOKING_LIMIT = _env_flag("ENFORCE_MONTHLY_BOOKING_LIMIT")

    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    REDIS_URL = ""
    ENFORCE_MONTHLY_BOOKING_LIMIT = False
