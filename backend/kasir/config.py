# backend/kasir/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # "production" enables the strict posture checks in create_app
    ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # SQLite DB stored in backend/instance/kasir.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///kasir.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment gateway (Duitku)
    DUITKU_MERCHANT_CODE = os.environ.get("DUITKU_MERCHANT_CODE", "DS00000")
    DUITKU_API_KEY = os.environ.get("DUITKU_API_KEY", "dev-api-key-change-me")
    DUITKU_SANDBOX = _env_bool("DUITKU_SANDBOX", True)
    DUITKU_BASE_URL = os.environ.get("DUITKU_BASE_URL")  # None -> derived from DUITKU_SANDBOX
    DUITKU_CALLBACK_URL = os.environ.get(
        "DUITKU_CALLBACK_URL",
        f"{os.environ.get('APP_URL', 'http://localhost:5000')}/api/v1/payments/callback",
    )
    DUITKU_RETURN_URL = os.environ.get(
        "DUITKU_RETURN_URL",
        f"{os.environ.get('FRONTEND_URL', 'http://localhost:5173')}/payment/success",
    )
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "30"))
    GATEWAY_STATUS_TIMEOUT_SECONDS = float(os.environ.get("GATEWAY_STATUS_TIMEOUT_SECONDS", "15"))

    # Payment attempts stay live for 24 hours
    PAYMENT_EXPIRY_MINUTES = int(os.environ.get("PAYMENT_EXPIRY_MINUTES", "1440"))

    # Relaxing this is only honored outside production (see create_app)
    STRICT_SIGNATURE_VERIFICATION = _env_bool("STRICT_SIGNATURE_VERIFICATION", True)

    # Sandbox-only helpers under /api/v1/payments/dev/
    DEV_PAYMENT_ENDPOINTS = _env_bool("DEV_PAYMENT_ENDPOINTS", False)

    SESSION_ABSOLUTE_HOURS = int(os.environ.get("SESSION_ABSOLUTE_HOURS", "24"))
    SESSION_IDLE_HOURS = int(os.environ.get("SESSION_IDLE_HOURS", "2"))

    # Browser origins allowed to call the API (comma-separated)
    CORS_ALLOWED_ORIGINS = [
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173",
        ).split(",")
        if origin.strip()
    ]
