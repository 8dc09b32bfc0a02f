# backend/digicards/config.py
from __future__ import annotations
import os


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///digicards.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Supplier hub (external fulfillment providers)
    SUPPLIER_HUB_URL = os.environ.get("SUPPLIER_HUB_URL", "https://supplier.saeaa.net/api/v1")
    SUPPLIER_HUB_API_KEY = os.environ.get("SUPPLIER_HUB_API_KEY", "")
    SUPPLIER_TIMEOUT_SECONDS = _env_float("SUPPLIER_TIMEOUT_SECONDS", 10.0)
    SUPPLIER_MAX_CONCURRENCY_PER_TENANT = _env_int("SUPPLIER_MAX_CONCURRENCY_PER_TENANT", 4)
    SUPPLIER_ORDER_REF_PREFIX = os.environ.get("SUPPLIER_ORDER_REF_PREFIX", "KAWN-ORDER")

    # Outbound notifications (email / WhatsApp relays); empty URL = log only
    NOTIFY_EMAIL_URL = os.environ.get("NOTIFY_EMAIL_URL", "")
    NOTIFY_WHATSAPP_URL = os.environ.get("NOTIFY_WHATSAPP_URL", "")
    NOTIFY_TIMEOUT_SECONDS = _env_float("NOTIFY_TIMEOUT_SECONDS", 5.0)

    # Generated delivery files
    DELIVERY_STORAGE_DIR = os.environ.get("DELIVERY_STORAGE_DIR", "uploads")
    DELIVERY_PUBLIC_PREFIX = os.environ.get("DELIVERY_PUBLIC_PREFIX", "/uploads")

    PLATFORM_NAME = os.environ.get("PLATFORM_NAME", "Saeaa")
    PLATFORM_NAME_AR = os.environ.get("PLATFORM_NAME_AR", "سيعة")
