# Overview: Best-effort email and WhatsApp delivery of purchased codes.

"""
Notification Service

WHY: Customers receive their codes by email and/or WhatsApp in addition to
the inventory page. Rendering and actual sending live in external relay
services; this module builds the JSON payload and POSTs it.

RULES:
- Every call has a timeout.
- Failures are logged and swallowed: a notification must never undo or
  block a fulfilled order.
- With no relay URL configured the payload is logged and skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import httpx
from flask import current_app

from ..models import Tenant


logger = logging.getLogger(__name__)


# Subdomains that belong to the platform itself rather than a store
PLATFORM_SUBDOMAINS = {"default", "system", "koun", "saeaa", "app", "www"}


@dataclass(frozen=True)
class NotificationCard:
    product_name: str
    serial_number: str
    pin: str | None = None

    def to_dict(self) -> dict:
        return {"productName": self.product_name, "serialNumber": self.serial_number, "pin": self.pin}


@dataclass(frozen=True)
class StoreBranding:
    name: str
    name_ar: str
    is_platform: bool


def store_branding(tenant: Tenant | None, config=None) -> StoreBranding:
    config = config if config is not None else current_app.config
    if tenant is None or (tenant.subdomain or "").lower() in PLATFORM_SUBDOMAINS:
        return StoreBranding(
            name=config.get("PLATFORM_NAME", "Saeaa"),
            name_ar=config.get("PLATFORM_NAME_AR", "سيعة"),
            is_platform=True,
        )
    return StoreBranding(
        name=tenant.name or "Our Store",
        name_ar=tenant.name_ar or tenant.name or "Our Store",
        is_platform=False,
    )


def build_whatsapp_message(branding: StoreBranding, order_number: str, cards: list[NotificationCard]) -> str:
    lines = []
    for index, card in enumerate(cards, start=1):
        entry = f"{index}. *{card.product_name}*\nSerial: {card.serial_number}"
        if card.pin:
            entry += f"\nPIN: {card.pin}"
        lines.append(entry)
    return (
        f"*{branding.name} - Order {order_number} - Serial Numbers*\n\n"
        + "\n\n".join(lines)
        + f"\n\nThank you for your purchase from {branding.name}!"
    )


def format_phone(phone: str) -> str:
    return re.sub(r"[^\d+]", "", phone or "")


class Notifier:
    def __init__(
        self,
        email_url: str = "",
        whatsapp_url: str = "",
        *,
        timeout: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.email_url = email_url
        self.whatsapp_url = whatsapp_url
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_config(cls, config=None, *, transport: httpx.BaseTransport | None = None) -> "Notifier":
        config = config if config is not None else current_app.config
        return cls(
            config.get("NOTIFY_EMAIL_URL", ""),
            config.get("NOTIFY_WHATSAPP_URL", ""),
            timeout=float(config.get("NOTIFY_TIMEOUT_SECONDS", 5.0)),
            transport=transport,
        )

    def _post(self, url: str, payload: dict, channel: str, order_number: str) -> bool:
        if not url:
            logger.info("No %s relay configured; skipping %s notification for order %s", channel, channel, order_number)
            return False
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send %s for order %s: %s", channel, order_number, exc)
            return False
        logger.info("Sent %s notification for order %s", channel, order_number)
        return True

    def send_email(
        self,
        *,
        tenant: Tenant | None,
        to_email: str | None,
        order_number: str,
        cards: list[NotificationCard],
    ) -> bool:
        if not to_email:
            logger.warning("No customer email for order %s; skipping email delivery", order_number)
            return False
        branding = store_branding(tenant)
        payload = {
            "to": to_email,
            "template": "digital_cards_delivery",
            "orderNumber": order_number,
            "storeName": branding.name,
            "storeNameAr": branding.name_ar,
            "isPlatform": branding.is_platform,
            "cards": [card.to_dict() for card in cards],
        }
        return self._post(self.email_url, payload, "email", order_number)

    def send_whatsapp(
        self,
        *,
        tenant: Tenant | None,
        phone: str | None,
        order_number: str,
        cards: list[NotificationCard],
    ) -> bool:
        formatted = format_phone(phone)
        if not formatted:
            logger.warning("No customer phone for order %s; skipping WhatsApp delivery", order_number)
            return False
        branding = store_branding(tenant)
        payload = {
            "to": formatted,
            "orderNumber": order_number,
            "message": build_whatsapp_message(branding, order_number, cards),
            "cards": [card.to_dict() for card in cards],
        }
        return self._post(self.whatsapp_url, payload, "whatsapp", order_number)
