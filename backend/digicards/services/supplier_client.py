# Overview: HTTP client for the supplier hub; wraps httpx and maps failures to supplier errors.

from __future__ import annotations

import logging

import httpx
from flask import current_app

from ..errors import (
    SupplierConfigurationError,
    SupplierUnreachableError,
    SupplierValidationError,
)


logger = logging.getLogger(__name__)


VALIDATION_STATUSES = (400, 404, 422)
VALIDATION_MARKER = "validation failed"


def mask_key(api_key: str | None) -> str:
    if not api_key:
        return "<unset>"
    if len(api_key) <= 10:
        return "*" * len(api_key)
    return f"{api_key[:5]}...{api_key[-5:]}"


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        for key in ("message", "error", "detail"):
            value = data.get(key)
            if value:
                return value if isinstance(value, str) else str(value)
    return str(data)


class SupplierHubClient:
    """
    Thin synchronous client for the supplier hub API.

    Every call carries a timeout. Failures never leak httpx exceptions:
    - 400/404/422, or a body saying "validation failed" -> SupplierValidationError
    - any other status, transport error, or timeout -> SupplierUnreachableError
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout
        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config=None, *, transport: httpx.BaseTransport | None = None) -> "SupplierHubClient":
        config = config if config is not None else current_app.config
        return cls(
            config["SUPPLIER_HUB_URL"],
            config.get("SUPPLIER_HUB_API_KEY", ""),
            timeout=float(config.get("SUPPLIER_TIMEOUT_SECONDS", 10.0)),
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "X-API-KEY": self.api_key,
        }

    def _request(self, method: str, path: str, **kwargs):
        if not self.is_configured:
            raise SupplierConfigurationError("SUPPLIER_HUB_API_KEY is not configured")

        logger.debug("Supplier hub %s %s (key %s)", method, path, mask_key(self.api_key))
        try:
            response = self.client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            raise SupplierUnreachableError(f"Supplier hub timed out after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise SupplierUnreachableError(f"Supplier hub unreachable: {exc}") from exc

        if response.is_error:
            detail = _error_detail(response)
            if response.status_code in VALIDATION_STATUSES or VALIDATION_MARKER in detail.lower():
                raise SupplierValidationError(detail, status_code=response.status_code, detail=detail)
            raise SupplierUnreachableError(detail, status_code=response.status_code, detail=detail)

        try:
            return response.json()
        except ValueError as exc:
            raise SupplierUnreachableError("Supplier hub returned a non-JSON body",
                                           status_code=response.status_code) from exc

    def create_order(self, body: dict):
        """POST /orders"""
        return self._request("POST", "/orders", json=body)

    def get_order(self, order_ref: str):
        """GET /orders/{order_ref}"""
        return self._request("GET", f"/orders/{order_ref}")

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
