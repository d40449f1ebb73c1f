"""Client for the WooCommerce edge function and the typed payload it returns."""

import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, Field, field_validator

from orderflow.domain.errors import ExternalServiceError

logger = logging.getLogger(__name__)

_PREFIX = re.compile(r"^(WC|MAN)-", re.IGNORECASE)
_NON_DIGITS = re.compile(r"\D")


def normalize_order_number_for_comparison(value: Union[str, int, None]) -> str:
    """``WC-00123``, ``MAN-123`` and ``123`` all compare as ``"123"``."""
    if not value:
        return ""
    text = _PREFIX.sub("", str(value).strip())
    digits = _NON_DIGITS.sub("", text)
    return digits.lstrip("0") or ("0" if digits else "")


class WooCommerceMeta(BaseModel):
    key: str
    value: Any = None


class WooCommerceLineItem(BaseModel):
    name: str = ""
    quantity: int = 1
    price: Optional[float] = None
    total: Optional[float] = None
    sku: Optional[str] = None
    specifications: Dict[str, Any] = Field(default_factory=dict)
    meta_data: List[WooCommerceMeta] = Field(default_factory=list)

    @field_validator("quantity", mode="before")
    @classmethod
    def _default_quantity(cls, value):
        return value or 1

    def unit_price(self) -> float:
        if self.price:
            return float(self.price)
        return float(self.total or 0) / (self.quantity or 1)

    def merged_specifications(self) -> Dict[str, str]:
        """Explicit specifications plus the visible (non ``_``) meta entries."""
        specs = {str(k): str(v) for k, v in self.specifications.items()}
        for meta in self.meta_data:
            if not meta.key.startswith("_"):
                specs[meta.key] = str(meta.value)
        return specs


class WooCommerceOrder(BaseModel):
    id: int
    order_number: Optional[str] = None
    order_date: Optional[datetime] = None
    status: Optional[str] = None
    customer_id: Optional[Union[int, str]] = None
    customer_name: str = ""
    customer_phone: str = ""
    customer_email: str = ""
    billing_address: str = ""
    billing_city: str = ""
    billing_state: str = ""
    billing_pincode: str = ""
    payment_status: Optional[str] = None
    order_total: float = 0
    currency: str = "INR"
    line_items: List[WooCommerceLineItem] = Field(default_factory=list)

    @field_validator("order_number", mode="before")
    @classmethod
    def _stringify_number(cls, value):
        return None if value is None else str(value)

    @field_validator(
        "customer_name", "customer_phone", "customer_email", "billing_address",
        "billing_city", "billing_state", "billing_pincode", mode="before",
    )
    @classmethod
    def _blank_for_none(cls, value):
        return "" if value is None else value

    def matches(self, requested: str) -> bool:
        wanted = normalize_order_number_for_comparison(requested)
        return bool(wanted) and wanted in (
            normalize_order_number_for_comparison(self.order_number),
            normalize_order_number_for_comparison(self.id),
        )

    def summary_notes(self) -> str:
        return (
            "Order imported from WooCommerce\n"
            f"Order Number: {self.order_number}\n"
            f"Total: {self.currency} {self.order_total}\n"
            f"Payment Status: {self.payment_status}"
        )


class WooCommerceClient:
    def __init__(self, function_url: str, api_key: str = "", timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.function_url = function_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def order_by_number(self, order_number: str) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.function_url,
                    json={"action": "order-by-number", "orderNumber": order_number},
                    headers=headers,
                )
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"WooCommerce lookup failed for {order_number}: {e}")
            raise ExternalServiceError(f"WooCommerce lookup failed: {e}", title="WooCommerce Error") from e
