import logging
from typing import Any, Dict, Optional

import httpx

from orderflow.domain.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class InventoryClient:
    """Reserves paper stock for a job on the inventory service."""

    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def reserve_paper_for_job(self, order_id: int, material_id: str, quantity: float,
                                    user_id: str) -> Dict[str, Any]:
        payload = {
            "order_id": order_id,
            "material_id": material_id,
            "quantity": quantity,
            "user_id": user_id,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(f"{self.base_url}/inventory/reservations", json=payload)
                response.raise_for_status()
                reservation = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Paper reservation failed for order {order_id}: {e}")
            raise ExternalServiceError(f"Paper reservation failed: {e}", title="Inventory Error") from e
        logger.info(
            "Paper reserved",
            extra={'extra_fields': {'order_id': order_id, 'material_id': material_id, 'quantity': quantity}},
        )
        return reservation
