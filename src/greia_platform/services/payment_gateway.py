"""Payment intent client for bookings.

Only intent creation lives here; capture and refunds are handled by the
payment provider. Amounts are sent in minor units (cents).
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

import httpx

from greia_platform.app.config import get_settings
from greia_platform.services.commission_calculator import HUNDRED, to_decimal

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """The payment provider rejected or failed to answer a request."""


class PaymentGateway:
    """Create payment intents through the provider's REST API."""

    def __init__(self, api_url: Optional[str] = None, api_key: Optional[str] = None):
        settings = get_settings()
        self.api_url = (api_url if api_url is not None else settings.payment_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.payment_api_key

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    async def create_payment_intent(
        self,
        amount: Decimal | str,
        currency: str,
        metadata: Optional[dict] = None,
    ) -> Optional[str]:
        """Return the provider's intent handle, or None when payments are not configured."""
        if not self.configured:
            logger.warning("Payment provider not configured, no intent created for %s", metadata)
            return None

        minor_units = int(to_decimal(amount) * HUNDRED)
        engagement_id = (metadata or {}).get("engagement_id") or str(uuid.uuid4())
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                resp = await client.post(
                    f"{self.api_url}/payment_intents",
                    json={
                        "amount": minor_units,
                        "currency": currency.lower(),
                        "metadata": metadata or {},
                    },
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        # Retried effects must not create a second intent
                        "Idempotency-Key": f"booking-{engagement_id}",
                    },
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise PaymentGatewayError(f"Payment provider returned {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise PaymentGatewayError(f"Payment provider request failed: {exc}") from exc

        handle = data.get("id")
        if not handle:
            raise PaymentGatewayError("Payment provider response carried no intent id")
        logger.info("Payment intent %s created (%d %s)", handle, minor_units, currency)
        return handle
