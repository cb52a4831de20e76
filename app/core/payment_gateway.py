"""Payment gateway client for refunds."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx
from structlog import get_logger

from app.config import settings
from app.core.exceptions import UpstreamFailureException

logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayRefund:
    """Gateway answer to a refund request."""

    refund_id: str | None
    status: str  # "processed" or "pending"


class PaymentGateway(Protocol):
    """Anything that can refund a captured payment."""

    async def refund(self, transaction_id: str, amount: Decimal) -> GatewayRefund:
        """Refund ``amount`` of the payment, raising UpstreamFailureException on failure."""
        ...


class RazorpayGateway:
    """Razorpay refunds over the REST API."""

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        api_url: str | None = None,
        timeout: float = 15.0,
    ):
        """Initialize gateway with API credentials."""
        self.key_id = key_id if key_id is not None else settings.razorpay_key_id
        self.key_secret = key_secret if key_secret is not None else settings.razorpay_key_secret
        self.api_url = (api_url or settings.razorpay_api_url).rstrip("/")
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        """Check if credentials are present."""
        return bool(self.key_id and self.key_secret)

    async def refund(self, transaction_id: str, amount: Decimal) -> GatewayRefund:
        """
        Request a refund of ``amount`` rupees.

        Without credentials the refund is left pending for manual processing.

        Raises:
            UpstreamFailureException: If the gateway rejects or cannot be reached
        """
        if not self.is_configured:
            logger.warning("payment_gateway_not_configured", transaction_id=transaction_id)
            return GatewayRefund(refund_id=None, status="pending")

        paise = int(amount * 100)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/payments/{transaction_id}/refund",
                    auth=(self.key_id, self.key_secret),
                    json={"amount": paise},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error("payment_gateway_refund_failed", transaction_id=transaction_id, error=str(e))
            raise UpstreamFailureException(f"Refund request failed: {e!s}")

        status = "processed" if data.get("status") == "processed" else "pending"
        logger.info(
            "payment_gateway_refund_created",
            transaction_id=transaction_id,
            refund_id=data.get("id"),
            status=status,
        )
        return GatewayRefund(refund_id=data.get("id"), status=status)
