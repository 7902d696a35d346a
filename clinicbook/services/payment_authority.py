"""
External payment authority.

The booking core never settles money itself; it asks an authority to charge
or refund and records the returned transaction id.
"""
from dataclasses import dataclass
from typing import Optional
import logging
import uuid

import httpx

from ..core.config import settings
from ..core.errors import PaymentError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class PaymentReceipt:
    transaction_id: str
    amount: float
    status: str = "succeeded"

class PaymentAuthority:
    """Interface of the payment authority."""

    def charge(self, amount: float, reference: str, token: Optional[str] = None) -> PaymentReceipt:
        raise NotImplementedError

    def refund(self, transaction_id: Optional[str], amount: float, reference: str) -> PaymentReceipt:
        raise NotImplementedError

class LocalPaymentAuthority(PaymentAuthority):
    """Approves everything and issues synthetic transaction ids.

    Used when no ``PAYMENT_AUTHORITY_URL`` is configured.
    """

    def charge(self, amount, reference, token=None):
        receipt = PaymentReceipt(transaction_id=f"TXN-{uuid.uuid4().hex[:12].upper()}", amount=amount)
        logger.info(f"Local authority charged {amount:.2f} for {reference}: {receipt.transaction_id}")
        return receipt

    def refund(self, transaction_id, amount, reference):
        receipt = PaymentReceipt(transaction_id=f"RFD-{uuid.uuid4().hex[:12].upper()}", amount=amount)
        logger.info(f"Local authority refunded {amount:.2f} for {reference}: {receipt.transaction_id}")
        return receipt

class HttpPaymentAuthority(PaymentAuthority):
    """Talks to a payment authority over HTTP (``POST /charges``, ``POST /refunds``)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout, headers=headers)

    def charge(self, amount, reference, token=None):
        return self._post("/charges", {
            "amount": amount,
            "reference": reference,
            "payment_token": token,
        })

    def refund(self, transaction_id, amount, reference):
        return self._post("/refunds", {
            "transaction_id": transaction_id,
            "amount": amount,
            "reference": reference,
        })

    def _post(self, path: str, payload: dict) -> PaymentReceipt:
        try:
            response = self.client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Payment authority unreachable on {path}: {str(e)}")
            raise PaymentError("Payment authority is unavailable") from e

        if response.status_code not in (200, 201):
            logger.warning(f"Payment authority rejected {path} for {payload['reference']}: {response.status_code}")
            raise PaymentError(
                "Payment was declined",
                details={"authority_status": response.status_code},
            )

        data = response.json()
        if data.get("status", "succeeded") != "succeeded" or not data.get("transaction_id"):
            raise PaymentError("Payment was declined", details={"authority_status": data.get("status")})

        return PaymentReceipt(
            transaction_id=data["transaction_id"],
            amount=float(data.get("amount", payload["amount"])),
            status=data.get("status", "succeeded"),
        )

def get_payment_authority() -> PaymentAuthority:
    """Payment authority dependency."""
    if settings.PAYMENT_AUTHORITY_URL:
        return HttpPaymentAuthority(
            settings.PAYMENT_AUTHORITY_URL,
            api_key=settings.PAYMENT_AUTHORITY_API_KEY,
            timeout=settings.PAYMENT_AUTHORITY_TIMEOUT,
        )
    return LocalPaymentAuthority()
