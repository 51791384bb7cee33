"""
Airtime and data bundle purchases through Africa's Talking.

Both calls are opaque remote operations from the queue's point of view: the
result is always a ``PurchaseResult`` and transport or provider errors are
turned into ``success=False`` with a human readable reason.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.core.config import Settings
from app.core.phone import mask_phone, normalize_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataBundle:
    size: str
    amount: int
    quantity: int
    unit: str
    provider: str = "MTN"


DATA_BUNDLES: Dict[str, DataBundle] = {
    "1": DataBundle(size="100MB", amount=100, quantity=100, unit="MB"),
    "2": DataBundle(size="500MB", amount=300, quantity=500, unit="MB"),
    "3": DataBundle(size="1GB", amount=500, quantity=1, unit="GB"),
    "4": DataBundle(size="2GB", amount=800, quantity=2, unit="GB"),
}

SUCCESS_STATUSES = ("Success", "Sent", "Submitted", "Queued")


@dataclass(frozen=True)
class PurchaseResult:
    success: bool
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    bundle_size: Optional[str] = None
    amount: Optional[int] = None


def _provider_error(body: Dict[str, Any], entry: Dict[str, Any], default: str) -> str:
    # "None" is how the gateway spells "no error"
    for message in (entry.get("errorMessage"), body.get("errorMessage")):
        if message and message != "None":
            return message
    return default


class AfricasTalkingPurchases:
    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.client = client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)

    def close(self) -> None:
        self.client.close()

    def _headers(self) -> Dict[str, str]:
        return {"apiKey": self.settings.AT_API_KEY or "", "Accept": "application/json"}

    def buy_airtime(self, phone: str, amount: int, recipient: str) -> PurchaseResult:
        if not self.settings.AT_API_KEY:
            logger.error("Airtime purchase attempted without Africa's Talking credentials")
            return PurchaseResult(success=False, reason="Service configuration error")

        recipient = normalize_phone(recipient)
        recipients = [{
            "phoneNumber": recipient,
            "amount": f"{self.settings.CURRENCY_CODE} {amount}",
        }]
        logger.info("Airtime purchase of %s for %s requested by %s", amount, mask_phone(recipient), mask_phone(phone))

        try:
            response = self.client.post(
                f"{self.settings.AT_API_URL}/airtime/send",
                data={"username": self.settings.AT_USERNAME, "recipients": json.dumps(recipients)},
                headers=self._headers(),
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Airtime purchase failed: %s", exc)
            return PurchaseResult(success=False, reason="Service temporarily unavailable")

        entry = (body.get("responses") or [{}])[0]
        if entry.get("status") in SUCCESS_STATUSES or body.get("status") in SUCCESS_STATUSES:
            transaction_id = entry.get("requestId") or f"TXN-{int(time.time() * 1000)}"
            return PurchaseResult(success=True, transaction_id=transaction_id, amount=amount)

        reason = _provider_error(body, entry, "Transaction failed")
        logger.error("Airtime purchase rejected: %s", reason)
        return PurchaseResult(success=False, reason=reason, amount=amount)

    def buy_data(self, phone: str, bundle_key: str) -> PurchaseResult:
        bundle = DATA_BUNDLES.get(bundle_key)
        if bundle is None:
            return PurchaseResult(success=False, reason="Invalid bundle selection")
        if not self.settings.AT_API_KEY:
            logger.error("Data purchase attempted without Africa's Talking credentials")
            return PurchaseResult(success=False, reason="Data service temporarily unavailable")

        payload = {
            "username": self.settings.AT_USERNAME,
            "productName": "data",
            "recipients": [{
                "phoneNumber": phone,
                "quantity": bundle.quantity,
                "unit": bundle.unit,
                "validity": "Month",
                "metadata": {"provider": bundle.provider, "bundleSize": bundle.size},
            }],
        }
        logger.info("Data purchase of %s for %s", bundle.size, mask_phone(phone))

        try:
            response = self.client.post(
                f"{self.settings.AT_BUNDLES_URL}/mobile/data/request",
                json=payload,
                headers=self._headers(),
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Data purchase failed: %s", exc)
            return PurchaseResult(success=False, reason="Data service temporarily unavailable")

        entry = (body.get("entries") or [{}])[0]
        if entry.get("status") in SUCCESS_STATUSES or body.get("status") in SUCCESS_STATUSES:
            transaction_id = entry.get("transactionId") or f"DATATXN-{int(time.time() * 1000)}"
            return PurchaseResult(
                success=True,
                transaction_id=transaction_id,
                bundle_size=bundle.size,
                amount=bundle.amount,
            )

        reason = _provider_error(body, entry, "Data purchase failed")
        logger.error("Data purchase rejected: %s", reason)
        return PurchaseResult(success=False, reason=reason, bundle_size=bundle.size)
