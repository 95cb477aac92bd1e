"""Payment processor interface used by payment fraud signals.

The processor answers one question per payment-method reference:

    {"funding_type": "credit" | "debit" | "prepaid" | "unknown",
     "verification_status": "pass" | "fail" | "unavailable" | "unchecked"}

HttpPaymentProcessor calls ``GET {base_url}/payment-methods/{ref}`` on the
billing service with httpx. Any transport or decoding failure raises
PaymentLookupError, which the fraud engine turns into a medium-severity
"unable to verify" signal.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from streamguard.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentMethodInfo:
    funding_type: str
    verification_status: str

    @property
    def verification_failed(self) -> bool:
        return self.verification_status == "fail"


class PaymentLookupError(Exception):
    """The processor could not describe the payment method."""


@runtime_checkable
class PaymentProcessor(Protocol):
    async def lookup(self, payment_method_ref: str) -> PaymentMethodInfo:
        ...


class UnavailablePaymentProcessor:
    async def lookup(self, payment_method_ref: str) -> PaymentMethodInfo:
        raise PaymentLookupError("No payment processor configured")


class HttpPaymentProcessor:
    def __init__(
        self,
        base_url: str,
        timeout_s: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def lookup(self, payment_method_ref: str) -> PaymentMethodInfo:
        url = f"{self._base_url}/payment-methods/{quote(payment_method_ref, safe='')}"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            payload = response.json()
            return PaymentMethodInfo(
                funding_type=str(payload.get("funding_type", "unknown")),
                verification_status=str(payload.get("verification_status", "unchecked")),
            )
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning(
                "payment_lookup_failed",
                payment_method_ref=payment_method_ref,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentLookupError(str(exc)) from exc

    async def aclose(self) -> None:
        await self._client.aclose()


assert isinstance(UnavailablePaymentProcessor(), PaymentProcessor)
