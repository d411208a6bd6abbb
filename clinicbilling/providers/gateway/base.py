from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Protocol


@dataclass(frozen=True)
class ChargeResult:
    # A decline is a result, not an exception; transport failures raise GatewayTransportError.
    success: bool
    gateway_payment_id: str | None
    decline_reason: str | None = None


class PaymentGateway(Protocol):
    name: str

    async def charge(
        self,
        *,
        amount: int,
        currency: str,
        method: str,
        idempotency_key: str,
        description: str | None = None,
        notes: Mapping[str, str] | None = None,
    ) -> ChargeResult:
        # notes travel with the payment and come back on gateway webhooks.
        ...
