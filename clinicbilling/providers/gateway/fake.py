from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import hashlib
from typing import Iterable, Mapping

from clinicbilling.core.errors import GatewayTransportError
from clinicbilling.providers.gateway.base import ChargeResult


OUTCOME_SUCCESS = "success"
OUTCOME_DECLINE = "decline"
OUTCOME_TIMEOUT = "timeout"


@dataclass(frozen=True)
class FakeCharge:
    amount: int
    currency: str
    method: str
    idempotency_key: str
    notes: Mapping[str, str] | None = None


class FakePaymentGateway:
    """Deterministic in-process gateway for local runs and tests.

    Outcomes are consumed in order; once the script runs out every charge
    succeeds. Payment ids derive from the idempotency key, so replaying a
    charge yields the same id just like a real gateway would.
    """

    name = "fake"

    def __init__(self, outcomes: Iterable[str] | None = None) -> None:
        self._outcomes = deque(outcomes or [])
        self.charges: list[FakeCharge] = []

    def script(self, *outcomes: str) -> None:
        self._outcomes.extend(outcomes)

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
        _ = description
        self.charges.append(FakeCharge(amount, currency, method, idempotency_key, dict(notes or {})))
        outcome = self._outcomes.popleft() if self._outcomes else OUTCOME_SUCCESS
        if outcome == OUTCOME_TIMEOUT:
            raise GatewayTransportError("fake gateway timed out")
        digest = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:14]
        if outcome == OUTCOME_DECLINE:
            return ChargeResult(success=False, gateway_payment_id=f"pay_fake_{digest}", decline_reason="card_declined")
        return ChargeResult(success=True, gateway_payment_id=f"pay_fake_{digest}")
