from __future__ import annotations

from clinicbilling.core.config import get_settings
from clinicbilling.core.errors import ConfigError
from clinicbilling.providers.gateway.base import PaymentGateway
from clinicbilling.providers.gateway.fake import FakePaymentGateway
from clinicbilling.providers.gateway.razorpay import RazorpayGateway


_fake_gateway: FakePaymentGateway | None = None


def get_payment_gateway() -> PaymentGateway:
    settings = get_settings()
    provider = (settings.payment_gateway_provider or "fake").lower()

    if provider == "fake":
        # Keep one fake per process so scripted outcomes survive between calls.
        global _fake_gateway
        if _fake_gateway is None:
            _fake_gateway = FakePaymentGateway()
        return _fake_gateway
    if provider == "razorpay":
        return RazorpayGateway()

    raise ConfigError(f"Unsupported payment gateway provider: {provider}")


def reset_payment_gateway() -> None:
    global _fake_gateway
    _fake_gateway = None
