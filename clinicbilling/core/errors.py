from __future__ import annotations

from typing import Any


class BillingError(Exception):
    """Base error for clinicbilling."""

    code = "BILLING_ERROR"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code)
        self.details = details


class ConfigError(BillingError):
    """Tier catalog or feature map is inconsistent; fatal at startup."""

    code = "CONFIGURATION_ERROR"


class UnknownTierError(ConfigError):
    """Tier identifier is not part of the catalog."""

    code = "UNKNOWN_TIER"


class UnknownFeatureError(ConfigError):
    """Feature identifier is not part of the feature map."""

    code = "UNKNOWN_FEATURE"


class IncomparableTierError(BillingError):
    """The add-on tier cannot be ordered against ladder tiers."""

    code = "INCOMPARABLE_TIER"


class PreconditionError(BillingError):
    """Request rejected before any state was mutated."""

    code = "PRECONDITION_FAILED"


class DuplicatePaymentError(PreconditionError):
    """Gateway payment id already produced a paid payment."""

    code = "DUPLICATE_PAYMENT"

    def __init__(self, message: str = "", *, prior: Any = None, **details: Any) -> None:
        super().__init__(message, **details)
        self.prior = prior


class InvalidTierError(PreconditionError):
    """Requested tier is not a purchasable ladder tier."""

    code = "INVALID_TIER"


class InvalidAmountError(PreconditionError):
    """Payment amount must be non-negative."""

    code = "INVALID_AMOUNT"


class NoPaymentMethodError(PreconditionError):
    """No saved payment method on file."""

    code = "NO_PAYMENT_METHOD"


class SubscriptionNotFoundError(PreconditionError):
    """No subscription record exists for the given identifier."""

    code = "SUBSCRIPTION_NOT_FOUND"


class SubscriptionCancelledError(PreconditionError):
    """Subscription is cancelled; a new subscription is required."""

    code = "SUBSCRIPTION_CANCELLED"


class InvalidTransitionError(PreconditionError):
    """Lifecycle event is not valid for the subscription's current status."""

    code = "INVALID_TRANSITION"


class GatewayTransportError(BillingError):
    """Payment gateway could not be reached or timed out."""

    code = "GATEWAY_UNAVAILABLE"


class IntegrationUnavailableError(GatewayTransportError):
    """Integration circuit is open; calls are short-circuited."""

    code = "INTEGRATION_UNAVAILABLE"


class PaymentDeclinedError(BillingError):
    """Payment gateway explicitly declined the charge."""

    code = "PAYMENT_DECLINED"


class WebhookSignatureError(BillingError):
    """Inbound webhook signature did not match."""

    code = "INVALID_SIGNATURE"


class ConcurrencyConflictError(BillingError):
    """Subscription changed since it was read; retry with fresh state."""

    code = "CONCURRENCY_CONFLICT"
