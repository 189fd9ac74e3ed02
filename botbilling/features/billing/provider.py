"""
Payment provider protocol.

Defines the interface for payment processors (Paystack).
This allows swapping processors without changing business logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class CheckoutSession:
    """Result of initializing a hosted checkout."""
    authorization_url: str
    access_code: Optional[str]
    reference: str


@dataclass
class BillingWebhookResult:
    """Result of processing a billing webhook."""
    event_kind: str
    processor_event: str
    applied: bool
    duplicate: bool = False
    reference: Optional[str] = None
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """
    Protocol for payment processors.

    Implementations must handle:
    - Recurring setup (customer, plan, subscription)
    - Transaction initialization (hosted checkout)
    - Transaction verification by reference
    - Subscription fetch / enable / disable
    """

    def ensure_customer(self, email: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Return the processor customer code for email, creating the customer if needed."""
        ...

    def ensure_plan(
        self,
        plan_code: str,
        name: str,
        interval: str,
        amount_minor: int,
        currency: str,
        description: Optional[str] = None,
    ) -> str:
        """Return the processor plan code, creating the plan if plan_code is unknown."""
        ...

    def create_subscription(
        self,
        customer_code: str,
        plan_code: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Create a recurring subscription for customer on plan.

        Returns:
            The processor's subscription object (subscription_code, email_token, ...)

        Raises:
            BillingProviderError: If the processor rejects the call or is unreachable
        """
        ...

    def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str,
        callback_url: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        plan_code: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Start a hosted checkout.

        Args:
            email: Customer email
            amount_minor: Amount in minor currency units (cents/kobo)
            reference: Our globally unique transaction reference
            currency: ISO currency code
            callback_url: Where the processor redirects after checkout
            metadata: Echoed back on charge events
            plan_code: Processor plan; the processor subscribes the
                customer to it on the first successful charge

        Returns:
            CheckoutSession with the redirect URL

        Raises:
            BillingProviderError: If the processor rejects the call or is unreachable
        """
        ...

    def verify_transaction(self, reference: str) -> Dict[str, Any]:
        """
        Fetch the processor's view of a transaction.

        Returns:
            The processor's transaction object (same shape as charge event data)

        Raises:
            BillingProviderError: If verification fails
        """
        ...

    def fetch_subscription(self, code: str) -> Dict[str, Any]:
        """Fetch a processor subscription by code."""
        ...

    def disable_subscription(self, code: str) -> None:
        """Stop auto-renewal for a processor subscription."""
        ...

    def enable_subscription(self, code: str) -> None:
        """Resume auto-renewal for a processor subscription."""
        ...


class BillingProviderError(Exception):
    """Base exception for payment provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook payloads that cannot be processed."""
    pass


class WebhookSignatureError(BillingWebhookError):
    """Signature header missing or not matching the raw body."""
    pass


class UnmatchedPaymentError(BillingWebhookError):
    """A successful payment that cannot be attached to a user or plan."""
    error_code = "billing.payment_unmatched"


class EventOutOfOrderError(BillingWebhookError):
    """An event arrived before the state it refers to exists; the processor retries."""
    error_code = "billing.event_out_of_order"
