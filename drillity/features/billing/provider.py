"""
Billing provider protocol.

Defines the interface for the payment collaborator (Stripe, etc.).
This allows swapping providers without changing entitlement logic.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from drillity.core.errors import AppError


# Checkout and invoice statuses that count as confirmed
CONFIRMED_PAYMENT_STATUSES = ("paid", "no_payment_required")


class BillingInterval(str, Enum):
    """Prepaid term of an invoiced subscription."""
    MONTH = "month"
    YEAR = "year"


@dataclass
class CheckoutConfirmation:
    """Normalized view of a checkout session or invoice, paid or pending."""
    session_id: str
    payment_status: Optional[str]
    actor_id: Optional[str]
    actor_type: Optional[str]
    plan_id: Optional[str]
    customer_id: Optional[str]
    external_ref: Optional[str]  # provider subscription or invoice id
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    trial_end: Optional[datetime]
    ai_matching_enabled: bool = False
    billing_interval: Optional[BillingInterval] = None  # prepaid invoices only

    @property
    def confirmed(self) -> bool:
        return self.payment_status in CONFIRMED_PAYMENT_STATUSES


@dataclass
class InvoiceSummary:
    """A finalized invoice sent to the customer."""
    invoice_id: str
    hosted_invoice_url: Optional[str]
    invoice_pdf: Optional[str]
    amount_due_cents: int
    currency: str
    due_date: Optional[datetime]


@dataclass
class BillingWebhookResult:
    """Result of verifying and parsing a billing webhook."""
    event_id: str
    event_type: str
    actor_id: Optional[str] = None
    customer_id: Optional[str] = None
    external_ref: Optional[str] = None
    status: Optional[str] = None  # subscription or payment status
    checkout: Optional[CheckoutConfirmation] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    action: Optional[str] = None  # plan_changed, subscription_ended, ignored
    duplicate: bool = False


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation and retrieval
    - Invoice creation and retrieval (companies paying by bank transfer)
    - Webhook signature verification and parsing
    """

    def ensure_customer(self, actor_id: str, email: Optional[str] = None) -> str:
        """
        Ensure a billing customer exists for the actor.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        trial_days: Optional[int] = None,
        addon_cents: int = 0,
    ) -> str:
        """
        Create a subscription checkout session.

        Args:
            customer_id: Provider customer ID
            price_id: Provider price ID for the plan
            metadata: Attached to the session and the resulting subscription
            trial_days: Free trial length, if any
            addon_cents: Monthly AI matching add-on price (0 for none)

        Returns:
            Checkout session URL

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutConfirmation:
        """
        Fetch a checkout session and its subscription period.

        Raises:
            BillingProviderError: If the session cannot be retrieved
        """
        ...

    def create_invoice(
        self,
        customer_id: str,
        unit_amount_cents: int,
        quantity: int,
        description: str,
        days_until_due: int,
        metadata: Optional[Dict[str, str]] = None,
        addon_cents: int = 0,
        po_number: Optional[str] = None,
        vat_number: Optional[str] = None,
    ) -> InvoiceSummary:
        """
        Create, finalize and send a one-off invoice for a prepaid term.

        Args:
            unit_amount_cents: Plan price per month
            quantity: Months in the term (12 for annual billing)
            addon_cents: Monthly AI matching add-on price (0 for none)
            po_number: Printed on the invoice as "Purchase Order"
            vat_number: Printed in the invoice footer

        Raises:
            BillingProviderError: If any invoice call fails
        """
        ...

    def retrieve_invoice(self, invoice_id: str) -> CheckoutConfirmation:
        """
        Fetch an invoice as a confirmation (status "paid" once settled).

        Raises:
            BillingProviderError: If the invoice cannot be retrieved
        """
        ...

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """
        Verify webhook signature and parse event.

        Args:
            headers: HTTP headers (must include signature header)
            body: Raw webhook body (for signature verification)

        Raises:
            BillingWebhookError: If signature invalid or parsing fails
        """
        ...


class BillingProviderError(AppError):
    """Payment provider call failed."""
    code = "billing_provider_error"
    status_code = 502


class BillingWebhookError(BillingProviderError):
    """Webhook could not be verified or parsed."""
    code = "invalid_webhook"
    status_code = 400
