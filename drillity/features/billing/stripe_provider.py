"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.
"""
import os
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import stripe

from drillity.features.billing.provider import (
    BillingInterval,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
    CheckoutConfirmation,
    InvoiceSummary,
)


logger = logging.getLogger(__name__)

ADDON_PRODUCT_NAME = "Unlimited AI matching"


def _as_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict (recursively)."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    to_dict = getattr(obj, "to_dict_recursive", None) or getattr(obj, "to_dict", None)
    return to_dict() if to_dict else dict(obj)


def _ts(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _flag(value: Any) -> bool:
    return str(value).lower() == "true"


def _period_bounds(subscription: Dict[str, Any]):
    """Current period of a Stripe subscription.

    Newer API versions moved the period onto the subscription items.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start")
            end = items[0].get("current_period_end")
    return _ts(start), _ts(end)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET env var)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, actor_id: str, email: Optional[str] = None) -> str:
        """Create or retrieve Stripe customer for actor."""
        try:
            customers = stripe.Customer.search(query=f"metadata['actor_id']:'{actor_id}'", limit=1)
            if customers.data:
                return customers.data[0].id

            customer_data: Dict[str, Any] = {"metadata": {"actor_id": actor_id}}
            if email:
                customer_data["email"] = email

            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}") from e

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
        """Create Stripe subscription checkout session."""
        metadata = metadata or {}
        line_items = [{"price": price_id, "quantity": 1}]
        if addon_cents > 0:
            line_items.append({
                "price_data": {
                    "currency": "eur",
                    "product_data": {"name": ADDON_PRODUCT_NAME},
                    "unit_amount": addon_cents,
                    "recurring": {"interval": "month"},
                },
                "quantity": 1,
            })

        # Subscription metadata lets cancellation webhooks find the actor
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                line_items=line_items,
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                subscription_data=subscription_data,
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}") from e

    def retrieve_checkout_session(self, session_id: str) -> CheckoutConfirmation:
        """Retrieve a checkout session with its subscription expanded."""
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["subscription"])
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session retrieval failed: {e}") from e
        return self._to_confirmation(_as_dict(session))

    def _retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return _as_dict(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}") from e

    def _to_confirmation(self, session: Dict[str, Any]) -> CheckoutConfirmation:
        metadata = session.get("metadata") or {}

        subscription = session.get("subscription")
        if isinstance(subscription, str):
            subscription = self._retrieve_subscription(subscription)
        subscription = subscription or {}

        period_start, period_end = _period_bounds(subscription)
        if period_start is None:
            # Payment-mode sessions have no subscription period
            period_start = _ts(session.get("created"))

        return CheckoutConfirmation(
            session_id=session.get("id"),
            payment_status=session.get("payment_status"),
            actor_id=metadata.get("actor_id"),
            actor_type=metadata.get("actor_type"),
            plan_id=metadata.get("plan_id"),
            customer_id=session.get("customer"),
            external_ref=subscription.get("id"),
            period_start=period_start,
            period_end=period_end,
            trial_end=_ts(subscription.get("trial_end")),
            ai_matching_enabled=_flag(metadata.get("ai_matching_enabled")),
        )

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
        """Create a send_invoice invoice with the plan (and add-on) as line items, then send it."""
        invoice_data: Dict[str, Any] = {
            "customer": customer_id,
            "collection_method": "send_invoice",
            "days_until_due": days_until_due,
            "auto_advance": False,
            "metadata": metadata or {},
            "description": description,
        }
        if po_number:
            invoice_data["custom_fields"] = [{"name": "Purchase Order", "value": po_number}]
        if vat_number:
            invoice_data["footer"] = f"VAT Number: {vat_number}"

        try:
            invoice = stripe.Invoice.create(**invoice_data)
            # Line items as amounts: price-based items changed shape across API versions
            stripe.InvoiceItem.create(
                customer=customer_id,
                invoice=invoice.id,
                amount=unit_amount_cents * quantity,
                currency="eur",
                description=description,
            )
            if addon_cents > 0:
                stripe.InvoiceItem.create(
                    customer=customer_id,
                    invoice=invoice.id,
                    amount=addon_cents * quantity,
                    currency="eur",
                    description=ADDON_PRODUCT_NAME,
                )
            stripe.Invoice.finalize_invoice(invoice.id)
            sent = _as_dict(stripe.Invoice.send_invoice(invoice.id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice creation failed: {e}") from e

        return InvoiceSummary(
            invoice_id=sent.get("id"),
            hosted_invoice_url=sent.get("hosted_invoice_url"),
            invoice_pdf=sent.get("invoice_pdf"),
            amount_due_cents=sent.get("amount_due") or 0,
            currency=sent.get("currency") or "eur",
            due_date=_ts(sent.get("due_date")),
        )

    def retrieve_invoice(self, invoice_id: str) -> CheckoutConfirmation:
        try:
            invoice = stripe.Invoice.retrieve(invoice_id)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice retrieval failed: {e}") from e
        return self._invoice_confirmation(_as_dict(invoice))

    def _invoice_confirmation(self, invoice: Dict[str, Any]) -> CheckoutConfirmation:
        metadata = invoice.get("metadata") or {}
        paid_at = (invoice.get("status_transitions") or {}).get("paid_at")
        interval = metadata.get("billing_interval")

        return CheckoutConfirmation(
            session_id=invoice.get("id"),
            payment_status=invoice.get("status"),
            actor_id=metadata.get("actor_id"),
            actor_type=metadata.get("actor_type"),
            plan_id=metadata.get("plan_id"),
            customer_id=invoice.get("customer"),
            external_ref=invoice.get("id"),
            period_start=_ts(paid_at),
            period_end=None,
            trial_end=None,
            ai_matching_enabled=_flag(metadata.get("ai_matching_enabled")),
            billing_interval=BillingInterval(interval) if interval else None,
        )

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            event = stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}") from e
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}") from e

        return self._parse_event(_as_dict(event))

    def _parse_event(self, event: Dict[str, Any]) -> BillingWebhookResult:
        """Parse Stripe event into normalized BillingWebhookResult."""
        event_type = event["type"]
        data = (event.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}

        result = BillingWebhookResult(
            event_id=event["id"],
            event_type=event_type,
            actor_id=metadata.get("actor_id"),
            customer_id=data.get("customer"),
            metadata=metadata,
        )

        if event_type == "checkout.session.completed":
            result.checkout = self._to_confirmation(data)
            result.external_ref = result.checkout.external_ref
            result.status = data.get("payment_status")
        elif event_type == "invoice.paid" and metadata.get("billing_interval"):
            # Only our prepaid invoices; subscription renewals carry no plan metadata
            result.checkout = self._invoice_confirmation(data)
            result.external_ref = data.get("id")
            result.status = data.get("status")
        elif event_type.startswith("customer.subscription."):
            result.external_ref = data.get("id")
            result.status = data.get("status")

        return result
