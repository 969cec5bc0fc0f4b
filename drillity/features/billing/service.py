"""
Billing service orchestrator.

Coordinates:
- Customer management
- Checkout creation (plan price, company trial, AI matching add-on)
- Checkout confirmation -> change_plan
- Company invoices paid by bank transfer (monthly or annual prepaid term)
- Webhook processing (idempotent via billing_events)

All Stripe-specific code is in stripe_provider.py.
"""
import os
import math
import hashlib
import logging
from typing import Optional, Dict
from datetime import datetime, timedelta
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from drillity.core.clock import normalize_now, utc_now
from drillity.core.config import settings
from drillity.core.database import get_db_session, billing_customers, billing_events
from drillity.core.errors import (
    BillingDisabledError,
    NotFoundError,
    PaymentNotConfirmedError,
    ValidationError,
)
from drillity.core.logging import log_event
from drillity.features.billing.provider import (
    BillingInterval,
    BillingProvider,
    BillingWebhookResult,
    CheckoutConfirmation,
    InvoiceSummary,
)
from drillity.features.billing.stripe_provider import StripeProvider
from drillity.features.plans.service import require_plan, stripe_price_from_env
from drillity.features.subscriptions.service import change_plan, end_subscription, period_length
from drillity.models.actor import ActorType
from drillity.models.plan import Plan
from drillity.models.subscription import ExplicitSubscription, SubscriptionStatus


logger = logging.getLogger(__name__)

ADDON_SMALL_PLAN_MAX_EUR = 100
ADDON_SMALL_PLAN_RATIO = 0.10
ADDON_LARGE_PLAN_RATIO = 0.30

# Usage periods covered by one prepaid invoice
INVOICE_TERM_PERIODS = {BillingInterval.MONTH: 1, BillingInterval.YEAR: 12}


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(os.getenv("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    return StripeProvider()


def _require_provider() -> BillingProvider:
    provider = get_provider()
    if provider is None:
        raise BillingDisabledError("Billing is not configured")
    return provider


def get_stripe_price_for_plan(plan: Plan) -> Optional[str]:
    """Stripe price from the catalog, falling back to STRIPE_PRICE_<PLAN_ID>."""
    return plan.stripe_price_id or stripe_price_from_env(plan.plan_id)


def ai_matching_addon_cents(plan: Plan) -> int:
    """
    Monthly price of the unlimited AI matching add-on.

    10% of the plan price up to EUR 100, 30% above, rounded to whole euros.
    """
    ratio = ADDON_SMALL_PLAN_RATIO if plan.price_eur <= ADDON_SMALL_PLAN_MAX_EUR else ADDON_LARGE_PLAN_RATIO
    return int(math.floor(plan.price_eur * ratio + 0.5)) * 100


def _get_customer_id(actor_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(billing_customers.c.stripe_customer_id).where(
                billing_customers.c.actor_id == actor_id
            )
        ).fetchone()
    return row[0] if row else None


def _actor_for_customer(customer_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(billing_customers.c.actor_id).where(
                billing_customers.c.stripe_customer_id == customer_id
            )
        ).fetchone()
    return row[0] if row else None


def ensure_customer_for_actor(actor_id: str, email: Optional[str] = None) -> str:
    """
    Ensure a billing customer exists for the actor.

    Returns:
        Stripe customer ID

    Raises:
        BillingDisabledError: If billing is not configured
        BillingProviderError: If customer creation fails
    """
    provider = _require_provider()

    existing = _get_customer_id(actor_id)
    if existing:
        return existing

    # Provider call stays outside any open transaction
    stripe_customer_id = provider.ensure_customer(actor_id, email)

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_customers).values(
                    actor_id=actor_id,
                    stripe_customer_id=stripe_customer_id,
                )
            )
    except IntegrityError:
        # Concurrent request stored the mapping first
        existing = _get_customer_id(actor_id)
        if existing:
            return existing
        raise

    return stripe_customer_id


def start_checkout(
    actor_id: str,
    plan_id: str,
    *,
    actor_type: ActorType = ActorType.TALENT,
    ai_matching_enabled: bool = False,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    email: Optional[str] = None,
) -> str:
    """
    Start checkout session for a paid plan.

    Company checkouts start with a free trial. The AI matching add-on is
    only available to companies.

    Returns:
        Checkout URL

    Raises:
        BillingDisabledError: If billing is not configured
        PlanNotFoundError: If plan_id is unknown
        ValidationError: If the plan cannot be bought by this actor
        BillingProviderError: If checkout creation fails
    """
    provider = _require_provider()
    actor_type = ActorType(actor_type)
    plan = require_plan(plan_id)

    if plan.audience != actor_type:
        raise ValidationError(f"Plan {plan_id} is not available to {actor_type.value} accounts")
    if plan.is_default or plan.price_cents <= 0:
        raise ValidationError(f"Plan {plan_id} does not require checkout")
    if ai_matching_enabled and actor_type != ActorType.COMPANY:
        raise ValidationError("AI matching add-on is only available to companies")

    price_id = get_stripe_price_for_plan(plan)
    if not price_id:
        raise ValidationError(f"No Stripe price configured for plan: {plan_id}")

    customer_id = ensure_customer_for_actor(actor_id, email)
    addon_cents = ai_matching_addon_cents(plan) if ai_matching_enabled else 0
    trial_days = settings.COMPANY_TRIAL_DAYS if actor_type == ActorType.COMPANY else None

    base_url = settings.APP_BASE_URL.rstrip("/")
    checkout_url = provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=success_url or f"{base_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{base_url}/subscription",
        metadata={
            "actor_id": actor_id,
            "actor_type": actor_type.value,
            "plan_id": plan.plan_id,
            "ai_matching_enabled": "true" if ai_matching_enabled else "false",
        },
        trial_days=trial_days,
        addon_cents=addon_cents,
    )

    logger.info(
        "[billing] checkout started",
        extra={
            "actor_id": actor_id,
            "plan_id": plan.plan_id,
            "ai_matching_enabled": ai_matching_enabled,
            "addon_cents": addon_cents,
        },
    )
    return checkout_url


def start_invoice(
    actor_id: str,
    plan_id: str,
    *,
    actor_type: ActorType = ActorType.COMPANY,
    billing_interval: str = BillingInterval.MONTH.value,
    ai_matching_enabled: bool = False,
    payment_terms_days: Optional[int] = None,
    po_number: Optional[str] = None,
    vat_number: Optional[str] = None,
    email: Optional[str] = None,
) -> InvoiceSummary:
    """
    Send a company an invoice for a prepaid plan term.

    Annual invoices bill twelve months of the plan (and add-on) at once.
    The plan is activated only when the invoice is paid, through
    confirm_invoice or the invoice.paid webhook.

    Raises:
        BillingDisabledError: If billing is not configured
        PlanNotFoundError: If plan_id is unknown
        ValidationError: If the actor cannot be invoiced for this plan
        BillingProviderError: If invoice creation fails
    """
    provider = _require_provider()
    actor_type = ActorType(actor_type)
    plan = require_plan(plan_id)

    if actor_type != ActorType.COMPANY:
        raise ValidationError("Invoice billing is only available to companies")
    if plan.audience != actor_type:
        raise ValidationError(f"Plan {plan_id} is not available to {actor_type.value} accounts")
    if plan.is_default or plan.price_cents <= 0:
        raise ValidationError(f"Plan {plan_id} does not require payment")
    try:
        interval = BillingInterval(billing_interval)
    except ValueError:
        raise ValidationError(f"Unknown billing interval: {billing_interval}") from None

    days_until_due = settings.INVOICE_PAYMENT_TERMS_DAYS if payment_terms_days is None else payment_terms_days
    if days_until_due < 1:
        raise ValidationError("payment_terms_days must be >= 1")

    customer_id = ensure_customer_for_actor(actor_id, email)
    quantity = INVOICE_TERM_PERIODS[interval]
    addon_cents = ai_matching_addon_cents(plan) if ai_matching_enabled else 0

    metadata = {
        "actor_id": actor_id,
        "actor_type": actor_type.value,
        "plan_id": plan.plan_id,
        "ai_matching_enabled": "true" if ai_matching_enabled else "false",
        "billing_interval": interval.value,
    }
    if po_number:
        metadata["po_number"] = po_number

    summary = provider.create_invoice(
        customer_id=customer_id,
        unit_amount_cents=plan.price_cents,
        quantity=quantity,
        description=f"{plan.name} ({interval.value}ly)",
        days_until_due=days_until_due,
        metadata=metadata,
        addon_cents=addon_cents,
        po_number=po_number,
        vat_number=vat_number,
    )

    logger.info(
        "[billing] invoice sent",
        extra={
            "actor_id": actor_id,
            "plan_id": plan.plan_id,
            "invoice_id": summary.invoice_id,
            "billing_interval": interval.value,
            "amount_due_cents": summary.amount_due_cents,
        },
    )
    return summary


def prepaid_term(interval: BillingInterval) -> timedelta:
    """Length of the access an invoice buys."""
    return period_length() * INVOICE_TERM_PERIODS[BillingInterval(interval)]


def _apply_checkout(
    confirmation: CheckoutConfirmation,
    actor_id: str,
    now: Optional[datetime] = None,
) -> ExplicitSubscription:
    now = normalize_now(now)
    actor_type = ActorType(confirmation.actor_type) if confirmation.actor_type else None
    in_trial = confirmation.trial_end is not None and confirmation.trial_end > now
    period_start = confirmation.period_start or now

    end_date = None
    if confirmation.billing_interval is not None:
        # Invoices buy a fixed term; nothing renews them
        end_date = period_start + prepaid_term(confirmation.billing_interval)

    return change_plan(
        actor_id,
        confirmation.plan_id,
        period_start,
        actor_type=actor_type,
        end_date=end_date,
        is_trial=in_trial,
        trial_end_date=confirmation.trial_end if in_trial else None,
        ai_matching_enabled=confirmation.ai_matching_enabled,
        external_ref=confirmation.external_ref,
        now=now,
    )


def confirm_checkout(
    actor_id: str,
    session_id: str,
    now: Optional[datetime] = None,
) -> ExplicitSubscription:
    """
    Confirm a checkout session and move the actor onto the purchased plan.

    Safe to call repeatedly and safe to race with the checkout webhook:
    both derive the same period start and external reference.

    Raises:
        BillingDisabledError: If billing is not configured
        NotFoundError: If the session does not belong to this actor
        PaymentNotConfirmedError: If payment has not completed
    """
    if not session_id:
        raise ValidationError("session_id is required")

    provider = _require_provider()
    confirmation = provider.retrieve_checkout_session(session_id)

    if confirmation.actor_id != actor_id or not confirmation.plan_id:
        raise NotFoundError("Checkout session not found")
    if not confirmation.confirmed:
        raise PaymentNotConfirmedError(
            f"Payment not completed. Status: {confirmation.payment_status}"
        )

    subscription = _apply_checkout(confirmation, actor_id, now)
    logger.info(
        "[billing] checkout confirmed",
        extra={"actor_id": actor_id, "plan_id": subscription.plan_id, "subscription_id": subscription.id},
    )
    return subscription


def confirm_invoice(
    actor_id: str,
    invoice_id: str,
    now: Optional[datetime] = None,
) -> ExplicitSubscription:
    """
    Activate the plan of a paid invoice.

    Replays with the same invoice return the existing subscription.

    Raises:
        BillingDisabledError: If billing is not configured
        NotFoundError: If the invoice is not a plan invoice of this actor
        PaymentNotConfirmedError: If the invoice is not paid yet
    """
    if not invoice_id:
        raise ValidationError("invoice_id is required")

    provider = _require_provider()
    confirmation = provider.retrieve_invoice(invoice_id)

    if (
        confirmation.actor_id != actor_id
        or not confirmation.plan_id
        or confirmation.billing_interval is None
    ):
        raise NotFoundError("Invoice not found")
    if not confirmation.confirmed:
        raise PaymentNotConfirmedError(
            f"Invoice not paid. Status: {confirmation.payment_status}"
        )

    subscription = _apply_checkout(confirmation, actor_id, now)
    logger.info(
        "[billing] invoice confirmed",
        extra={
            "actor_id": actor_id,
            "plan_id": subscription.plan_id,
            "subscription_id": subscription.id,
            "invoice_id": invoice_id,
        },
    )
    return subscription


def _apply_webhook(result: BillingWebhookResult) -> str:
    actor_id = result.actor_id
    if not actor_id and result.customer_id:
        actor_id = _actor_for_customer(result.customer_id)

    if result.event_type in ("checkout.session.completed", "invoice.paid"):
        checkout = result.checkout
        if not actor_id or checkout is None or not checkout.plan_id:
            return "ignored"
        if not checkout.confirmed:
            # Async payment methods confirm later
            return "ignored"
        _apply_checkout(checkout, actor_id)
        return "plan_changed"

    if result.event_type == "customer.subscription.deleted":
        if not actor_id:
            return "ignored"
        ended = end_subscription(
            actor_id,
            SubscriptionStatus.CANCELED,
            external_ref=result.external_ref,
        )
        return "subscription_ended" if ended else "ignored"

    return "ignored"


def process_webhook_event(headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip if already processed)
    3. Record event
    4. Apply state changes
    5. Mark as processed

    Failed events stay unprocessed with the error recorded, so the
    provider's retry runs them again.

    Raises:
        BillingDisabledError: If billing is not configured
        BillingWebhookError: If signature invalid or parsing fails
    """
    provider = _require_provider()
    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    try:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events.c.processed).where(
                    billing_events.c.stripe_event_id == result.event_id
                )
            ).fetchone()

            if existing is None:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                    )
                )
    except IntegrityError:
        # Race condition: another delivery of this event is in flight
        existing = (True,)

    if existing is not None and existing[0]:
        result.duplicate = True
        log_event("info", "billing.webhook.duplicate", event_type=result.event_type, extra={"event_id": result.event_id})
        return result

    try:
        result.action = _apply_webhook(result)
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e)[:1000])
            )
        log_event(
            "error",
            "billing.webhook.failed",
            actor_id=result.actor_id,
            event_type=result.event_type,
            error_code=getattr(e, "code", type(e).__name__),
            extra={"event_id": result.event_id, "error": e},
        )
        raise

    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == result.event_id)
            .values(processed=True, processed_at=utc_now(), error=None)
        )

    log_event(
        "info",
        "billing.webhook.processed",
        actor_id=result.actor_id,
        event_type=result.event_type,
        extra={"event_id": result.event_id, "action": result.action},
    )
    return result
