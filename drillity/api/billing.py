"""
Billing API routes.

Minimal surface:
- GET  /api/billing/plans: Plan catalog
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/verify: Confirm a completed checkout
- POST /api/billing/invoice: Send a company an invoice
- POST /api/billing/invoice/verify: Activate the plan of a paid invoice
- POST /api/billing/webhook: Handle Stripe webhooks
"""
from datetime import datetime
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool
from pydantic import BaseModel

from drillity.core.auth import get_current_actor
from drillity.features.billing.service import (
    ai_matching_addon_cents,
    confirm_invoice,
    process_webhook_event,
    start_checkout,
    start_invoice,
    confirm_checkout,
)
from drillity.features.plans.service import list_plans
from drillity.models.actor import Actor, ActorType


router = APIRouter(prefix="/api/billing", tags=["billing"])


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    audience: ActorType
    price_eur: float
    ai_matching_addon_eur: Optional[float] = None  # companies only
    limits: Dict[str, int]
    features: Dict[str, bool]


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan_id: str
    ai_matching_enabled: bool = False
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    """Response with checkout URL."""
    url: str


class VerifyRequest(BaseModel):
    session_id: str


class VerifyResponse(BaseModel):
    success: bool
    subscription_id: int
    plan_id: str
    is_trial: bool
    trial_end_date: Optional[datetime] = None
    ai_matching_enabled: bool
    period_reset_date: datetime
    end_date: Optional[datetime] = None


class InvoiceRequest(BaseModel):
    """Company invoice for a prepaid term, paid by bank transfer."""
    plan_id: str
    billing_interval: str = "month"  # month | year
    ai_matching_enabled: bool = False
    payment_terms_days: Optional[int] = None
    po_number: Optional[str] = None
    vat_number: Optional[str] = None
    billing_email: Optional[str] = None


class InvoiceResponse(BaseModel):
    invoice_id: str
    invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None
    amount_due_eur: float
    currency: str
    due_date: Optional[datetime] = None


class InvoiceVerifyRequest(BaseModel):
    invoice_id: str


def _verify_response(subscription) -> VerifyResponse:
    return VerifyResponse(
        success=True,
        subscription_id=subscription.id,
        plan_id=subscription.plan_id,
        is_trial=subscription.is_trial,
        trial_end_date=subscription.trial_end_date,
        ai_matching_enabled=subscription.ai_matching_enabled,
        period_reset_date=subscription.period_reset_date,
        end_date=subscription.end_date,
    )


@router.get("/plans", response_model=List[PlanResponse])
def get_plans(actor_type: Optional[ActorType] = Query(None)):
    """Plan catalog, cheapest first. Public."""
    return [
        PlanResponse(
            plan_id=plan.plan_id,
            name=plan.name,
            audience=plan.audience,
            price_eur=plan.price_eur,
            ai_matching_addon_eur=(
                ai_matching_addon_cents(plan) / 100
                if plan.audience == ActorType.COMPANY and not plan.is_default
                else None
            ),
            limits=plan.limits,
            features=plan.features,
        )
        for plan in list_plans(actor_type)
    ]


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(request: CheckoutRequest, actor: Actor = Depends(get_current_actor)):
    """
    Create Stripe checkout session.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        404: Unknown plan_id
        400: Plan not purchasable by this actor
        502: Stripe API error
    """
    url = start_checkout(
        actor.actor_id,
        request.plan_id,
        actor_type=actor.actor_type,
        ai_matching_enabled=request.ai_matching_enabled,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return {"url": url}


@router.post("/verify", response_model=VerifyResponse)
def verify_checkout(request: VerifyRequest, actor: Actor = Depends(get_current_actor)):
    """
    Confirm a checkout session after redirect and activate the plan.

    Errors:
        402: Payment not completed
        404: Session not found for this actor
    """
    subscription = confirm_checkout(actor.actor_id, request.session_id)
    return _verify_response(subscription)


@router.post("/invoice", response_model=InvoiceResponse)
def create_invoice(request: InvoiceRequest, actor: Actor = Depends(get_current_actor)):
    """
    Send an invoice for a monthly or annual prepaid term.

    Errors:
        503: Billing disabled
        404: Unknown plan_id
        400: Not a company, plan not purchasable or bad billing_interval
        502: Stripe API error
    """
    summary = start_invoice(
        actor.actor_id,
        request.plan_id,
        actor_type=actor.actor_type,
        billing_interval=request.billing_interval,
        ai_matching_enabled=request.ai_matching_enabled,
        payment_terms_days=request.payment_terms_days,
        po_number=request.po_number,
        vat_number=request.vat_number,
        email=request.billing_email,
    )
    return InvoiceResponse(
        invoice_id=summary.invoice_id,
        invoice_url=summary.hosted_invoice_url,
        invoice_pdf=summary.invoice_pdf,
        amount_due_eur=summary.amount_due_cents / 100,
        currency=summary.currency,
        due_date=summary.due_date,
    )


@router.post("/invoice/verify", response_model=VerifyResponse)
def verify_invoice(request: InvoiceVerifyRequest, actor: Actor = Depends(get_current_actor)):
    """
    Activate the plan once the invoice is paid.

    Errors:
        402: Invoice not paid yet
        404: Invoice not found for this actor
    """
    subscription = confirm_invoice(actor.actor_id, request.invoice_id)
    return _verify_response(subscription)


@router.post("/webhook")
async def handle_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates subscription state.
    Event deduplication uses stripe_event_id (stored in billing_events table).

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    # Raw body is required for signature verification
    body = await request.body()
    result = await run_in_threadpool(process_webhook_event, dict(request.headers), body)
    return {
        "received": True,
        "event_id": result.event_id,
        "duplicate": result.duplicate,
        "action": result.action,
    }
