"""
Payment routes (PayPal).

- GET  /api/paypal/client-id: public client id for the checkout button
- POST /api/paypal/create-order: create an order for a paid plan (rate limited per user)
- POST /api/paypal/capture-order: capture an approved order and activate the plan
- POST /api/webhooks/paypal: PayPal webhook receiver
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from planpilot.api.deps import (
    get_catalog,
    get_payment_client,
    get_subscription_store,
    rate_limited,
)
from planpilot.core.auth import get_current_user_id
from planpilot.core.errors import UnauthorizedError, ValidationError
from planpilot.core.ratelimit import RateLimitDecision
from planpilot.features.billing.paypal import PayPalClient
from planpilot.features.plans.catalog import PRO_PLAN_ID, PlanCatalog
from planpilot.features.subscriptions.service import PurchaseReference, SubscriptionStore
from planpilot.models.plan import BillingCycle


logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


class CreateOrderRequest(BaseModel):
    plan_id: str = PRO_PLAN_ID
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class CaptureOrderRequest(BaseModel):
    order_id: str = Field(min_length=1)


@router.get("/api/paypal/client-id")
async def get_client_id(payments: PayPalClient = Depends(get_payment_client)):
    return {"client_id": payments.client_id, "mode": payments.mode, "mock": payments.mock_mode}


@router.post("/api/paypal/create-order")
async def create_order(
    body: CreateOrderRequest,
    user_id: str = Depends(get_current_user_id),
    admission: RateLimitDecision = Depends(rate_limited("payment", "payment")),
    catalog: PlanCatalog = Depends(get_catalog),
    payments: PayPalClient = Depends(get_payment_client),
):
    """
    Create a PayPal order for a paid plan.

    The amount comes from the plan catalog, never from the client.

    Errors:
        400: unknown or free plan
        429: too many order attempts in the current window
        502: PayPal error
    """
    plan = catalog.get_plan(body.plan_id)
    if plan is None:
        raise ValidationError(f"Unknown plan: {body.plan_id}")
    if plan.is_free:
        raise ValidationError("The free plan cannot be purchased")

    reference = PurchaseReference(user_id=user_id, plan_id=plan.id, billing_cycle=body.billing_cycle)
    amount = plan.price.for_cycle(body.billing_cycle)
    order = await payments.create_order(reference, amount, plan.price.currency)

    payload = order.to_dict()
    payload.update(
        plan_id=plan.id,
        billing_cycle=body.billing_cycle.value,
        amount=amount,
        currency=plan.price.currency,
        remaining=admission.remaining,
    )
    return payload


@router.post("/api/paypal/capture-order")
async def capture_order(
    body: CaptureOrderRequest,
    user_id: str = Depends(get_current_user_id),
    payments: PayPalClient = Depends(get_payment_client),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    # Ownership is checked before anything is captured.
    order = await payments.get_order(body.order_id)
    reference = PurchaseReference.parse(order.custom_id)
    if reference.user_id != user_id:
        logger.warning(
            "[payments] capture for another user's order",
            extra={"user_id": user_id, "order_id": body.order_id},
        )
        raise ValidationError("Order does not belong to the current user")

    capture = await payments.capture_order(body.order_id)
    if capture.custom_id and capture.custom_id != order.custom_id:
        raise ValidationError("Captured order does not match the requested order")
    if capture.status != "COMPLETED":
        raise ValidationError(f"Payment not completed (status {capture.status})")

    store.check_capture_amount(reference, capture.as_resource())
    view = store.activate_pro(user_id, reference.billing_cycle)

    return {
        "capture_id": capture.capture_id,
        "order_id": capture.order_id,
        "status": capture.status,
        "payer": {"email": capture.payer_email},
        "plan_id": view.plan_id,
        "subscription_status": view.status,
        "billing_cycle": view.billing_cycle,
        "next_billing_date": view.next_billing_date.isoformat() if view.next_billing_date else None,
    }


@router.post("/api/webhooks/paypal")
async def paypal_webhook(
    request: Request,
    payments: PayPalClient = Depends(get_payment_client),
    store: SubscriptionStore = Depends(get_subscription_store),
):
    """
    Receive PayPal webhook events and update subscription state.

    Signature verification runs in production when PAYPAL_WEBHOOK_ID is set.
    Duplicate and unhandled events are acknowledged without effect so PayPal
    stops retrying them.
    """
    raw = await request.body()
    try:
        event = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be a JSON object")

    cfg = request.app.state.settings
    if cfg.PAYPAL_WEBHOOK_ID and cfg.ENV.lower() == "production":
        if not await payments.verify_webhook_signature(dict(request.headers), event):
            logger.error("[payments] invalid webhook signature", extra={"event_id": event.get("id")})
            raise UnauthorizedError("Invalid signature")
    else:
        logger.debug("[payments] webhook signature verification skipped")

    logger.info(
        "[payments] webhook received",
        extra={"event_id": event.get("id"), "event_type": event.get("event_type"), "resource_type": event.get("resource_type")},
    )
    outcome = store.apply_webhook_event(event)
    return {
        "received": True,
        "event_id": outcome.event_id,
        "applied": outcome.applied,
        "status": outcome.status,
        "reason": outcome.reason,
    }
