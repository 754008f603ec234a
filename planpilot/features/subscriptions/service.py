"""
planpilot/features/subscriptions/service.py

Subscription state per user, fed by PayPal webhooks and order captures.

Status lifecycle:
    none -> active -> {cancelled, suspended, past_due} -> active | none

Re-applying the current status is a no-op. The entitlement resolver reads
a UserEntitlementView from here on every request; nothing is cached.
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging
import threading

from planpilot.core.errors import ValidationError
from planpilot.features.entitlements.service import SubscriptionStatus
from planpilot.features.plans.catalog import DEFAULT_CATALOG, FREE_PLAN_ID, PRO_PLAN_ID, PlanCatalog
from planpilot.models.plan import BillingCycle
from planpilot.models.subscription import UserEntitlementView


logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.NONE: {SubscriptionStatus.ACTIVE},
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.PAST_DUE,
    },
    SubscriptionStatus.CANCELLED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.NONE},
    SubscriptionStatus.SUSPENDED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.NONE},
    SubscriptionStatus.PAST_DUE: {SubscriptionStatus.ACTIVE, SubscriptionStatus.NONE},
}

# PayPal webhook event -> resulting status
WEBHOOK_STATUS_MAP = {
    "PAYMENT.CAPTURE.COMPLETED": SubscriptionStatus.ACTIVE,
    "BILLING.SUBSCRIPTION.ACTIVATED": SubscriptionStatus.ACTIVE,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": SubscriptionStatus.ACTIVE,
    "BILLING.SUBSCRIPTION.CANCELLED": SubscriptionStatus.CANCELLED,
    "BILLING.SUBSCRIPTION.SUSPENDED": SubscriptionStatus.SUSPENDED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": SubscriptionStatus.PAST_DUE,
    "BILLING.SUBSCRIPTION.EXPIRED": SubscriptionStatus.NONE,
}

FAILED_PAYMENT_EVENTS = {"PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"}

AMOUNT_TOLERANCE = 0.01

# Webhook ids remembered for duplicate detection, oldest evicted first.
MAX_PROCESSED_EVENTS = 10000


@dataclass(frozen=True)
class PurchaseReference:
    """Decoded PayPal ``custom_id``: ``<user_id>_<plan_id>_<billing_cycle>``."""
    user_id: str
    plan_id: str
    billing_cycle: BillingCycle

    def encode(self) -> str:
        return f"{self.user_id}_{self.plan_id}_{self.billing_cycle.value}"

    @classmethod
    def parse(cls, custom_id: Optional[str]) -> "PurchaseReference":
        # Clerk user ids contain underscores (user_2abc...), so split from the right.
        if custom_id is not None and not isinstance(custom_id, str):
            raise ValidationError(f"Invalid custom_id format: {custom_id!r}")
        parts = (custom_id or "").rsplit("_", 2)
        if len(parts) != 3 or not all(parts):
            raise ValidationError(f"Invalid custom_id format: {custom_id!r}")
        user_id, plan_id, cycle = parts
        try:
            billing_cycle = BillingCycle(cycle)
        except ValueError:
            raise ValidationError(f"Invalid billing cycle in custom_id: {cycle!r}")
        return cls(user_id=user_id, plan_id=plan_id, billing_cycle=billing_cycle)


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: Optional[str]
    event_type: str
    user_id: Optional[str]
    applied: bool
    status: Optional[str]
    reason: Optional[str] = None


def next_billing_date(cycle: BillingCycle, now: datetime) -> datetime:
    if cycle is BillingCycle.YEARLY:
        try:
            return now.replace(year=now.year + 1)
        except ValueError:
            # Feb 29 -> Feb 28
            return now.replace(year=now.year + 1, day=28)
    month = now.month + 1
    year = now.year + (month - 1) // 12
    month = (month - 1) % 12 + 1
    day = now.day
    while True:
        try:
            return now.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def _coerce_status(status) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(str(getattr(status, "value", status)).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown subscription status: {status!r}")


def _captured_amount(resource: Dict[str, Any]) -> Optional[float]:
    amount = resource.get("amount") or {}
    if not isinstance(amount, dict):
        return None
    raw = amount.get("value", amount.get("total"))
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _custom_id(resource: Dict[str, Any]) -> Optional[str]:
    if resource.get("custom_id"):
        return resource["custom_id"]
    units = resource.get("purchase_units") or []
    if isinstance(units, list) and units and isinstance(units[0], dict):
        return units[0].get("custom_id")
    return None


class SubscriptionStore:
    """In-memory subscription records, safe for concurrent requests."""

    def __init__(self, catalog: Optional[PlanCatalog] = None, now_fn=None, max_processed_events: int = MAX_PROCESSED_EVENTS):
        if max_processed_events <= 0:
            raise ValueError("max_processed_events must be positive")
        self.catalog = catalog or DEFAULT_CATALOG
        self._now_fn = now_fn or (lambda: datetime.now(timezone.utc))
        self._views: Dict[str, UserEntitlementView] = {}
        self._processed_events: "OrderedDict[str, None]" = OrderedDict()
        self._max_processed_events = max_processed_events
        self._lock = threading.Lock()

    def get_view(self, user_id: str) -> UserEntitlementView:
        with self._lock:
            view = self._views.get(user_id)
        if view is None:
            return UserEntitlementView(user_id=user_id, plan_id=FREE_PLAN_ID, status=SubscriptionStatus.NONE.value)
        return view

    def transition(
        self,
        user_id: str,
        status,
        *,
        plan_id: Optional[str] = None,
        billing_cycle: Optional[BillingCycle] = None,
        next_billing: Optional[datetime] = None,
    ) -> UserEntitlementView:
        target = _coerce_status(status)
        with self._lock:
            current = self._views.get(user_id) or UserEntitlementView(user_id=user_id)
            current_status = _coerce_status(current.status)
            if target is not current_status and target not in ALLOWED_TRANSITIONS[current_status]:
                raise ValidationError(
                    f"Illegal subscription transition {current_status.value} -> {target.value} for {user_id}"
                )

            updates: Dict[str, Any] = {"status": target.value}
            if plan_id is not None:
                updates["plan_id"] = plan_id
            if billing_cycle is not None:
                updates["billing_cycle"] = billing_cycle.value
            if next_billing is not None:
                updates["next_billing_date"] = next_billing
            if target is SubscriptionStatus.NONE:
                updates.update(plan_id=FREE_PLAN_ID, billing_cycle=None, next_billing_date=None)

            view = current.model_copy(update=updates)
            self._views[user_id] = view

        if target is not current_status:
            logger.info(
                "[subscription] transition",
                extra={"user_id": user_id, "from_status": current_status.value, "to_status": target.value},
            )
        return view

    def activate_pro(self, user_id: str, billing_cycle: BillingCycle, now: Optional[datetime] = None) -> UserEntitlementView:
        now = now or self._now_fn()
        return self.transition(
            user_id,
            SubscriptionStatus.ACTIVE,
            plan_id=PRO_PLAN_ID,
            billing_cycle=billing_cycle,
            next_billing=next_billing_date(billing_cycle, now),
        )

    def _claim_event(self, event_id: Optional[str]) -> bool:
        if not event_id:
            return True
        with self._lock:
            if event_id in self._processed_events:
                return False
            self._processed_events[event_id] = None
            while len(self._processed_events) > self._max_processed_events:
                self._processed_events.popitem(last=False)
            return True

    def _release_event(self, event_id: Optional[str]) -> None:
        if event_id:
            with self._lock:
                self._processed_events.pop(event_id, None)

    def apply_webhook_event(self, event: Dict[str, Any]) -> WebhookOutcome:
        """Apply a parsed PayPal webhook event.

        Raises ValidationError for malformed payloads (bad custom_id, amount
        mismatch). Unknown events, failed captures, duplicates and illegal
        transitions are logged and reported as not applied.
        """
        event_id = event.get("id")
        if event_id is not None and not isinstance(event_id, str):
            raise ValidationError(f"Invalid webhook event id: {event_id!r}")
        event_type = str(event.get("event_type") or "")
        resource = event.get("resource") or {}

        if event_type in FAILED_PAYMENT_EVENTS:
            logger.warning("[subscription] payment failed", extra={"event_id": event_id, "event_type": event_type})
            return WebhookOutcome(event_id, event_type, None, applied=False, status=None, reason="payment_failed")

        target = WEBHOOK_STATUS_MAP.get(event_type)
        if target is None:
            logger.info("[subscription] unhandled webhook event", extra={"event_id": event_id, "event_type": event_type})
            return WebhookOutcome(event_id, event_type, None, applied=False, status=None, reason="unhandled")

        if not isinstance(resource, dict):
            raise ValidationError(f"Webhook resource must be an object, got {type(resource).__name__}")
        reference = PurchaseReference.parse(_custom_id(resource))

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            self.check_capture_amount(reference, resource)

        if not self._claim_event(event_id):
            logger.info("[subscription] duplicate webhook ignored", extra={"event_id": event_id, "event_type": event_type})
            return WebhookOutcome(event_id, event_type, reference.user_id, applied=False, status=None, reason="duplicate")

        try:
            if target is SubscriptionStatus.ACTIVE:
                view = self.activate_pro(reference.user_id, reference.billing_cycle)
            else:
                view = self.transition(reference.user_id, target)
        except ValidationError as e:
            self._release_event(event_id)
            logger.warning(
                "[subscription] webhook transition rejected",
                extra={"event_id": event_id, "event_type": event_type, "user_id": reference.user_id, "error_message": e.message},
            )
            return WebhookOutcome(event_id, event_type, reference.user_id, applied=False, status=None, reason="illegal_transition")

        return WebhookOutcome(event_id, event_type, reference.user_id, applied=True, status=view.status)

    def check_capture_amount(self, reference: PurchaseReference, resource: Dict[str, Any]) -> None:
        plan = self.catalog.get_plan(reference.plan_id)
        if plan is None or plan.is_free:
            raise ValidationError(f"Capture references a non-purchasable plan: {reference.plan_id}")
        expected = plan.price.for_cycle(reference.billing_cycle)
        paid = _captured_amount(resource)
        if paid is None or abs(paid - expected) > AMOUNT_TOLERANCE:
            raise ValidationError(f"Payment amount mismatch: expected {expected}, got {paid}")
