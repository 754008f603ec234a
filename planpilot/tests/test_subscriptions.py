from datetime import datetime, timezone

import pytest

from planpilot.core.errors import ValidationError
from planpilot.features.entitlements.service import resolve
from planpilot.features.subscriptions.service import (
    PurchaseReference,
    SubscriptionStore,
    next_billing_date,
)
from planpilot.models.plan import BillingCycle


NOW = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return SubscriptionStore(now_fn=lambda: NOW)


def capture_event(event_id="WH-1", custom_id="user_2abc_pro_monthly", value="19.99"):
    return {
        "id": event_id,
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {"custom_id": custom_id, "amount": {"currency_code": "USD", "value": value}},
    }


def subscription_event(event_type, event_id="WH-2", custom_id="user_2abc_pro_monthly"):
    return {"id": event_id, "event_type": event_type, "resource": {"custom_id": custom_id}}


def test_unknown_user_is_free_with_no_subscription(store):
    view = store.get_view("u1")
    assert view.plan_id == "free"
    assert view.status == "none"
    assert view.billing_cycle is None


def test_activate_pro(store):
    view = store.activate_pro("u1", BillingCycle.MONTHLY)
    assert view.plan_id == "pro"
    assert view.status == "active"
    assert view.billing_cycle == "monthly"
    assert view.next_billing_date == datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)
    assert resolve(view.plan_id, view.status, "document_export").allowed


def test_lifecycle_transitions(store):
    store.activate_pro("u1", BillingCycle.YEARLY)
    assert store.transition("u1", "past_due").status == "past_due"
    assert store.transition("u1", "active").status == "active"
    assert store.transition("u1", "cancelled").status == "cancelled"

    expired = store.transition("u1", "none")
    assert expired.plan_id == "free"
    assert expired.billing_cycle is None
    assert expired.next_billing_date is None


def test_same_status_is_a_noop(store):
    store.activate_pro("u1", BillingCycle.MONTHLY)
    view = store.transition("u1", "active")
    assert view.status == "active"
    assert view.plan_id == "pro"


@pytest.mark.parametrize("setup, target", [
    ([], "cancelled"),
    ([], "past_due"),
    (["active", "cancelled"], "suspended"),
])
def test_illegal_transitions_raise(store, setup, target):
    for status in setup:
        store.transition("u1", status, plan_id="pro")
    with pytest.raises(ValidationError):
        store.transition("u1", target)


def test_unknown_status_rejected(store):
    with pytest.raises(ValidationError):
        store.transition("u1", "paused")


def test_next_billing_date_edges():
    assert next_billing_date(BillingCycle.MONTHLY, datetime(2024, 12, 15)) == datetime(2025, 1, 15)
    assert next_billing_date(BillingCycle.MONTHLY, datetime(2023, 1, 31)) == datetime(2023, 2, 28)
    assert next_billing_date(BillingCycle.YEARLY, datetime(2024, 2, 29)) == datetime(2025, 2, 28)
    assert next_billing_date(BillingCycle.YEARLY, datetime(2024, 6, 1)) == datetime(2025, 6, 1)


def test_purchase_reference_round_trip_with_underscored_user_id():
    ref = PurchaseReference.parse("user_2abc_pro_yearly")
    assert ref.user_id == "user_2abc"
    assert ref.plan_id == "pro"
    assert ref.billing_cycle is BillingCycle.YEARLY
    assert ref.encode() == "user_2abc_pro_yearly"


@pytest.mark.parametrize("custom_id", [None, "", "pro_monthly", "u1_pro_weekly", "_pro_monthly"])
def test_purchase_reference_rejects_bad_values(custom_id):
    with pytest.raises(ValidationError):
        PurchaseReference.parse(custom_id)


def test_capture_webhook_activates_pro(store):
    outcome = store.apply_webhook_event(capture_event())
    assert outcome.applied
    assert outcome.user_id == "user_2abc"
    assert outcome.status == "active"
    assert store.get_view("user_2abc").plan_id == "pro"


def test_capture_webhook_reads_purchase_units(store):
    event = {
        "id": "WH-9",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "purchase_units": [{"custom_id": "u9_pro_yearly"}],
            "amount": {"value": "199.99"},
        },
    }
    assert store.apply_webhook_event(event).applied
    assert store.get_view("u9").billing_cycle == "yearly"


def test_capture_amount_mismatch_rejected(store):
    with pytest.raises(ValidationError):
        store.apply_webhook_event(capture_event(value="1.00"))
    assert store.get_view("user_2abc").status == "none"


def test_capture_for_free_plan_rejected(store):
    with pytest.raises(ValidationError):
        store.apply_webhook_event(capture_event(custom_id="u1_free_monthly", value="0"))


def test_bad_custom_id_rejected(store):
    with pytest.raises(ValidationError):
        store.apply_webhook_event(capture_event(custom_id="garbage"))


def test_duplicate_webhook_is_ignored(store):
    assert store.apply_webhook_event(capture_event()).applied
    store.transition("user_2abc", "cancelled")

    outcome = store.apply_webhook_event(capture_event())
    assert not outcome.applied
    assert outcome.reason == "duplicate"
    assert store.get_view("user_2abc").status == "cancelled"


def test_cancel_webhook_revokes_access(store):
    store.apply_webhook_event(capture_event())
    outcome = store.apply_webhook_event(subscription_event("BILLING.SUBSCRIPTION.CANCELLED"))
    assert outcome.applied
    view = store.get_view("user_2abc")
    assert view.status == "cancelled"
    assert not resolve(view.plan_id, view.status, "document_export").allowed


def test_payment_failed_webhook_moves_to_past_due(store):
    store.apply_webhook_event(capture_event())
    store.apply_webhook_event(subscription_event("BILLING.SUBSCRIPTION.PAYMENT.FAILED"))
    assert store.get_view("user_2abc").status == "past_due"


def test_illegal_webhook_transition_is_reported_not_raised(store):
    outcome = store.apply_webhook_event(subscription_event("BILLING.SUBSCRIPTION.SUSPENDED"))
    assert not outcome.applied
    assert outcome.reason == "illegal_transition"
    # Not marked processed; a later retry may still apply.
    store.activate_pro("user_2abc", BillingCycle.MONTHLY)
    assert store.apply_webhook_event(subscription_event("BILLING.SUBSCRIPTION.SUSPENDED")).applied


def test_denied_capture_is_not_applied(store):
    outcome = store.apply_webhook_event({"id": "WH-3", "event_type": "PAYMENT.CAPTURE.DENIED", "resource": {}})
    assert not outcome.applied
    assert outcome.reason == "payment_failed"


def test_unhandled_event_is_acknowledged(store):
    outcome = store.apply_webhook_event({"id": "WH-4", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {}})
    assert not outcome.applied
    assert outcome.reason == "unhandled"


@pytest.mark.parametrize("event", [
    subscription_event("BILLING.SUBSCRIPTION.CANCELLED") | {"resource": ["x"]},
    subscription_event("BILLING.SUBSCRIPTION.CANCELLED") | {"resource": "user_2abc_pro_monthly"},
    subscription_event("BILLING.SUBSCRIPTION.CANCELLED") | {"resource": {"purchase_units": {"custom_id": "x"}}},
    subscription_event("BILLING.SUBSCRIPTION.CANCELLED") | {"resource": {"custom_id": 42}},
    subscription_event("BILLING.SUBSCRIPTION.CANCELLED") | {"id": ["WH", 1]},
    capture_event() | {"resource": {"custom_id": "user_2abc_pro_monthly", "amount": "19.99"}},
])
def test_malformed_webhook_payloads_raise_validation_error(store, event):
    with pytest.raises(ValidationError):
        store.apply_webhook_event(event)
    assert store.get_view("user_2abc").status == "none"


def test_processed_event_ids_are_bounded():
    store = SubscriptionStore(now_fn=lambda: NOW, max_processed_events=2)
    for n in range(3):
        assert store.apply_webhook_event(capture_event(event_id=f"WH-{n}")).applied
    assert list(store._processed_events) == ["WH-1", "WH-2"]

    # Recent ids are still deduplicated.
    assert store.apply_webhook_event(capture_event(event_id="WH-2")).reason == "duplicate"


def test_processed_event_cap_must_be_positive():
    with pytest.raises(ValueError):
        SubscriptionStore(max_processed_events=0)
