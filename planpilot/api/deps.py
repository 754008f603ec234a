"""Request-scoped dependencies.

Collaborators are created once by the app lifespan and hung off
``app.state``; handlers reach them through these functions so tests can swap
in fresh instances per app.
"""
from fastapi import Depends, Request, Response

from planpilot.core.auth import get_current_user_id
from planpilot.core.ratelimit import RateLimitDecision, SlidingWindowRateLimiter
from planpilot.features.billing.paypal import PayPalClient
from planpilot.features.generation.service import GenerationService
from planpilot.features.plans.catalog import PlanCatalog
from planpilot.features.subscriptions.service import SubscriptionStore
from planpilot.models.subscription import UserEntitlementView


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return request.app.state.rate_limiter


def get_catalog(request: Request) -> PlanCatalog:
    return request.app.state.catalog


def get_subscription_store(request: Request) -> SubscriptionStore:
    return request.app.state.subscriptions


def get_payment_client(request: Request) -> PayPalClient:
    return request.app.state.payments


def get_generation_service(request: Request) -> GenerationService:
    return request.app.state.generation


def get_entitlement_view(
    user_id: str = Depends(get_current_user_id),
    store: SubscriptionStore = Depends(get_subscription_store),
) -> UserEntitlementView:
    return store.get_view(user_id)


def rate_limited(policy_name: str, key_prefix: str):
    """Dependency factory: admit the caller under a named policy or raise 429.

    The key is ``<key_prefix>:<user_id>``.
    """

    def dependency(
        request: Request,
        response: Response,
        user_id: str = Depends(get_current_user_id),
        limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
    ) -> RateLimitDecision:
        policy = request.app.state.rate_limit_policies[policy_name]
        decision = limiter.enforce(f"{key_prefix}:{user_id}", policy)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return decision

    return dependency
