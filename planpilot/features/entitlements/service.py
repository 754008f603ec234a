"""
planpilot/features/entitlements/service.py

Entitlement resolver.

Maps (plan, subscription status, feature) to an access decision. Pure: no
I/O, no caching, no hidden state. Callers obtain plan and status from the
session or the subscription store and pass them in, so a webhook that flips
a subscription takes effect on the very next call.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional
import logging

from planpilot.core.errors import FeatureRequiresProError, UnknownFeatureError
from planpilot.features.plans.catalog import (
    DEFAULT_CATALOG,
    PRO_PLAN_ID,
    PlanCatalog,
    parse_feature_id,
)
from planpilot.models.plan import FeatureId


logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    """Billing-owned subscription status, consumed here as input only."""
    NONE = "none"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    PAST_DUE = "past_due"


class AccessReason(str, Enum):
    OK = "ok"
    REQUIRES_PRO = "requires_pro"
    UNKNOWN_FEATURE = "unknown_feature"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    feature: str
    reason: AccessReason

    def to_dict(self) -> Dict[str, object]:
        return {"allowed": self.allowed, "feature": self.feature, "reason": self.reason.value}


def _normalize(value) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value or "").strip().lower()


def is_active(status) -> bool:
    return _normalize(status) == SubscriptionStatus.ACTIVE.value


def is_pro(plan_id, status) -> bool:
    return _normalize(plan_id) == PRO_PLAN_ID and is_active(status)


def resolve(plan_id, status, feature_id, catalog: Optional[PlanCatalog] = None) -> AccessDecision:
    """
    Decide whether a user on ``plan_id`` with ``status`` may use ``feature_id``.

    - unknown feature -> deny, unknown_feature
    - feature not gated by any paid plan -> allow, ok
    - gated feature, plan includes it and status is active -> allow, ok
    - anything else (free plan, unknown plan, any non-active status) -> deny, requires_pro
    """
    cat = catalog or DEFAULT_CATALOG
    feature = parse_feature_id(feature_id)
    if feature is None:
        return AccessDecision(allowed=False, feature=str(feature_id), reason=AccessReason.UNKNOWN_FEATURE)

    if not cat.is_gated(feature):
        return AccessDecision(allowed=True, feature=feature.value, reason=AccessReason.OK)

    if is_active(status) and cat.is_feature_included(_normalize(plan_id), feature):
        return AccessDecision(allowed=True, feature=feature.value, reason=AccessReason.OK)

    return AccessDecision(allowed=False, feature=feature.value, reason=AccessReason.REQUIRES_PRO)


def resolve_all(plan_id, status, catalog: Optional[PlanCatalog] = None) -> Dict[str, AccessDecision]:
    return {feature.value: resolve(plan_id, status, feature, catalog) for feature in FeatureId}


def ensure_access(decision: AccessDecision, *, user_id: Optional[str] = None) -> AccessDecision:
    """Raise the matching AppError for a denied decision; return it otherwise."""
    if decision.allowed:
        return decision

    logger.warning(
        "[entitlement] DENY",
        extra={"user_id": user_id, "feature": decision.feature, "reason": decision.reason.value},
    )
    if decision.reason is AccessReason.UNKNOWN_FEATURE:
        raise UnknownFeatureError(f"Unknown feature: {decision.feature}", feature=decision.feature)
    raise FeatureRequiresProError(
        "Upgrade to PlanPilot Pro to use this feature",
        feature=decision.feature,
    )
