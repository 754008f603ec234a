"""
Entitlement routes.

- GET /api/entitlements: caller's plan, status and a decision per feature
- GET /api/entitlements/{feature_id}: a single decision

Unknown features are reported as a decision (reason unknown_feature), not
as an error, so clients can probe feature ids safely.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from planpilot.api.deps import get_catalog, get_entitlement_view
from planpilot.features.entitlements.service import is_pro, resolve, resolve_all
from planpilot.features.plans.catalog import PlanCatalog
from planpilot.models.plan import FeatureId
from planpilot.models.subscription import UserEntitlementView


router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class DecisionResponse(BaseModel):
    allowed: bool
    feature: str
    reason: str


class EntitlementsResponse(BaseModel):
    user_id: str
    plan_id: str
    status: str
    is_pro: bool
    billing_cycle: Optional[str]
    next_billing_date: Optional[str]
    can_generate: bool
    can_export: bool
    features: Dict[str, DecisionResponse]


@router.get("", response_model=EntitlementsResponse)
async def get_entitlements(
    view: UserEntitlementView = Depends(get_entitlement_view),
    catalog: PlanCatalog = Depends(get_catalog),
):
    decisions = resolve_all(view.plan_id, view.status, catalog)
    return {
        "user_id": view.user_id,
        "plan_id": view.plan_id,
        "status": view.status,
        "is_pro": is_pro(view.plan_id, view.status),
        "billing_cycle": view.billing_cycle,
        "next_billing_date": view.next_billing_date.isoformat() if view.next_billing_date else None,
        "can_generate": decisions[FeatureId.BUSINESS_PLAN_GENERATION.value].allowed,
        "can_export": decisions[FeatureId.DOCUMENT_EXPORT.value].allowed,
        "features": {key: decision.to_dict() for key, decision in decisions.items()},
    }


@router.get("/{feature_id}", response_model=DecisionResponse)
async def get_feature_entitlement(
    feature_id: str,
    view: UserEntitlementView = Depends(get_entitlement_view),
    catalog: PlanCatalog = Depends(get_catalog),
):
    return resolve(view.plan_id, view.status, feature_id, catalog).to_dict()
