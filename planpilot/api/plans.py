"""
Plan catalog routes.

- GET /api/plans: every plan with formatted prices
- GET /api/plans/{plan_id}: a single plan
"""
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from planpilot.api.deps import get_catalog
from planpilot.features.plans.catalog import PlanCatalog
from planpilot.models.plan import BillingCycle, Plan


router = APIRouter(prefix="/api/plans", tags=["plans"])


class PlanResponse(BaseModel):
    id: str
    name: str
    tagline: str
    monthly_price: float
    yearly_price: float
    currency: str
    display_price: str
    display_yearly_price: str
    yearly_savings: float
    features: List[str]
    popular: bool
    free: bool


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]
    gated_features: List[str]


def _serialize(plan: Plan, catalog: PlanCatalog) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "tagline": plan.tagline,
        "monthly_price": plan.price.monthly,
        "yearly_price": plan.price.yearly,
        "currency": plan.price.currency,
        "display_price": catalog.format_price(plan.id, BillingCycle.MONTHLY),
        "display_yearly_price": catalog.format_price(plan.id, BillingCycle.YEARLY),
        "yearly_savings": catalog.yearly_savings(plan.id),
        "features": [feature.value for feature in plan.features],
        "popular": plan.popular,
        "free": plan.is_free,
    }


@router.get("", response_model=PlanListResponse)
async def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    return {
        "plans": [_serialize(plan, catalog) for plan in catalog.list_plans()],
        "gated_features": sorted(feature.value for feature in catalog.gated_features()),
    }


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: str, catalog: PlanCatalog = Depends(get_catalog)):
    return _serialize(catalog.require_plan(plan_id), catalog)
