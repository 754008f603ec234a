"""
AI generation route.

POST /api/ai/generate
    1. per-user rate limit (generation policy)
    2. entitlement check for the feature behind the content type
    3. Groq chat completion
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from planpilot.api.deps import (
    get_catalog,
    get_entitlement_view,
    get_generation_service,
    rate_limited,
)
from planpilot.core.ratelimit import RateLimitDecision
from planpilot.features.entitlements.service import ensure_access, resolve
from planpilot.features.generation.service import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    ContentType,
    GenerationService,
    feature_for,
)
from planpilot.features.plans.catalog import PlanCatalog
from planpilot.models.subscription import UserEntitlementView


router = APIRouter(prefix="/api/ai", tags=["ai"])


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    type: ContentType = ContentType.GENERAL
    max_tokens: int = Field(DEFAULT_MAX_TOKENS, ge=1)
    temperature: float = Field(DEFAULT_TEMPERATURE, ge=0, le=2)


@router.post("/generate")
def generate(
    body: GenerateRequest,
    admission: RateLimitDecision = Depends(rate_limited("generation", "generate")),
    view: UserEntitlementView = Depends(get_entitlement_view),
    catalog: PlanCatalog = Depends(get_catalog),
    service: GenerationService = Depends(get_generation_service),
):
    decision = resolve(view.plan_id, view.status, feature_for(body.type), catalog)
    ensure_access(decision, user_id=view.user_id)

    result = service.generate(
        body.prompt,
        body.type,
        max_tokens=body.max_tokens,
        temperature=body.temperature,
        user_id=view.user_id,
    )
    payload = result.to_dict()
    payload.update(success=True, type=body.type.value, remaining=admission.remaining)
    return payload
