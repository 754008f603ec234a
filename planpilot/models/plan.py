"""
planpilot/models/plan.py

Plan catalog models.

Plans are static configuration: id, display metadata, price per billing
cycle and the features they unlock. Immutable once loaded.
"""

from enum import Enum
from typing import Tuple
from pydantic import BaseModel, ConfigDict, Field


class FeatureId(str, Enum):
    """Closed set of feature identifiers a plan can unlock."""
    BUSINESS_PLAN_GENERATION = "business_plan_generation"
    GRANT_PROPOSAL_CREATION = "grant_proposal_creation"
    DOCUMENT_CREATION = "document_creation"
    DOCUMENT_EXPORT = "document_export"
    UNLIMITED_GENERATIONS = "unlimited_generations"
    PRIORITY_SUPPORT = "priority_support"
    ADVANCED_ANALYTICS = "advanced_analytics"
    CUSTOM_BRANDING = "custom_branding"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanPrice(BaseModel):
    model_config = ConfigDict(frozen=True)

    monthly: float = Field(ge=0)
    yearly: float = Field(ge=0)
    currency: str = "USD"
    symbol: str = "$"

    def for_cycle(self, cycle: BillingCycle) -> float:
        return self.yearly if BillingCycle(cycle) is BillingCycle.YEARLY else self.monthly


class Plan(BaseModel):
    """
    A subscription tier.

    Examples:
    - free (zero price, no gated features)
    - pro (monthly/yearly price, every gated feature)
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    tagline: str = ""
    price: PlanPrice
    features: Tuple[FeatureId, ...] = ()
    popular: bool = False

    @property
    def is_free(self) -> bool:
        return self.price.monthly == 0 and self.price.yearly == 0

    def includes(self, feature: FeatureId) -> bool:
        return feature in self.features
