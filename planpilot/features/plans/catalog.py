"""
planpilot/features/plans/catalog.py

Plan/feature catalog.

Static source of truth mapping plan ids to price, display metadata and the
features each plan unlocks. Pure lookups, no I/O after load. The built-in
catalog can be replaced at deploy time with a JSON file (PLAN_CATALOG_PATH)
without touching the entitlement resolver.
"""

import json
import logging
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from planpilot.core.errors import NotFoundError, ValidationError
from planpilot.models.plan import BillingCycle, FeatureId, Plan, PlanPrice


logger = logging.getLogger(__name__)

FREE_PLAN_ID = "free"
PRO_PLAN_ID = "pro"


DEFAULT_PLANS = [
    Plan(
        id=FREE_PLAN_ID,
        name="Free Plan",
        tagline="Get started with basic features",
        price=PlanPrice(monthly=0, yearly=0),
        features=(),
    ),
    Plan(
        id=PRO_PLAN_ID,
        name="PlanPilot Pro",
        tagline="Everything you need to build a successful business",
        price=PlanPrice(monthly=19.99, yearly=199.99),
        features=tuple(FeatureId),
        popular=True,
    ),
]


def _normalize_id(value) -> str:
    if isinstance(value, FeatureId):
        return value.value
    return str(value).strip().lower()


def parse_feature_id(value) -> Optional[FeatureId]:
    """Return the FeatureId for ``value`` or None when it is not in the set."""
    if isinstance(value, FeatureId):
        return value
    try:
        return FeatureId(str(value))
    except ValueError:
        return None


class PlanCatalog:
    def __init__(self, plans: Iterable[Plan]):
        self._plans: Dict[str, Plan] = {}
        for plan in plans:
            key = _normalize_id(plan.id)
            if key in self._plans:
                raise ValidationError(f"Duplicate plan id in catalog: {plan.id}")
            self._plans[key] = plan
        if not self._plans:
            raise ValidationError("Plan catalog is empty")

        paid = set()
        free = set()
        for plan in self._plans.values():
            (free if plan.is_free else paid).update(plan.features)
        # A feature is gated when some paid plan requires it and no free plan
        # hands it out.
        self._gated: FrozenSet[FeatureId] = frozenset(paid - free)

    def __contains__(self, plan_id) -> bool:
        return _normalize_id(plan_id) in self._plans

    def get_plan(self, plan_id) -> Optional[Plan]:
        if plan_id is None:
            return None
        return self._plans.get(_normalize_id(plan_id))

    def require_plan(self, plan_id) -> Plan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Unknown plan: {plan_id}")
        return plan

    def list_plans(self) -> List[Plan]:
        return list(self._plans.values())

    def is_known_feature(self, feature_id) -> bool:
        return parse_feature_id(feature_id) is not None

    def is_feature_included(self, plan_id, feature_id) -> bool:
        plan = self.get_plan(plan_id)
        feature = parse_feature_id(feature_id)
        if plan is None or feature is None:
            return False
        return plan.includes(feature)

    def is_gated(self, feature_id) -> bool:
        feature = parse_feature_id(feature_id)
        return feature in self._gated

    def gated_features(self) -> FrozenSet[FeatureId]:
        return self._gated

    def price_for(self, plan_id, cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY) -> float:
        return self.require_plan(plan_id).price.for_cycle(BillingCycle(cycle))

    def format_price(self, plan_id, cycle: Union[BillingCycle, str] = BillingCycle.MONTHLY) -> str:
        plan = self.require_plan(plan_id)
        amount = plan.price.for_cycle(BillingCycle(cycle))
        if amount == 0:
            return "Free"
        return f"{plan.price.symbol}{amount:.2f}"

    def yearly_savings(self, plan_id) -> float:
        price = self.require_plan(plan_id).price
        if not price.monthly or not price.yearly:
            return 0.0
        return round(price.monthly * 12 - price.yearly, 2)


def load_catalog(path: Union[str, Path]) -> PlanCatalog:
    """Load a catalog from a JSON file of the form ``{"plans": [...]}``."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read plan catalog {path}: {e}")

    entries = raw.get("plans") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise ValidationError(f"Plan catalog {path} must contain a 'plans' list")

    try:
        plans = [Plan.model_validate(entry) for entry in entries]
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid plan catalog {path}: {e.errors()[0]['msg']}")

    catalog = PlanCatalog(plans)
    logger.info("[plans] catalog loaded", extra={"path": str(path), "plans": len(plans)})
    return catalog


DEFAULT_CATALOG = PlanCatalog(DEFAULT_PLANS)


def build_catalog(settings_obj) -> PlanCatalog:
    path = getattr(settings_obj, "PLAN_CATALOG_PATH", None)
    if path:
        return load_catalog(path)
    return DEFAULT_CATALOG
