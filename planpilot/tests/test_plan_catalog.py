import json

import pytest

from planpilot.core.errors import NotFoundError, ValidationError
from planpilot.features.plans.catalog import (
    DEFAULT_CATALOG,
    PlanCatalog,
    build_catalog,
    load_catalog,
    parse_feature_id,
)
from planpilot.models.plan import BillingCycle, FeatureId, Plan, PlanPrice


def test_default_catalog_has_free_and_pro():
    ids = [plan.id for plan in DEFAULT_CATALOG.list_plans()]
    assert ids == ["free", "pro"]

    free = DEFAULT_CATALOG.get_plan("free")
    pro = DEFAULT_CATALOG.get_plan("pro")
    assert free.is_free
    assert free.features == ()
    assert not pro.is_free
    assert pro.popular
    assert set(pro.features) == set(FeatureId)


def test_pro_prices():
    assert DEFAULT_CATALOG.price_for("pro", BillingCycle.MONTHLY) == 19.99
    assert DEFAULT_CATALOG.price_for("pro", "yearly") == 199.99
    assert DEFAULT_CATALOG.price_for("free", "yearly") == 0


def test_format_price():
    assert DEFAULT_CATALOG.format_price("free") == "Free"
    assert DEFAULT_CATALOG.format_price("pro") == "$19.99"
    assert DEFAULT_CATALOG.format_price("pro", "yearly") == "$199.99"


def test_yearly_savings():
    assert DEFAULT_CATALOG.yearly_savings("pro") == 39.89
    assert DEFAULT_CATALOG.yearly_savings("free") == 0.0


def test_plan_lookup_is_case_insensitive():
    assert DEFAULT_CATALOG.get_plan("PRO").id == "pro"
    assert " Free " in DEFAULT_CATALOG
    assert DEFAULT_CATALOG.get_plan(None) is None
    assert DEFAULT_CATALOG.get_plan("enterprise") is None


def test_require_plan_raises_not_found():
    with pytest.raises(NotFoundError):
        DEFAULT_CATALOG.require_plan("enterprise")


def test_every_pro_feature_is_gated():
    assert DEFAULT_CATALOG.gated_features() == frozenset(FeatureId)
    assert DEFAULT_CATALOG.is_gated("document_export")
    assert not DEFAULT_CATALOG.is_gated("teleportation")


def test_feature_inclusion():
    assert DEFAULT_CATALOG.is_feature_included("pro", FeatureId.DOCUMENT_EXPORT)
    assert not DEFAULT_CATALOG.is_feature_included("free", FeatureId.DOCUMENT_EXPORT)
    assert not DEFAULT_CATALOG.is_feature_included("pro", "teleportation")
    assert not DEFAULT_CATALOG.is_feature_included("enterprise", FeatureId.DOCUMENT_EXPORT)


def test_parse_feature_id_is_exact():
    assert parse_feature_id("document_export") is FeatureId.DOCUMENT_EXPORT
    assert parse_feature_id(FeatureId.CUSTOM_BRANDING) is FeatureId.CUSTOM_BRANDING
    assert parse_feature_id("DOCUMENT_EXPORT") is None
    assert parse_feature_id("") is None
    assert parse_feature_id(None) is None


def test_feature_in_free_plan_is_not_gated():
    catalog = PlanCatalog([
        Plan(id="free", name="Free", price=PlanPrice(monthly=0, yearly=0), features=(FeatureId.DOCUMENT_CREATION,)),
        Plan(id="pro", name="Pro", price=PlanPrice(monthly=10, yearly=100),
             features=(FeatureId.DOCUMENT_CREATION, FeatureId.DOCUMENT_EXPORT)),
    ])
    assert catalog.gated_features() == frozenset({FeatureId.DOCUMENT_EXPORT})


def test_duplicate_plan_ids_rejected():
    plan = Plan(id="free", name="Free", price=PlanPrice(monthly=0, yearly=0))
    with pytest.raises(ValidationError):
        PlanCatalog([plan, plan.model_copy(update={"id": "FREE"})])


def test_empty_catalog_rejected():
    with pytest.raises(ValidationError):
        PlanCatalog([])


def test_plans_are_immutable():
    pro = DEFAULT_CATALOG.get_plan("pro")
    with pytest.raises(Exception):
        pro.name = "Other"


def test_load_catalog_from_json(tmp_path):
    path = tmp_path / "plans.json"
    path.write_text(json.dumps({
        "plans": [
            {"id": "free", "name": "Free", "price": {"monthly": 0, "yearly": 0}},
            {
                "id": "team",
                "name": "Team",
                "price": {"monthly": 49, "yearly": 490},
                "features": ["document_export", "custom_branding"],
            },
        ]
    }))

    catalog = load_catalog(path)
    assert [p.id for p in catalog.list_plans()] == ["free", "team"]
    assert catalog.get_plan("team").features == (FeatureId.DOCUMENT_EXPORT, FeatureId.CUSTOM_BRANDING)
    assert catalog.gated_features() == frozenset({FeatureId.DOCUMENT_EXPORT, FeatureId.CUSTOM_BRANDING})


@pytest.mark.parametrize("content", [
    "not json",
    json.dumps([]),
    json.dumps({"plans": "free"}),
    json.dumps({"plans": [{"id": "x", "name": "X", "price": {"monthly": -1, "yearly": 0}}]}),
    json.dumps({"plans": [{"id": "x", "name": "X", "price": {"monthly": 1, "yearly": 1}, "features": ["flying"]}]}),
])
def test_load_catalog_rejects_bad_files(tmp_path, content):
    path = tmp_path / "plans.json"
    path.write_text(content)
    with pytest.raises(ValidationError):
        load_catalog(path)


def test_load_catalog_missing_file(tmp_path):
    with pytest.raises(ValidationError):
        load_catalog(tmp_path / "missing.json")


def test_build_catalog_defaults(test_settings):
    assert build_catalog(test_settings) is DEFAULT_CATALOG
