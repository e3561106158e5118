import dataclasses
import pytest
from quota_gate.core.policy import QuotaPolicy, build_policy_table
from quota_gate.errors import UnknownPlan
from quota_gate.models.db.enums import PlanTier, ResourceType


def test_policy_table_contains_every_tier():
    table = build_policy_table()
    assert set(table.plans) == {tier.value for tier in PlanTier}
    assert table.default_plan == "foundation"


def test_growth_policy_values():
    growth = build_policy_table().get("growth")
    assert growth.events_per_minute == 10
    assert growth.burst_allowance == 2
    assert growth.effective_minute_limit == 12
    assert growth.monthly_limit(ResourceType.VOTES) == 5_000
    assert growth.overage_rate(ResourceType.VOTES) == 5
    assert growth.overage_rate(ResourceType.CERTIFICATES) == 100


def test_foundation_has_cooldown_and_no_overage():
    foundation = build_policy_table().get(PlanTier.FOUNDATION)
    assert foundation.cooldown_period_seconds == 10
    assert all(foundation.overage_rate(rt) == 0 for rt in ResourceType)


def test_strict_get_raises_unknown_plan():
    table = build_policy_table()
    with pytest.raises(UnknownPlan) as exc_info:
        table.get("platinum")
    assert exc_info.value.plan == "platinum"
    assert isinstance(exc_info.value, LookupError)


def test_resolve_falls_back_to_most_restrictive_plan():
    table = build_policy_table()
    assert table.resolve("platinum").plan == "foundation"
    assert table.resolve(None).plan == "foundation"
    assert table.resolve("premium").plan == "premium"


def test_policies_are_read_only():
    table = build_policy_table()
    growth = table.get("growth")
    with pytest.raises(dataclasses.FrozenInstanceError):
        growth.events_per_minute = 1000  # type: ignore[misc]
    with pytest.raises(TypeError):
        growth.monthly_limits["votes"] = 1  # type: ignore[index]


def test_table_is_decoupled_from_source_dicts():
    source = {"foundation": {"events_per_minute": 1, "events_per_hour": 2, "events_per_day": 3}}
    table = build_policy_table(source, {}, {})
    source["foundation"]["events_per_minute"] = 99
    assert table.get("foundation").events_per_minute == 1


def test_negative_limits_rejected():
    with pytest.raises(ValueError):
        QuotaPolicy(plan="broken", events_per_minute=-1, events_per_hour=1, events_per_day=1)


_LIMITS = {"events_per_minute": 1, "events_per_hour": 1, "events_per_day": 1}


def test_fallback_is_most_restrictive_configured_tier():
    table = build_policy_table({"enterprise": _LIMITS, "growth": _LIMITS, "premium": _LIMITS}, {}, {})
    assert table.default_plan == "growth"
    assert table.resolve("platinum").plan == "growth"


def test_missing_default_plan_rejected():
    with pytest.raises(ValueError):
        build_policy_table({"custom": _LIMITS}, {}, {})
    with pytest.raises(ValueError):
        build_policy_table({"growth": _LIMITS}, {}, {}, default_plan="foundation")
