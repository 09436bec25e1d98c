from __future__ import annotations

from backend.app.billing.downgrade import UsageLimitDowngradeGate, evaluate_resource_usage
from billing_fakes import FixedUsageReader, make_catalog


def test_usage_above_limit_blocks_downgrade():
    gate = UsageLimitDowngradeGate(FixedUsageReader({"teams": 12, "members": 10}))

    verdict = gate.validate_downgrade("tenant-1", make_catalog().get_by_key("starter"))

    assert verdict.can_downgrade is False
    assert verdict.blockers == ["teams_limit_exceeded"]
    assert verdict.warnings == []


def test_usage_at_limit_only_warns():
    gate = UsageLimitDowngradeGate(FixedUsageReader({"teams": 10, "members": 25}))

    verdict = gate.validate_downgrade("tenant-1", make_catalog().get_by_key("starter"))

    assert verdict.can_downgrade is True
    assert verdict.blockers == []
    assert verdict.warnings == ["members_at_limit", "teams_at_limit"]


def test_unlimited_resources_are_never_checked():
    reader = FixedUsageReader({"teams": 10_000, "members": 10_000, "standup_configs": 10_000})

    verdict = UsageLimitDowngradeGate(reader).validate_downgrade(
        "tenant-1", make_catalog().get_by_key("enterprise")
    )

    assert verdict.can_downgrade is True
    assert verdict.blockers == []


def test_free_plan_limits_standup_configs():
    gate = UsageLimitDowngradeGate(FixedUsageReader({"teams": 1, "members": 3, "standup_configs": 2}))

    verdict = gate.validate_downgrade("tenant-1", make_catalog().get_by_key("free"))

    assert verdict.blockers == ["standup_configs_limit_exceeded"]
    assert verdict.warnings == ["teams_at_limit"]


def test_evaluate_resource_usage_treats_non_positive_limit_as_unlimited():
    evaluation = evaluate_resource_usage(resource="teams", usage=5, limit=0)

    assert evaluation.limit is None
    assert evaluation.exceeded is False
    assert evaluation.at_limit is False
    assert evaluation.to_dict() == {"usage": 5, "limit": None}
