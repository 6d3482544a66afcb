from datetime import timedelta

from sqlalchemy import update

from retention_engine.core.conditions import FileAttributes
from retention_engine.db.enums import RuleAction
from retention_engine.db.models import RetentionRule
from retention_engine.services import compliance_service, policy_store


def _resolve(db, file, clock):
    return policy_store.resolve(
        db, file.entity_type, file.jurisdiction, FileAttributes.from_file(file, clock.now())
    )


def test_base_window_applies_when_no_rule_matches(db, clock, make_policy, make_rule, make_file):
    policy = make_policy(retention_period_days=30)
    make_rule(policy, {"tags": ["temp"]}, retention_period_days=7)
    file = make_file(age_days=10, tags=["invoice"])

    decision = _resolve(db, file, clock)

    assert decision.policy_id == policy.id
    assert decision.rule_id is None
    assert decision.action == RuleAction.DELETE
    assert decision.retention_days == 30
    assert decision.expires_at == file.created_at + timedelta(days=30)


def test_matching_rule_overrides_window(db, clock, make_policy, make_rule, make_file):
    policy = make_policy(retention_period_days=30)
    rule = make_rule(policy, {"tags": ["temp"]}, retention_period_days=7)
    file = make_file(age_days=10, tags=["temp"])

    decision = _resolve(db, file, clock)

    assert decision.rule_id == rule.id
    assert decision.retention_days == 7
    assert decision.expires_at == file.created_at + timedelta(days=7)


def test_rule_without_window_uses_policy_window(db, clock, make_policy, make_rule, make_file):
    policy = make_policy(retention_period_days=30)
    rule = make_rule(policy, {"access_level": "PUBLIC"}, action="ANONYMIZE")
    file = make_file(access_level="PUBLIC")

    decision = _resolve(db, file, clock)

    assert decision.rule_id == rule.id
    assert decision.action == RuleAction.ANONYMIZE
    assert decision.retention_days == 30


def test_higher_priority_rule_wins(db, clock, make_policy, make_rule, make_file):
    policy = make_policy(retention_period_days=30)
    make_rule(policy, {"tags": ["temp"]}, priority=5, retention_period_days=7)
    high = make_rule(policy, {"tags": ["temp"]}, priority=10, action="ARCHIVE")
    file = make_file(tags=["temp"])

    decision = _resolve(db, file, clock)

    assert decision.rule_id == high.id
    assert decision.action == RuleAction.ARCHIVE


def test_priority_tie_breaks_on_creation_order(db, clock, make_policy, make_rule, make_file):
    policy = make_policy(retention_period_days=30)
    first = make_rule(policy, {"tags": ["temp"]}, priority=1, retention_period_days=7)
    clock.advance(seconds=1)
    make_rule(policy, {"tags": ["temp"]}, priority=1, retention_period_days=14)
    file = make_file(tags=["temp"])

    decisions = {_resolve(db, file, clock) for _ in range(5)}

    assert len(decisions) == 1
    assert decisions.pop().rule_id == first.id


def test_inactive_rule_is_ignored(db, clock, make_policy, make_rule, make_file):
    policy = make_policy(retention_period_days=30)
    rule = make_rule(policy, {"tags": ["temp"]}, retention_period_days=7)
    compliance_service.update_rule(db, policy.id, rule.id, changes={"is_active": False}, clock=clock)
    file = make_file(tags=["temp"])

    decision = _resolve(db, file, clock)

    assert decision.rule_id is None
    assert decision.retention_days == 30


def test_jurisdiction_falls_back_to_default_policy(db, clock, make_policy, make_file):
    default = make_policy(jurisdiction=None, retention_period_days=365)
    make_policy(jurisdiction="EU", retention_period_days=30)
    file = make_file(jurisdiction="US")

    decision = _resolve(db, file, clock)

    assert decision.policy_id == default.id
    assert decision.retention_days == 365


def test_jurisdiction_specific_policy_beats_default(db, clock, make_policy, make_file):
    make_policy(jurisdiction=None, retention_period_days=365)
    eu = make_policy(jurisdiction="EU", retention_period_days=30)
    file = make_file(jurisdiction="EU")

    assert _resolve(db, file, clock).policy_id == eu.id


def test_no_policy_resolves_to_none(db, clock, make_policy, make_file):
    make_policy(entity_type="PRODUCT")
    file = make_file(entity_type="DOCUMENT")

    decision = _resolve(db, file, clock)

    assert decision == policy_store.NO_POLICY
    assert not decision.has_policy


def test_inactive_policy_is_not_applied(db, clock, make_policy, make_file):
    policy = make_policy()
    compliance_service.update_retention_policy(db, policy.id, changes={"is_active": False}, clock=clock)
    file = make_file()

    assert not _resolve(db, file, clock).has_policy


def test_corrupt_stored_condition_never_matches(db, clock, make_policy, make_rule, make_file):
    policy = make_policy(retention_period_days=30)
    rule = make_rule(policy, {"tags": ["temp"]}, retention_period_days=7)
    db.execute(
        update(RetentionRule).where(RetentionRule.id == rule.id).values(condition={"op": "bogus"})
    )
    db.commit()
    file = make_file(tags=["temp"])

    decision = _resolve(db, file, clock)

    assert decision.rule_id is None
    assert decision.retention_days == 30


def test_policy_cache_matches_direct_resolution(db, clock, make_policy, make_rule, make_file):
    policy = make_policy(retention_period_days=30)
    make_rule(policy, {"tags": ["temp"]}, retention_period_days=7)
    files = [make_file(tags=["temp"]), make_file(tags=[]), make_file(jurisdiction="US")]
    cache = policy_store.PolicyCache(db)

    for file in files:
        attributes = FileAttributes.from_file(file, clock.now())
        assert cache.resolve(file.entity_type, file.jurisdiction, attributes) == _resolve(db, file, clock)
