"""Policy store - read-only resolution of retention policies and rules."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from retention_engine.core.conditions import FileAttributes, parse_condition
from retention_engine.core.errors import RuleValidationError
from retention_engine.db.enums import RuleAction
from retention_engine.db.models import RetentionPolicy, RetentionRule

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionDecision:
    """
    Outcome of resolving the policy for one file.

    policy_id is None when no active policy applies (the NONE decision).
    """

    policy_id: UUID | None = None
    rule_id: UUID | None = None
    action: RuleAction | None = None
    retention_days: int | None = None
    expires_at: datetime | None = None

    @property
    def has_policy(self) -> bool:
        return self.policy_id is not None


NO_POLICY = RetentionDecision()


def get_active_policy(
    db: Session,
    entity_type: str,
    jurisdiction: str | None,
) -> RetentionPolicy | None:
    """Active policy for the jurisdiction, falling back to the entity type default."""
    if jurisdiction:
        policy = db.execute(
            select(RetentionPolicy).where(
                RetentionPolicy.entity_type == entity_type,
                RetentionPolicy.jurisdiction == jurisdiction,
                RetentionPolicy.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if policy:
            return policy
    return db.execute(
        select(RetentionPolicy).where(
            RetentionPolicy.entity_type == entity_type,
            RetentionPolicy.jurisdiction.is_(None),
            RetentionPolicy.is_active.is_(True),
        )
    ).scalar_one_or_none()


def get_active_rules(db: Session, policy_id: UUID) -> list[RetentionRule]:
    """Active rules, highest priority first; ties by created_at then id."""
    return list(
        db.execute(
            select(RetentionRule)
            .where(RetentionRule.policy_id == policy_id, RetentionRule.is_active.is_(True))
            .order_by(
                RetentionRule.priority.desc(),
                RetentionRule.created_at.asc(),
                RetentionRule.id.asc(),
            )
        ).scalars().all()
    )


def _rule_matches(rule: RetentionRule, attributes: FileAttributes) -> bool:
    try:
        condition = parse_condition(rule.condition)
    except RuleValidationError:
        # Conditions are validated on save; a corrupt row never matches.
        logger.error("Stored rule condition is invalid", extra={"rule_id": str(rule.id)})
        return False
    return condition.matches(attributes)


def resolve_for_policy(
    policy: RetentionPolicy,
    rules: list[RetentionRule],
    attributes: FileAttributes,
) -> RetentionDecision:
    """First matching rule wins; otherwise the policy base window with DELETE."""
    for rule in rules:
        if not _rule_matches(rule, attributes):
            continue
        days = (
            rule.retention_period_days
            if rule.retention_period_days is not None
            else policy.retention_period_days
        )
        return RetentionDecision(
            policy_id=policy.id,
            rule_id=rule.id,
            action=RuleAction(rule.action),
            retention_days=days,
            expires_at=attributes.created_at + timedelta(days=days),
        )

    return RetentionDecision(
        policy_id=policy.id,
        action=RuleAction.DELETE,
        retention_days=policy.retention_period_days,
        expires_at=attributes.created_at + timedelta(days=policy.retention_period_days),
    )


def resolve(
    db: Session,
    entity_type: str,
    jurisdiction: str | None,
    attributes: FileAttributes,
) -> RetentionDecision:
    """Resolve the retention decision for a file's attributes. No side effects."""
    policy = get_active_policy(db, entity_type, jurisdiction)
    if policy is None:
        return NO_POLICY
    return resolve_for_policy(policy, get_active_rules(db, policy.id), attributes)


class PolicyCache:
    """
    Per-pass memo of policies and rules keyed by (entity_type, jurisdiction).

    Used by the scheduler so a batch scan loads each scope once.
    """

    def __init__(self, db: Session):
        self.db = db
        self._scopes: dict[tuple[str, str | None], tuple[RetentionPolicy | None, list[RetentionRule]]] = {}

    def resolve(self, entity_type: str, jurisdiction: str | None, attributes: FileAttributes) -> RetentionDecision:
        key = (entity_type, jurisdiction)
        if key not in self._scopes:
            policy = get_active_policy(self.db, entity_type, jurisdiction)
            rules = get_active_rules(self.db, policy.id) if policy else []
            self._scopes[key] = (policy, rules)
        policy, rules = self._scopes[key]
        if policy is None:
            return NO_POLICY
        return resolve_for_policy(policy, rules, attributes)
