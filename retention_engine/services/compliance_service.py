"""Compliance service - retention policy, rule and legal hold administration.

Every mutation writes an audit entry in the same transaction. Releasing a
legal hold runs the scheduler's release cascade afterwards.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from retention_engine.core.clock import Clock, system_clock
from retention_engine.core.conditions import condition_to_json, parse_condition
from retention_engine.core.errors import (
    DuplicatePolicyError,
    HoldAlreadyReleasedError,
    InvalidRequestError,
    NotFoundError,
    RuleValidationError,
)
from retention_engine.core.structured_logging import build_log_context
from retention_engine.db.enums import AuditEventType, HoldReleaseReason, RuleAction
from retention_engine.db.models import LegalHold, RetentionPolicy, RetentionRule
from retention_engine.services import audit_service, hold_index, scheduler

logger = logging.getLogger(__name__)

POLICY_FIELDS = ("name", "retention_period_days", "is_active", "description", "legal_basis")
RULE_FIELDS = ("name", "condition", "action", "priority", "retention_period_days", "is_active")


# =============================================================================
# Policies
# =============================================================================

def list_retention_policies(
    db: Session,
    *,
    entity_type: str | None = None,
    include_inactive: bool = True,
) -> list[RetentionPolicy]:
    query = select(RetentionPolicy)
    if entity_type:
        query = query.where(RetentionPolicy.entity_type == entity_type)
    if not include_inactive:
        query = query.where(RetentionPolicy.is_active.is_(True))
    query = query.order_by(RetentionPolicy.entity_type, RetentionPolicy.jurisdiction, RetentionPolicy.created_at)
    return list(db.execute(query).scalars().all())


def get_retention_policy(db: Session, policy_id: UUID) -> RetentionPolicy:
    policy = db.get(RetentionPolicy, policy_id)
    if not policy:
        raise NotFoundError(f"Retention policy {policy_id} not found")
    return policy


def _validate_period(days: int | None, label: str = "retention_period_days") -> None:
    if days is not None and days < 0:
        raise RuleValidationError(f"{label} must be >= 0")


def _rescan(db: Session, entity_type: str, *, clock: Clock) -> None:
    """Re-run the expiration pass for the entity type a committed policy change touched."""
    result = scheduler.run_expiration_pass(db, clock=clock, entity_type=entity_type)
    if result.requested:
        logger.info(
            "Policy change queued %s deletion requests",
            result.requested,
            extra=build_log_context(run="policy_change"),
        )


def create_retention_policy(
    db: Session,
    *,
    name: str,
    entity_type: str,
    retention_period_days: int,
    jurisdiction: str | None = None,
    description: str | None = None,
    legal_basis: str | None = None,
    is_active: bool = True,
    created_by: str | None = None,
    clock: Clock = system_clock,
) -> RetentionPolicy:
    _validate_period(retention_period_days)
    now = clock.now()
    policy = RetentionPolicy(
        name=name,
        entity_type=entity_type,
        jurisdiction=jurisdiction or None,
        retention_period_days=retention_period_days,
        description=description,
        legal_basis=legal_basis,
        is_active=is_active,
        created_by=created_by,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(policy)
        db.flush()
    except IntegrityError:
        db.rollback()
        raise DuplicatePolicyError(
            f"An active policy already exists for {entity_type}/{jurisdiction or 'default'}"
        )
    audit_service.log_policy_event(
        db, AuditEventType.POLICY_CREATED, policy, now=now, performed_by=created_by
    )
    db.commit()
    db.refresh(policy)
    _rescan(db, entity_type, clock=clock)
    return policy


def update_retention_policy(
    db: Session,
    policy_id: UUID,
    *,
    changes: dict[str, Any],
    performed_by: str | None = None,
    clock: Clock = system_clock,
) -> RetentionPolicy:
    policy = get_retention_policy(db, policy_id)
    unknown = set(changes) - set(POLICY_FIELDS)
    if unknown:
        raise InvalidRequestError(f"Unknown policy fields: {sorted(unknown)}")
    _validate_period(changes.get("retention_period_days"))

    applied: dict[str, Any] = {}
    for key, value in changes.items():
        if getattr(policy, key) != value:
            applied[key] = {"from": getattr(policy, key), "to": value}
            setattr(policy, key, value)
    if not applied:
        return policy

    now = clock.now()
    policy.updated_at = now
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise DuplicatePolicyError("Another active policy already covers this scope")
    audit_service.log_policy_event(
        db, AuditEventType.POLICY_UPDATED, policy, now=now, performed_by=performed_by, changes=applied
    )
    db.commit()
    db.refresh(policy)
    _rescan(db, policy.entity_type, clock=clock)
    return policy


def delete_retention_policy(
    db: Session,
    policy_id: UUID,
    *,
    performed_by: str | None = None,
    clock: Clock = system_clock,
) -> None:
    """Hard delete (rules cascade). Existing requests keep the policy id for provenance."""
    policy = get_retention_policy(db, policy_id)
    entity_type = policy.entity_type
    audit_service.log_policy_event(
        db, AuditEventType.POLICY_DELETED, policy, now=clock.now(), performed_by=performed_by
    )
    db.delete(policy)
    db.commit()
    _rescan(db, entity_type, clock=clock)


# =============================================================================
# Rules
# =============================================================================

def list_rules(db: Session, policy_id: UUID) -> list[RetentionRule]:
    get_retention_policy(db, policy_id)
    return list(
        db.execute(
            select(RetentionRule)
            .where(RetentionRule.policy_id == policy_id)
            .order_by(RetentionRule.priority.desc(), RetentionRule.created_at, RetentionRule.id)
        ).scalars().all()
    )


def get_rule(db: Session, policy_id: UUID, rule_id: UUID) -> RetentionRule:
    rule = db.get(RetentionRule, rule_id)
    if not rule or rule.policy_id != policy_id:
        raise NotFoundError(f"Retention rule {rule_id} not found")
    return rule


def _normalize_rule(
    policy: RetentionPolicy,
    condition: Any,
    action: str,
    retention_period_days: int | None,
) -> tuple[dict, RuleAction]:
    """Validate a rule. Raises RuleValidationError."""
    try:
        rule_action = RuleAction(action)
    except ValueError:
        raise RuleValidationError(f"Unknown rule action: {action}")
    _validate_period(retention_period_days)
    if rule_action == RuleAction.EXTEND:
        if retention_period_days is None:
            raise RuleValidationError("EXTEND rules require retention_period_days")
        if retention_period_days <= policy.retention_period_days:
            raise RuleValidationError(
                f"EXTEND must exceed the policy window of {policy.retention_period_days} days"
            )
    normalized = condition_to_json(parse_condition(condition))
    return normalized, rule_action


def create_rule(
    db: Session,
    policy_id: UUID,
    *,
    condition: Any,
    action: str,
    priority: int = 0,
    name: str | None = None,
    retention_period_days: int | None = None,
    is_active: bool = True,
    performed_by: str | None = None,
    clock: Clock = system_clock,
) -> RetentionRule:
    policy = get_retention_policy(db, policy_id)
    normalized, rule_action = _normalize_rule(policy, condition, action, retention_period_days)
    now = clock.now()
    rule = RetentionRule(
        policy_id=policy.id,
        name=name,
        condition=normalized,
        action=rule_action.value,
        priority=priority,
        retention_period_days=retention_period_days,
        is_active=is_active,
        created_at=now,
        updated_at=now,
    )
    db.add(rule)
    db.flush()
    audit_service.log_rule_event(db, AuditEventType.RULE_CREATED, rule, now=now, performed_by=performed_by)
    db.commit()
    db.refresh(rule)
    _rescan(db, policy.entity_type, clock=clock)
    return rule


def update_rule(
    db: Session,
    policy_id: UUID,
    rule_id: UUID,
    *,
    changes: dict[str, Any],
    performed_by: str | None = None,
    clock: Clock = system_clock,
) -> RetentionRule:
    rule = get_rule(db, policy_id, rule_id)
    unknown = set(changes) - set(RULE_FIELDS)
    if unknown:
        raise InvalidRequestError(f"Unknown rule fields: {sorted(unknown)}")

    merged = {key: getattr(rule, key) for key in RULE_FIELDS}
    merged.update(changes)
    normalized, rule_action = _normalize_rule(
        rule.policy, merged["condition"], merged["action"], merged["retention_period_days"]
    )
    merged["condition"] = normalized
    merged["action"] = rule_action.value

    applied: dict[str, Any] = {}
    for key in RULE_FIELDS:
        if getattr(rule, key) != merged[key]:
            applied[key] = {"from": getattr(rule, key), "to": merged[key]}
            setattr(rule, key, merged[key])
    if not applied:
        return rule

    now = clock.now()
    rule.updated_at = now
    db.flush()
    audit_service.log_rule_event(
        db, AuditEventType.RULE_UPDATED, rule, now=now, performed_by=performed_by, changes=applied
    )
    db.commit()
    db.refresh(rule)
    _rescan(db, rule.policy.entity_type, clock=clock)
    return rule


def delete_rule(
    db: Session,
    policy_id: UUID,
    rule_id: UUID,
    *,
    performed_by: str | None = None,
    clock: Clock = system_clock,
) -> None:
    rule = get_rule(db, policy_id, rule_id)
    entity_type = rule.policy.entity_type
    audit_service.log_rule_event(db, AuditEventType.RULE_DELETED, rule, now=clock.now(), performed_by=performed_by)
    db.delete(rule)
    db.commit()
    _rescan(db, entity_type, clock=clock)


# =============================================================================
# Legal holds
# =============================================================================

def list_legal_holds(db: Session, *, active_only: bool = False) -> list[LegalHold]:
    query = select(LegalHold)
    if active_only:
        query = query.where(LegalHold.is_active.is_(True))
    return list(db.execute(query.order_by(LegalHold.created_at.desc(), LegalHold.id)).scalars().all())


def get_legal_hold(db: Session, hold_id: UUID) -> LegalHold:
    hold = db.get(LegalHold, hold_id)
    if not hold:
        raise NotFoundError(f"Legal hold {hold_id} not found")
    return hold


def create_legal_hold(
    db: Session,
    *,
    name: str,
    scope: dict[str, Any],
    description: str | None = None,
    expires_at: datetime | None = None,
    created_by: str | None = None,
    clock: Clock = system_clock,
) -> LegalHold:
    """Takes effect immediately; executors re-check holds before every delete."""
    try:
        parsed = hold_index.parse_scope(scope)
    except ValidationError as exc:
        raise InvalidRequestError(f"Invalid legal hold scope: {exc}") from exc
    now = clock.now()
    if expires_at is not None and expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at is not None and expires_at <= now:
        raise InvalidRequestError("expires_at must be in the future")

    hold = LegalHold(
        name=name,
        description=description,
        scope_kind=parsed.kind,
        scope=parsed.model_dump(mode="json"),
        is_active=True,
        created_by=created_by,
        created_at=now,
        expires_at=expires_at,
    )
    db.add(hold)
    db.flush()
    audit_service.log_hold_event(db, AuditEventType.LEGAL_HOLD_CREATED, hold, now=now, performed_by=created_by)
    db.commit()
    db.refresh(hold)
    logger.info("Legal hold created", extra=build_log_context(hold_id=hold.id))
    return hold


def release_legal_hold(
    db: Session,
    hold_id: UUID,
    *,
    released_by: str | None = None,
    clock: Clock = system_clock,
) -> tuple[LegalHold, scheduler.HoldReleaseResult]:
    """Deactivate the hold, then queue every covered file that is now past due."""
    hold = get_legal_hold(db, hold_id)
    if not hold.is_active:
        raise HoldAlreadyReleasedError(f"Legal hold {hold_id} is not active")

    released = scheduler.deactivate_hold(
        db, hold_id, reason=HoldReleaseReason.RELEASED, clock=clock, released_by=released_by
    )
    if released is None:
        raise HoldAlreadyReleasedError(f"Legal hold {hold_id} is not active")

    logger.info("Legal hold released", extra=build_log_context(hold_id=hold_id))
    cascade = scheduler.on_hold_released(db, released, clock=clock)
    return get_legal_hold(db, hold_id), cascade
