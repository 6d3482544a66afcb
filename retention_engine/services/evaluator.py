"""Evaluator - combines policy resolution and legal holds into one decision.

evaluate() has no side effects: identical inputs and store state always give
the same Decision.

Precedence:
0. File already DELETED/ANONYMIZED -> RETAIN (nothing left to do)
1. Any in-force legal hold -> RETAIN, hold ids surfaced
2. No applicable policy -> RETAIN
3. Expiry in the future -> EXPIRE_AT
4. Past due -> the matched rule's action
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from retention_engine.core.conditions import FileAttributes
from retention_engine.core.structured_logging import build_log_context
from retention_engine.db.enums import DecisionKind, DeletionAction, RuleAction
from retention_engine.db.models import FileMetadata
from retention_engine.services import hold_index, policy_store

logger = logging.getLogger(__name__)

REASON_TERMINAL = "terminal"
REASON_LEGAL_HOLD = "legal_hold"
REASON_NO_POLICY = "no_policy"
REASON_NOT_EXPIRED = "not_expired"
REASON_ARCHIVE = "archive"
REASON_EXPIRED = "expired"
REASON_EXPLICIT = "explicit_request"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    reason: str
    expires_at: datetime | None = None
    policy_id: UUID | None = None
    rule_id: UUID | None = None
    holds: tuple[tuple[UUID, str], ...] = field(default_factory=tuple)

    @property
    def is_destructive(self) -> bool:
        return self.kind in (DecisionKind.DELETE_NOW, DecisionKind.ANONYMIZE)

    @property
    def action(self) -> DeletionAction | None:
        if self.kind == DecisionKind.DELETE_NOW:
            return DeletionAction.DELETE
        if self.kind == DecisionKind.ANONYMIZE:
            return DeletionAction.ANONYMIZE
        return None

    @property
    def hold_ids(self) -> list[UUID]:
        return [hold_id for hold_id, _ in self.holds]


def _holds(
    db: Session,
    file: FileMetadata,
    as_of: datetime,
    snapshot: hold_index.HoldSnapshot | None,
) -> list[tuple[UUID, str]]:
    if snapshot is not None:
        return snapshot.holds_for(file.entity_type, file.entity_id, file.id)
    return [(hold.id, hold.name) for hold in hold_index.holds_for_file(db, file, as_of)]


def evaluate(
    db: Session,
    file: FileMetadata,
    as_of: datetime,
    *,
    snapshot: hold_index.HoldSnapshot | None = None,
    policies: policy_store.PolicyCache | None = None,
) -> Decision:
    """Retention decision for one file as of ``as_of``."""
    if file.is_terminal:
        return Decision(kind=DecisionKind.RETAIN, reason=REASON_TERMINAL)

    holds = _holds(db, file, as_of, snapshot)
    if holds:
        return Decision(kind=DecisionKind.RETAIN, reason=REASON_LEGAL_HOLD, holds=tuple(holds))

    attributes = FileAttributes.from_file(file, as_of)
    if policies is not None:
        resolved = policies.resolve(file.entity_type, file.jurisdiction, attributes)
    else:
        resolved = policy_store.resolve(db, file.entity_type, file.jurisdiction, attributes)

    if not resolved.has_policy:
        logger.debug(
            "No retention policy applies",
            extra=build_log_context(file_id=file.id),
        )
        return Decision(kind=DecisionKind.RETAIN, reason=REASON_NO_POLICY)

    if resolved.expires_at > as_of:
        return Decision(
            kind=DecisionKind.EXPIRE_AT,
            reason=REASON_NOT_EXPIRED,
            expires_at=resolved.expires_at,
            policy_id=resolved.policy_id,
            rule_id=resolved.rule_id,
        )

    if resolved.action == RuleAction.ARCHIVE:
        kind, reason = DecisionKind.RETAIN, REASON_ARCHIVE
    elif resolved.action == RuleAction.ANONYMIZE:
        kind, reason = DecisionKind.ANONYMIZE, REASON_EXPIRED
    else:
        # DELETE, or EXTEND whose extended window has now elapsed
        kind, reason = DecisionKind.DELETE_NOW, REASON_EXPIRED

    return Decision(
        kind=kind,
        reason=reason,
        expires_at=resolved.expires_at,
        policy_id=resolved.policy_id,
        rule_id=resolved.rule_id,
    )


def evaluate_explicit_request(
    db: Session,
    file: FileMetadata,
    as_of: datetime,
    action: DeletionAction,
) -> Decision:
    """
    Decision for a USER_REQUEST / GDPR_REQUEST.

    Skips the retention window but never the legal hold check, which always
    reads the store.
    """
    if file.is_terminal:
        return Decision(kind=DecisionKind.RETAIN, reason=REASON_TERMINAL)

    holds = _holds(db, file, as_of, None)
    if holds:
        return Decision(kind=DecisionKind.RETAIN, reason=REASON_LEGAL_HOLD, holds=tuple(holds))

    kind = DecisionKind.ANONYMIZE if action == DeletionAction.ANONYMIZE else DecisionKind.DELETE_NOW
    return Decision(kind=kind, reason=REASON_EXPLICIT)
