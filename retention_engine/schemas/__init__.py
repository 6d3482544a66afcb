"""Pydantic schemas for API request/response models."""

from retention_engine.schemas.retention import (
    DeletionRequestCreate,
    DeletionRequestRead,
    LegalHoldCreate,
    LegalHoldRead,
    RetentionPolicyCreate,
    RetentionPolicyRead,
    RetentionRuleCreate,
    RetentionRuleRead,
)

__all__ = [
    # Deletion requests
    "DeletionRequestCreate",
    "DeletionRequestRead",
    # Legal holds
    "LegalHoldCreate",
    "LegalHoldRead",
    # Policies
    "RetentionPolicyCreate",
    "RetentionPolicyRead",
    "RetentionRuleCreate",
    "RetentionRuleRead",
]
