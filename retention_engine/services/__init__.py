"""Service layer modules."""

# Import service modules (not individual functions) for cleaner access
from retention_engine.services import audit_service
from retention_engine.services import policy_store
from retention_engine.services import hold_index
from retention_engine.services import evaluator
from retention_engine.services import deletion_request_service
from retention_engine.services import scheduler
from retention_engine.services import executor
from retention_engine.services import compliance_service
from retention_engine.services import report_service

__all__ = [
    "audit_service",
    "policy_store",
    "hold_index",
    "evaluator",
    "deletion_request_service",
    "scheduler",
    "executor",
    "compliance_service",
    "report_service",
]
