from datetime import timedelta
import uuid

import pytest

from retention_engine.core.errors import NotFoundError
from retention_engine.db.enums import DecisionKind
from retention_engine.services import executor, report_service, scheduler


def test_report_rejects_inverted_window(db, clock):
    with pytest.raises(ValueError):
        report_service.generate_retention_report(db, clock.now(), clock.now() - timedelta(days=1))


@pytest.mark.asyncio
async def test_report_counts_period_activity(db, clock, storage, metrics, make_policy, make_file, make_hold):
    start = clock.now() - timedelta(days=60)
    make_policy(retention_period_days=30)
    make_file(age_days=40, entity_id="doc-old")
    make_file(age_days=35, entity_id="doc-held")
    make_file(age_days=1, entity_id="doc-new")
    make_file(entity_type="PRODUCT", entity_id="sku-1", age_days=2)
    make_hold({"kind": "specific_entities", "entity_type": "DOCUMENT", "entity_ids": ["doc-held"]})

    scheduler.run_expiration_pass(db, clock=clock, metrics=metrics)
    clock.advance(minutes=1)
    await executor.run_once(db, storage=storage, worker_id="w1", clock=clock, metrics=metrics)

    report = report_service.generate_retention_report(db, start, clock.now())

    assert report["summary"]["total_files"] == 4
    assert report["summary"]["expired_files"] == 1
    assert report["summary"]["deleted_files"] == 1
    assert report["summary"]["hold_conflicts"] == 0
    assert report["by_entity_type"]["DOCUMENT"] == {
        "total_files": 3,
        "deleted_files": 1,
        "anonymized_files": 0,
    }
    assert report["by_entity_type"]["PRODUCT"]["total_files"] == 1
    assert report["legal_holds"]["active"] == 1
    assert report["legal_holds"]["created"] == 1
    assert report["deletion_requests"]["completed"] == 1
    assert report["deletion_requests"]["pending"] == 0
    assert report["deletion_requests"]["failed_by_kind"] == {}


def test_report_window_excludes_older_files(db, clock, make_file):
    make_file(age_days=100)
    make_file(age_days=2)

    report = report_service.generate_retention_report(db, clock.now() - timedelta(days=7), clock.now())

    assert report["summary"]["total_files"] == 1


@pytest.mark.asyncio
async def test_report_groups_failures_by_kind(db, clock, storage, metrics, make_policy, make_file):
    make_policy(retention_period_days=30)
    file = make_file(age_days=40)
    storage.fail_paths.add(file.path)

    scheduler.run_expiration_pass(db, clock=clock, metrics=metrics)
    await executor.run_once(db, storage=storage, worker_id="w1", clock=clock, metrics=metrics)

    report = report_service.generate_retention_report(db, clock.now() - timedelta(days=1), clock.now())

    assert report["deletion_requests"]["failed"] == 1
    assert report["deletion_requests"]["failed_by_kind"] == {"storage_failure": 1}


# =============================================================================
# Per-file audit
# =============================================================================

def test_audit_unknown_file(db, clock):
    with pytest.raises(NotFoundError):
        report_service.audit_file_retention(db, uuid.uuid4(), clock=clock)


def test_audit_compliant_file(db, clock, make_policy, make_file):
    policy = make_policy(retention_period_days=30)
    file = make_file(age_days=5)

    view = report_service.audit_file_retention(db, file.id, clock=clock)

    assert view["compliance_status"] == "compliant"
    assert view["decision"].kind == DecisionKind.EXPIRE_AT
    assert view["policy"].id == policy.id
    assert view["recommendations"] == []


def test_audit_expired_file(db, clock, make_policy, make_file):
    make_policy(retention_period_days=30)
    file = make_file(age_days=40)

    view = report_service.audit_file_retention(db, file.id, clock=clock)

    assert view["compliance_status"] == "expired"
    assert view["deletion_requests"] == []


def test_audit_held_file(db, clock, make_policy, make_file, make_hold):
    make_policy(retention_period_days=30)
    file = make_file(age_days=40)
    hold = make_hold({"kind": "specific_files", "file_ids": [str(file.id)]}, name="Audit 7")

    view = report_service.audit_file_retention(db, file.id, clock=clock)

    assert view["compliance_status"] == "held"
    assert [h.id for h in view["legal_holds"]] == [hold.id]
    assert "Audit 7" in view["recommendations"][0]


@pytest.mark.asyncio
async def test_audit_pending_then_deleted(db, clock, storage, metrics, make_policy, make_file):
    make_policy(retention_period_days=30)
    file = make_file(age_days=40)
    scheduler.run_expiration_pass(db, clock=clock, metrics=metrics)

    pending = report_service.audit_file_retention(db, file.id, clock=clock)
    assert pending["compliance_status"] == "pending_deletion"
    assert len(pending["deletion_requests"]) == 1

    await executor.run_once(db, storage=storage, worker_id="w1", clock=clock, metrics=metrics)
    db.expire_all()

    done = report_service.audit_file_retention(db, file.id, clock=clock)
    assert done["compliance_status"] == "deleted"
    assert "FILE_DELETED" in [e.event_type for e in done["history"]]
