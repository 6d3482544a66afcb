"""Tests for the retention audit ledger."""

from datetime import datetime, timedelta, timezone
import uuid

import pytest
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from retention_engine.db.enums import AuditEventType
from retention_engine.db.models import AuditEntry
from retention_engine.services import audit_service


# =============================================================================
# Unit Tests (no DB required)
# =============================================================================

def _entry(**overrides) -> AuditEntry:
    values = {
        "id": uuid.UUID("00000000-0000-0000-0000-000000000001"),
        "event_type": AuditEventType.FILE_DELETED.value,
        "file_id": uuid.UUID("00000000-0000-0000-0000-0000000000f1"),
        "entity_type": "DOCUMENT",
        "entity_id": "doc-1",
        "performed_by": "system",
        "details": {"size": 10},
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return AuditEntry(**values)


def test_compute_audit_hash_deterministic():
    """Audit hash computation should be deterministic."""
    hash1 = audit_service.compute_audit_hash(_entry(), "abc123")
    hash2 = audit_service.compute_audit_hash(_entry(), "abc123")
    assert hash1 == hash2
    assert len(hash1) == 64  # SHA256 hex


def test_compute_audit_hash_different_inputs():
    """Different inputs should produce different hashes."""
    base = audit_service.compute_audit_hash(_entry(), "abc123")
    assert base != audit_service.compute_audit_hash(_entry(entity_id="doc-2"), "abc123")
    assert base != audit_service.compute_audit_hash(_entry(details={"size": 11}), "abc123")
    assert base != audit_service.compute_audit_hash(_entry(), "abc124")


def test_compute_audit_hash_normalizes_timezone():
    """The same instant hashes the same regardless of how it was read back."""
    aware = _entry(created_at=datetime(2024, 1, 1, 12, tzinfo=timezone.utc))
    offset = _entry(created_at=datetime(2024, 1, 1, 14, tzinfo=timezone(timedelta(hours=2))))
    assert audit_service.compute_audit_hash(aware, "x") == audit_service.compute_audit_hash(offset, "x")


def test_canonical_json_sorted():
    """canonical_json should sort keys and use compact separators."""
    result = audit_service.canonical_json({"b": 2, "a": 1})
    assert result == '{"a":1,"b":2}'


def test_canonical_json_nested():
    """canonical_json should handle nested objects."""
    result = audit_service.canonical_json({"b": {"d": 4, "c": 3}, "a": 1})
    assert result == '{"a":1,"b":{"c":3,"d":4}}'


def test_canonical_json_handles_none():
    """canonical_json should handle None input."""
    result = audit_service.canonical_json(None)
    assert result == "{}"


# =============================================================================
# Ledger Tests
# =============================================================================

def _log_three(db, clock) -> list[AuditEntry]:
    entries = []
    for i in range(3):
        entries.append(
            audit_service.log_event(
                db,
                AuditEventType.POLICY_UPDATED,
                now=clock.now(),
                entity_type="DOCUMENT",
                details={"step": i, "at": clock.now()},
            )
        )
        clock.advance(seconds=1)
    db.commit()
    return entries


def test_first_entry_links_to_genesis(db, clock):
    first, second, third = _log_three(db, clock)

    assert first.prev_hash == audit_service.GENESIS_HASH
    assert second.prev_hash == first.entry_hash
    assert third.prev_hash == second.entry_hash


def test_details_are_stored_json_safe(db, clock):
    start = clock.now()
    first, _, _ = _log_three(db, clock)

    db.expire_all()
    stored = db.get(AuditEntry, first.id)

    assert stored.details == {"step": 0, "at": str(start)}
    assert audit_service.verify_audit_chain(db).valid


def test_chain_verifies_after_reload(db, clock):
    _log_three(db, clock)
    db.expire_all()

    result = audit_service.verify_audit_chain(db)

    assert result.valid
    assert result.entries_checked == 3
    assert result.broken_entry_ids == []


def test_tampered_details_are_detected(db, clock):
    _, second, _ = _log_three(db, clock)
    db.execute(update(AuditEntry).where(AuditEntry.id == second.id).values(details={"step": 99}))
    db.commit()

    result = audit_service.verify_audit_chain(db)

    assert not result.valid
    assert result.broken_entry_ids == [second.id]


def test_deleted_entry_breaks_the_link(db, clock):
    _, second, third = _log_three(db, clock)
    db.execute(delete(AuditEntry).where(AuditEntry.id == second.id))
    db.commit()

    result = audit_service.verify_audit_chain(db)

    assert not result.valid
    assert result.broken_entry_ids == [third.id]


def test_terminal_file_entry_is_unique(db, clock):
    file_id = uuid.uuid4()
    audit_service.log_event(db, AuditEventType.FILE_DELETED, now=clock.now(), file_id=file_id)
    db.commit()

    with pytest.raises(IntegrityError):
        audit_service.log_event(db, AuditEventType.FILE_ANONYMIZED, now=clock.now(), file_id=file_id)
    db.rollback()

    # Non-terminal events for the same file are unrestricted
    audit_service.log_event(db, AuditEventType.FILE_MISSING, now=clock.now(), file_id=file_id)
    audit_service.log_event(db, AuditEventType.FILE_MISSING, now=clock.now(), file_id=file_id)
    db.commit()


def test_list_entries_filters_by_type_and_window(db, clock):
    entries = _log_three(db, clock)
    audit_service.log_event(db, AuditEventType.LEGAL_HOLD_CREATED, now=clock.now())
    db.commit()

    updates = audit_service.list_entries(db, event_types=[AuditEventType.POLICY_UPDATED])
    windowed = audit_service.list_entries(
        db, start=entries[1].created_at, end=entries[2].created_at
    )

    assert [e.id for e in updates] == [e.id for e in entries]
    assert [e.id for e in windowed] == [entries[1].id, entries[2].id]
