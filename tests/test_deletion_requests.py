import uuid

import pytest

from retention_engine.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    OpenRequestConflictError,
)
from retention_engine.db.enums import (
    AuditEventType,
    DeletionErrorKind,
    DeletionRequestStatus,
    DeletionRequestType,
)
from retention_engine.services import audit_service, deletion_request_service, executor, scheduler


S = DeletionRequestStatus


def _request(db, clock, file, **kwargs):
    request = deletion_request_service.create_request(
        db,
        request_type=DeletionRequestType.USER_REQUEST,
        entity_type=file.entity_type,
        entity_id=file.entity_id,
        file_ids=[file.id],
        now=clock.now(),
        requested_by="user-42",
        **kwargs,
    )
    db.commit()
    return request


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        (S.PENDING, S.PROCESSING),
        (S.PENDING, S.FAILED),
        (S.PROCESSING, S.COMPLETED),
        (S.PROCESSING, S.FAILED),
        (S.PROCESSING, S.PENDING),
        (S.FAILED, S.PENDING),
    ],
)
def test_allowed_transitions(from_status, to_status):
    deletion_request_service.assert_transition(from_status, to_status)


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        (S.PENDING, S.COMPLETED),
        (S.COMPLETED, S.PENDING),
        (S.COMPLETED, S.FAILED),
        (S.FAILED, S.COMPLETED),
        (S.FAILED, S.PROCESSING),
    ],
)
def test_illegal_transitions_raise(from_status, to_status):
    with pytest.raises(InvalidTransitionError):
        deletion_request_service.assert_transition(from_status, to_status)


def test_create_request_is_pending_and_audited(db, clock, make_file):
    file = make_file()

    request = _request(db, clock, file)

    assert request.status == S.PENDING.value
    assert request.attempts == 0
    assert request.max_attempts == 3
    assert request.file_ids == [file.id]
    entries = audit_service.list_entries(db, deletion_request_id=request.id)
    assert [e.event_type for e in entries] == [AuditEventType.DELETION_REQUEST_CREATED.value]
    assert entries[0].performed_by == "user-42"


def test_transition_guard_rejects_stale_status(db, clock, make_file):
    file = make_file()
    request = _request(db, clock, file)

    assert deletion_request_service.transition(db, request.id, S.PENDING, S.PROCESSING, now=clock.now())
    db.commit()

    assert not deletion_request_service.transition(db, request.id, S.PENDING, S.PROCESSING, now=clock.now())


def test_cancel_pending_request(db, clock, make_file):
    file = make_file()
    request = _request(db, clock, file)

    cancelled = deletion_request_service.cancel_request(db, request.id, now=clock.now(), performed_by="ops")

    assert cancelled.status == S.FAILED.value
    assert cancelled.error_kind == DeletionErrorKind.CANCELLED.value
    assert deletion_request_service.open_file_ids(db, [file.id]) == set()
    [entry] = audit_service.list_entries(db, event_types=[AuditEventType.DELETION_REQUEST_CANCELLED])
    assert entry.performed_by == "ops"


def test_cancelled_file_can_be_requested_again(db, clock, make_file):
    file = make_file()
    first = _request(db, clock, file)
    deletion_request_service.cancel_request(db, first.id, now=clock.now())

    second = _request(db, clock, file)

    assert second.id != first.id
    assert deletion_request_service.open_file_ids(db, [file.id]) == {file.id}


def test_cannot_cancel_in_flight_request(db, clock, make_file):
    file = make_file()
    request = _request(db, clock, file)
    executor.claim_next(db, worker_id="worker-1", clock=clock)

    with pytest.raises(InvalidTransitionError):
        deletion_request_service.cancel_request(db, request.id, now=clock.now())


def test_retry_requires_failed_status(db, clock, make_file):
    file = make_file()
    request = _request(db, clock, file)

    with pytest.raises(InvalidTransitionError):
        deletion_request_service.retry_request(db, request.id, now=clock.now())


def test_retry_cancelled_request_reopens_targets(db, clock, make_file):
    file = make_file()
    request = _request(db, clock, file)
    deletion_request_service.cancel_request(db, request.id, now=clock.now())
    clock.advance(minutes=5)

    retried = deletion_request_service.retry_request(db, request.id, now=clock.now(), performed_by="ops")

    assert retried.status == S.PENDING.value
    assert retried.error_kind is None
    assert retried.scheduled_at == clock.now()
    assert deletion_request_service.open_file_ids(db, [file.id]) == {file.id}


def test_retry_conflicts_with_newer_open_request(db, clock, make_file):
    file = make_file()
    old = _request(db, clock, file)
    deletion_request_service.cancel_request(db, old.id, now=clock.now())
    _request(db, clock, file)

    with pytest.raises(OpenRequestConflictError):
        deletion_request_service.retry_request(db, old.id, now=clock.now())

    assert deletion_request_service.get_request(db, old.id).status == S.FAILED.value


def test_unknown_request_raises_not_found(db, clock):
    with pytest.raises(NotFoundError):
        deletion_request_service.cancel_request(db, uuid.uuid4(), now=clock.now())


def test_list_requests_filters(db, clock, make_file):
    a = make_file(entity_id="user-1")
    b = make_file(entity_id="user-2")
    scheduler.submit_request(
        db,
        request_type=DeletionRequestType.USER_REQUEST,
        entity_type="DOCUMENT",
        entity_id="user-1",
        clock=clock,
    )
    gdpr = scheduler.submit_request(
        db,
        request_type=DeletionRequestType.GDPR_REQUEST,
        entity_type="DOCUMENT",
        entity_id="user-2",
        clock=clock,
    )

    by_type = deletion_request_service.list_requests(db, request_type=DeletionRequestType.GDPR_REQUEST)
    by_entity = deletion_request_service.list_requests(db, entity_id="user-1")

    assert [r.id for r in by_type] == [gdpr.id]
    assert by_entity[0].file_ids == [a.id]
    assert len(deletion_request_service.list_requests(db, status=S.PENDING)) == 2
    assert b.id in gdpr.file_ids
