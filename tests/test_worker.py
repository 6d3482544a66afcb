import pytest
from sqlalchemy import select

from retention_engine.db.enums import DeletionRequestStatus, FileStatus, WorkerTask
from retention_engine.db.models import DeletionRequest, FileMetadata
from retention_engine.jobs.registry import TASK_HANDLERS, WorkerContext, resolve_task_handler
from retention_engine import worker


def test_task_registry_resolves_every_task():
    for task in WorkerTask:
        assert callable(resolve_task_handler(task.value))


def test_task_registry_rejects_unknown_task():
    with pytest.raises(ValueError):
        resolve_task_handler("send_email")


def test_tasks_run_in_pipeline_order():
    assert list(TASK_HANDLERS) == [
        "hold_expiry_sweep",
        "expiration_sweep",
        "reap_stale_claims",
        "retry_failed",
        "execute_deletions",
    ]


@pytest.mark.asyncio
async def test_tick_expires_and_deletes_in_one_pass(
    session_factory, clock, storage, metrics, make_policy, make_file
):
    make_policy(retention_period_days=30)
    file = make_file(age_days=40)
    ctx = WorkerContext(storage=storage, clock=clock, metrics=metrics, worker_id="worker-test")

    outcome = await worker.run_tick(ctx, session_factory)

    assert outcome == {task.value: True for task in WorkerTask}
    assert storage.deleted == [file.path]
    with session_factory() as db:
        assert db.get(FileMetadata, file.id).status == FileStatus.DELETED.value
        request = db.execute(select(DeletionRequest)).scalar_one()
        assert request.status == DeletionRequestStatus.COMPLETED.value
    assert metrics.runs("expiration_pass")[0]["requested"] == 1
    assert metrics.runs("executor")[0]["completed"] == 1


@pytest.mark.asyncio
async def test_failing_task_does_not_stop_the_tick(session_factory, clock, storage, metrics, monkeypatch):
    async def _boom(db, ctx):
        raise RuntimeError("boom")

    handlers = dict(TASK_HANDLERS)
    handlers[WorkerTask.EXPIRATION_SWEEP.value] = _boom
    monkeypatch.setattr(worker, "TASK_HANDLERS", handlers)
    ctx = WorkerContext(storage=storage, clock=clock, metrics=metrics, worker_id="worker-test")

    outcome = await worker.run_tick(ctx, session_factory)

    assert outcome[WorkerTask.EXPIRATION_SWEEP.value] is False
    assert outcome[WorkerTask.EXECUTE_DELETIONS.value] is True


def test_default_worker_id_prefers_setting(monkeypatch):
    monkeypatch.setattr(worker.settings, "WORKER_ID", "retention-1", raising=False)

    assert worker.default_worker_id() == "retention-1"
