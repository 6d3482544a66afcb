"""CLI tools for retention engine operators."""

import asyncio
from uuid import UUID

import click

from retention_engine.core.clock import system_clock
from retention_engine.core.config import settings
from retention_engine.core.errors import RetentionError
from retention_engine.core.structured_logging import configure_logging
from retention_engine.db.base import Base
from retention_engine.db.session import SessionLocal, engine
from retention_engine.services import (
    audit_service,
    compliance_service,
    deletion_request_service,
    executor,
    report_service,
    scheduler,
)
from retention_engine.services.storage import get_storage_backend


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: str | None):
    """Retention engine CLI tools."""
    configure_logging(log_level or settings.LOG_LEVEL)


@cli.command()
def init_db():
    """Create all retention tables (development / SQLite only)."""
    Base.metadata.create_all(bind=engine)
    click.echo("✓ Tables created")


@cli.command()
@click.option("--batch-size", default=None, type=int, help="Files per batch (default: SCHEDULER_BATCH_SIZE)")
def run_scheduler(batch_size: int | None):
    """Run one expiration pass and queue every past-due file."""
    with SessionLocal() as db:
        result = scheduler.run_expiration_pass(db, batch_size=batch_size)
    click.echo(
        f"✓ Scanned {result.scanned} files: {result.requested} requested, "
        f"{result.duplicates} duplicates, {result.held} held, "
        f"{result.not_expired} not expired, {result.retained} retained"
    )


@cli.command()
@click.option("--worker-id", default=None, help="Claim owner name (default: host:pid)")
@click.option("--batch-size", default=None, type=int, help="Max requests (default: EXECUTOR_BATCH_SIZE)")
def run_executor(worker_id: str | None, batch_size: int | None):
    """Claim and process due deletion requests."""
    from retention_engine.worker import default_worker_id

    storage = get_storage_backend()
    with SessionLocal() as db:
        result = asyncio.run(
            executor.run_once(
                db,
                storage=storage,
                worker_id=worker_id or default_worker_id(),
                batch_size=batch_size,
            )
        )
    click.echo(
        f"✓ Claimed {result.claimed}: {result.completed} completed, {result.failed} failed "
        f"({result.hold_conflicts} hold conflicts), {result.files_deleted} files"
    )


@cli.command()
def reap():
    """Requeue deletion requests whose executor stopped responding."""
    with SessionLocal() as db:
        counts = executor.reap_stale_claims(db)
    click.echo(f"✓ Requeued {counts['requeued']}, failed {counts['failed']}")


@cli.command()
def expire_holds():
    """Deactivate legal holds past their expiry and cascade their files."""
    with SessionLocal() as db:
        expired = scheduler.process_expired_holds(db)
    click.echo(f"✓ Expired {expired} legal holds")


@cli.command()
@click.argument("request_id", type=click.UUID, required=False)
def retry(request_id: UUID | None):
    """Retry a FAILED request, or run the automatic storage-failure sweep."""
    with SessionLocal() as db:
        if request_id is None:
            requeued = executor.requeue_failed_requests(db)
            click.echo(f"✓ Requeued {requeued} failed requests")
            return
        try:
            request = deletion_request_service.retry_request(
                db, request_id, now=system_clock.now(), performed_by="cli"
            )
        except RetentionError as e:
            raise click.ClickException(str(e))
    click.echo(f"✓ Request {request.id} is {request.status} (attempt {request.attempts + 1}/{request.max_attempts})")


@cli.command()
@click.argument("request_id", type=click.UUID)
def cancel(request_id: UUID):
    """Cancel a PENDING deletion request."""
    with SessionLocal() as db:
        try:
            deletion_request_service.cancel_request(db, request_id, now=system_clock.now(), performed_by="cli")
        except RetentionError as e:
            raise click.ClickException(str(e))
    click.echo(f"✓ Cancelled {request_id}")


@cli.command()
@click.argument("hold_id", type=click.UUID)
@click.option("--released-by", default="cli", help="Recorded as the releasing actor")
def release_hold(hold_id: UUID, released_by: str):
    """Release a legal hold and queue its now-expired files."""
    with SessionLocal() as db:
        try:
            _, cascade = compliance_service.release_legal_hold(db, hold_id, released_by=released_by)
        except RetentionError as e:
            raise click.ClickException(str(e))
    click.echo(
        f"✓ Released {hold_id}: {cascade.files} files, {cascade.created} new requests, "
        f"{cascade.existing} already queued, {cascade.retained} retained"
    )


@cli.command()
@click.argument("file_id", type=click.UUID)
def inspect(file_id: UUID):
    """Show the retention decision and compliance status for a file."""
    with SessionLocal() as db:
        try:
            audit = report_service.audit_file_retention(db, file_id)
        except RetentionError as e:
            raise click.ClickException(str(e))
    decision = audit["decision"]
    click.echo(f"File {file_id} ({audit['current_status']}): {audit['compliance_status']}")
    click.echo(f"  Decision: {decision.kind.value} ({decision.reason})")
    if decision.expires_at:
        click.echo(f"  Expires: {decision.expires_at.isoformat()}")
    for hold in audit["legal_holds"]:
        click.echo(f"  Hold: {hold.name} ({hold.id})")
    for line in audit["recommendations"]:
        click.echo(f"  → {line}")


@cli.command()
def verify_audit():
    """Verify the audit ledger hash chain."""
    with SessionLocal() as db:
        result = audit_service.verify_audit_chain(db)
    if result.valid:
        click.echo(f"✓ Audit chain intact ({result.entries_checked} entries)")
        return
    for entry_id in result.broken_entry_ids:
        click.echo(f"❌ Entry {entry_id} does not verify")
    raise click.ClickException(f"{len(result.broken_entry_ids)} broken entries")


@cli.command()
def worker():
    """Run the background worker loop."""
    from retention_engine.worker import worker_loop

    asyncio.run(worker_loop())


if __name__ == "__main__":
    cli()
