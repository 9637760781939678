"""Queue Commands - status, remediation and lease recovery"""

import asyncio
from uuid import UUID

import typer
from rich.console import Console

from fulfillment.config.settings import Settings, get_settings
from fulfillment.infra.database import Database
from fulfillment.v1.core.exceptions import ValidationError
from fulfillment.v1.jobs.runner import build_runner
from fulfillment.v1.jobs.schemas import QueueStatusResponse
from fulfillment.v1.jobs.store import JobStore

from ..utils.formatting import (
    create_jobs_table,
    create_summary_panel,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()


async def fetch_queue_status(settings: Settings, limit: int) -> QueueStatusResponse:
    database = Database(settings)
    try:
        return await JobStore(database, settings).queue_status(sample_size=limit)
    finally:
        await database.close()


async def requeue_errored_jobs(
    settings: Settings,
    job_ids: list[UUID],
    correlation_id: str | None,
    all_errored: bool,
) -> list[UUID]:
    database = Database(settings)
    try:
        store = JobStore(database, settings)
        return await store.requeue_errored(
            job_ids=job_ids or None,
            correlation_id=correlation_id,
            all_errored=all_errored,
        )
    finally:
        await database.close()


async def reap_expired_leases(settings: Settings) -> int:
    database = Database(settings)
    try:
        runner = build_runner(settings, database)
        return len(await runner.reap_expired())
    finally:
        await database.close()


def status(
    limit: int = typer.Option(10, "--limit", "-l", min=1, help="Jobs per section"),
):
    """📊 Show queue counts, stuck jobs and recent activity"""
    settings = get_settings()
    try:
        queue = asyncio.run(fetch_queue_status(settings, limit))
    except Exception as e:
        print_error(f"Failed to load queue status: {e}")
        raise typer.Exit(1) from None

    console.print(create_summary_panel(queue.summary))

    if queue.stuck_jobs:
        print_warning(f"{len(queue.stuck_jobs)} job(s) running past their lease")
        console.print(create_jobs_table(queue.stuck_jobs, "Stuck Jobs"))

    sections = [
        ("Next Queued", queue.next_queued),
        ("Recent Errors", queue.recent_errors),
        ("Recently Completed", queue.recent_completed),
    ]
    for title, jobs in sections:
        if jobs:
            console.print(create_jobs_table(jobs, title))


def requeue(
    job_ids: list[str] | None = typer.Argument(None, help="Job IDs to requeue"),
    correlation_id: str | None = typer.Option(
        None, "--correlation-id", "-c", help="Requeue every errored job of a run"
    ),
    all_errored: bool = typer.Option(
        False, "--all", help="Requeue every errored job"
    ),
):
    """🔄 Requeue jobs that failed terminally"""
    try:
        parsed_ids = [UUID(job_id) for job_id in job_ids or []]
    except ValueError as e:
        print_error(f"Invalid job ID: {e}")
        raise typer.Exit(1) from None

    settings = get_settings()
    try:
        requeued = asyncio.run(
            requeue_errored_jobs(settings, parsed_ids, correlation_id, all_errored)
        )
    except ValidationError as e:
        print_error(e.message)
        raise typer.Exit(1) from None
    except Exception as e:
        print_error(f"Failed to requeue jobs: {e}")
        raise typer.Exit(1) from None

    if not requeued:
        print_info("No errored jobs matched")
        return

    for job_id in requeued:
        console.print(f"  [cyan]{job_id}[/cyan]")
    print_success(f"Requeued {len(requeued)} job(s)")


def reap():
    """🧹 Release jobs whose lease has expired"""
    settings = get_settings()
    try:
        count = asyncio.run(reap_expired_leases(settings))
    except Exception as e:
        print_error(f"Failed to reap expired leases: {e}")
        raise typer.Exit(1) from None

    if count:
        print_warning(f"Released {count} job(s) with expired leases")
    else:
        print_success("No expired leases")
