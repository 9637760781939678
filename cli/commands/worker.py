"""Worker Commands - continuous and single-shot job processing"""

import asyncio

import typer
from rich.console import Console

from fulfillment.config.logging import setup_logging
from fulfillment.config.settings import Settings, get_settings
from fulfillment.infra.database import Database
from fulfillment.v1.jobs.registry_init import load_stage_processors
from fulfillment.v1.jobs.runner import build_runner
from fulfillment.v1.jobs.schemas import BatchResult
from fulfillment.v1.jobs.worker import run_worker

from ..utils.formatting import create_batch_table, print_error, print_info, print_success

console = Console()


async def run_scheduled_batch(
    settings: Settings, worker_id: str, max_jobs: int
) -> BatchResult:
    """Run one bounded batch against the configured database."""
    registry = load_stage_processors(settings)
    database = Database(settings)
    try:
        runner = build_runner(settings, database, registry)
        return await runner.run_batch(worker_id, max_jobs=max_jobs)
    finally:
        await database.close()


def worker(
    worker_id: str | None = typer.Option(
        None, "--worker-id", help="Lock owner identity (defaults to WORKER_ID)"
    ),
):
    """🔁 Run the continuous fulfillment worker until SIGINT/SIGTERM"""
    settings = get_settings()
    if worker_id:
        settings = settings.model_copy(update={"worker_id": worker_id})

    setup_logging()
    print_info(f"Starting worker {settings.worker_id}")
    try:
        asyncio.run(run_worker(settings))
    except Exception as e:
        print_error(f"Worker failed: {e}")
        raise typer.Exit(1) from None
    print_success("Worker stopped")


def run_once(
    max_jobs: int | None = typer.Option(
        None, "--max-jobs", "-n", min=1, help="Maximum jobs to process"
    ),
    worker_id: str = typer.Option(
        "cli", "--worker-id", help="Lock owner identity for this invocation"
    ),
):
    """▶️ Process one bounded batch of jobs and exit"""
    settings = get_settings()
    try:
        batch = asyncio.run(
            run_scheduled_batch(
                settings, worker_id, max_jobs or settings.jobs_per_invocation
            )
        )
    except Exception as e:
        print_error(f"Run failed: {e}")
        raise typer.Exit(1) from None

    if batch.results:
        console.print(create_batch_table(batch))

    summary = (
        f"{batch.message} in {batch.duration_ms}ms "
        f"({batch.error_count} error(s), {batch.reaped_count} lease(s) reaped)"
    )
    if batch.error_count:
        print_error(summary)
        raise typer.Exit(1)
    print_success(summary)
