"""Rich Formatting Utilities for Queue CLI Output"""

from datetime import datetime

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fulfillment.v1.jobs.schemas import BatchResult, JobResponse, QueueSummary

console = Console()

STATUS_STYLES = {
    "queued": "yellow",
    "running": "cyan",
    "completed": "green",
    "error": "red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "—"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def create_summary_panel(summary: QueueSummary) -> Panel:
    """Create formatted panel for job counts by status"""
    content = f"""
📊 [bold blue]Fulfillment Queue[/bold blue]

• Queued: [yellow]{summary.queued}[/yellow]
• Running: [cyan]{summary.running}[/cyan]
• Completed: [green]{summary.completed}[/green]
• Error: [red]{summary.error}[/red]
• Total: [blue]{summary.total}[/blue]
"""

    return Panel(content, title="Queue Summary", border_style="green")


def create_jobs_table(jobs: list[JobResponse], title: str) -> Table:
    """Create a formatted table for a list of jobs"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Stage", justify="center", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Correlation", justify="left", style="white")
    table.add_column("Scheduled", justify="center", style="dim")
    table.add_column("Last Error", justify="left", style="red")

    for job in jobs:
        style = STATUS_STYLES.get(job.status, "white")
        table.add_row(
            str(job.id)[:8],  # Short ID
            job.stage,
            f"[{style}]{job.status}[/{style}]",
            f"{job.attempts}/{job.max_attempts}",
            job.correlation_id,
            format_timestamp(job.scheduled_at),
            (job.last_error or "—")[:60],
        )

    return table


def create_batch_table(batch: BatchResult) -> Table:
    """Create a formatted table for one scheduled invocation"""
    table = Table(title=batch.message, box=box.ROUNDED)

    table.add_column("Result", justify="center", style="bold")
    table.add_column("Job", justify="left", style="cyan", no_wrap=True)
    table.add_column("Stage", justify="center", style="magenta")
    table.add_column("Correlation", justify="left", style="white")
    table.add_column("Error", justify="left", style="red")

    for result in batch.results:
        table.add_row(
            "✓" if result.succeeded else "✗",
            str(result.job_id)[:8] if result.job_id else "—",
            result.stage or "—",
            result.correlation_id or "—",
            (result.error or "")[:60],
        )

    return table
