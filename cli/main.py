"""Fulfillment Jobs CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from fulfillment.config.settings import get_settings

# Import command modules
from .commands import queue, worker

console = Console()

# Create main Typer app
app = typer.Typer(
    name="fulfillment-jobs",
    help="📦 Fulfillment Jobs - durable stage queue operations",
    rich_markup_mode="rich",
)

# Register commands
app.command("worker")(worker.worker)
app.command("run-once")(worker.run_once)
app.command("status")(queue.status)
app.command("requeue")(queue.requeue)
app.command("reap")(queue.reap)


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    settings = get_settings()
    console.print(
        Panel(
            f"📦 [bold cyan]Fulfillment Jobs CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Environment: [yellow]{settings.environment}[/yellow]\n"
            f"• Worker ID: [blue]{settings.worker_id}[/blue]",
            title="Version Info",
            border_style="cyan",
        )
    )


@app.callback()
def main():
    """
    📦 Fulfillment Jobs CLI

    Run workers, trigger scheduled batches and inspect or repair the
    fulfillment job queue.
    """


if __name__ == "__main__":
    app()
