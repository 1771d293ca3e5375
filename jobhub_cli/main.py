"""Jobhub CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import JobhubClient, JobhubError
from .commands import admin, config, jobs
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="jobhub",
    help="⚙️ Jobhub - Asynchronous job execution CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(admin.app, name="admin")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API connectivity and worker health"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with JobhubClient(base_url) as client:
            health = client.health_check()
    except JobhubError as e:
        print_error(f"Failed to connect: {e}")
        console.print(Panel(
            f"🚫 [red]Connection Failed[/red]\n\n"
            f"Make sure the Jobhub API is running at:\n"
            f"[blue]{base_url}[/blue]\n\n"
            f"You can update the API URL with:\n"
            f"[cyan]jobhub config set api.base_url <url>[/cyan]",
            title="Connection Error",
            border_style="red"
        ))
        raise typer.Exit(1) from None

    worker = health.get("worker") or {}
    database = health.get("database") or {}
    console.print(Panel(
        f"🚀 [green]Connected Successfully![/green]\n\n"
        f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
        f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
        f"• Database: {'[green]up[/green]' if database.get('connected') else '[red]down[/red]'}\n"
        f"• Live workers: [cyan]{worker.get('active_workers', 0)}[/cyan]\n"
        f"• Queue depth: [yellow]{worker.get('queue_depth', 0)}[/yellow]\n"
        f"• API URL: [blue]{base_url}[/blue]",
        title="System Status",
        border_style="green" if health.get("ok") else "red"
    ))


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(Panel(
        f"⚙️ [bold cyan]Jobhub CLI[/bold cyan]\n\n"
        f"• Version: [green]{__version__}[/green]",
        title="Version Info",
        border_style="cyan"
    ))


@app.command()
def quickstart():
    """🚀 Quick start guide"""
    console.print(Panel(
        "⚙️ [bold cyan]Jobhub Quick Start[/bold cyan]\n\n"
        "[bold]1. Check Status[/bold]\n"
        "   [dim]jobhub status[/dim]\n\n"
        "[bold]2. Set Your Identity[/bold]\n"
        "   [dim]jobhub config set api.user_id alice[/dim]\n\n"
        "[bold]3. Submit a Job[/bold]\n"
        "   [dim]jobhub jobs submit sum --payload '{\"a\": 2, \"b\": 3}' --watch[/dim]\n\n"
        "[bold]4. List Your Jobs[/bold]\n"
        "   [dim]jobhub jobs list --status running[/dim]\n\n"
        "[bold]5. Inspect Workers[/bold]\n"
        "   [dim]jobhub admin workers[/dim]\n\n"
        "[bold yellow]Tip:[/bold yellow] Use [cyan]--help[/cyan] with any command for more options!",
        title="Quick Start Guide",
        border_style="green"
    ))


def _version_callback(value: bool):
    if value:
        from . import __version__
        console.print(f"Jobhub CLI v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """
    ⚙️ Jobhub CLI

    Submit jobs, follow their progress and manage workers from the command line.
    """


if __name__ == "__main__":
    app()
