"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
    "idle": "green",
    "busy": "cyan",
    "dead": "red",
}

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


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


def styled_status(status: str | None) -> str:
    style = STATUS_STYLES.get(status or "", "white")
    return f"[{style}]{status or '—'}[/{style}]"


def _short_time(value: str | None) -> str:
    if not value:
        return "—"
    return value.replace("T", " ")[:19]


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a job list"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Job", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Progress", justify="right", style="yellow")
    table.add_column("Retries", justify="center")
    table.add_column("Priority", justify="right")
    table.add_column("Created", justify="left", style="dim")

    for job in jobs:
        percent = job.get("progress_percent")
        table.add_row(
            str(job.get("id", ""))[:8],
            f"{job.get('namespace', '')}/{job.get('job_name', '')}",
            styled_status(job.get("status")),
            f"{percent}%" if percent is not None else "—",
            f"{job.get('retry_count', 0)}/{job.get('max_retries', 0)}",
            str(job.get("priority", 0)),
            _short_time(job.get("created_at")),
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a detail panel for a single job"""
    lines = [
        f"🆔 [bold]ID:[/bold] [cyan]{job.get('id', 'unknown')}[/cyan]",
        f"📦 [bold]Job:[/bold] [magenta]{job.get('namespace')}/{job.get('job_name')}[/magenta]",
        f"📍 [bold]Status:[/bold] {styled_status(job.get('status'))}",
        f"🔁 [bold]Retries:[/bold] {job.get('retry_count', 0)}/{job.get('max_retries', 0)}",
        f"⚖️ [bold]Priority:[/bold] {job.get('priority', 0)}",
        f"👤 [bold]Owner:[/bold] [purple]{job.get('created_by', 'unknown')}[/purple]",
        f"📅 [bold]Scheduled:[/bold] {_short_time(job.get('scheduled_at'))}",
        f"▶️ [bold]Started:[/bold] {_short_time(job.get('started_at'))}",
        f"🏁 [bold]Completed:[/bold] {_short_time(job.get('completed_at'))}",
    ]
    if job.get("worker_id"):
        lines.append(f"🛠 [bold]Worker:[/bold] {job['worker_id']}")
    if job.get("progress_percent") is not None:
        message = job.get("progress_message") or ""
        lines.append(f"📈 [bold]Progress:[/bold] {job['progress_percent']}% {message}")
    if job.get("error_message"):
        code = job.get("error_code") or "ERROR"
        lines.append(f"❌ [bold]Error:[/bold] [red]{code}: {job['error_message']}[/red]")
    if job.get("result") is not None:
        lines.append(f"✅ [bold]Result:[/bold] [green]{job['result']}[/green]")

    return Panel("\n".join(lines), title="Job", border_style="blue")


def create_progress_bar(percent: int | None) -> ProgressBar:
    return ProgressBar(total=100, completed=percent or 0, width=40)


def create_workers_table(workers: list[dict[str, Any]]) -> Table:
    """Create a formatted table for workers"""
    table = Table(title="Workers", box=box.ROUNDED)

    table.add_column("Worker", justify="left", style="cyan", no_wrap=True)
    table.add_column("Host", justify="left")
    table.add_column("Status", justify="center")
    table.add_column("Jobs", justify="center", style="yellow")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Last heartbeat", justify="left", style="dim")

    for worker in workers:
        table.add_row(
            worker.get("worker_id", ""),
            worker.get("hostname", ""),
            styled_status(worker.get("status")),
            f"{worker.get('current_job_count', 0)}/{worker.get('max_concurrent_jobs', 0)}",
            str(worker.get("total_completed", 0)),
            _short_time(worker.get("last_heartbeat_at")),
        )

    return table


def create_definitions_table(definitions: list[dict[str, Any]]) -> Table:
    """Create a formatted table for job definitions"""
    table = Table(title="Job Definitions", box=box.ROUNDED)

    table.add_column("Namespace", justify="left", style="blue")
    table.add_column("Name", justify="left", style="magenta")
    table.add_column("Enabled", justify="center")
    table.add_column("Timeout", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Role", justify="left", style="yellow")
    table.add_column("Version", justify="right", style="dim")

    for definition in definitions:
        enabled = definition.get("enabled", False)
        table.add_row(
            definition.get("namespace", ""),
            definition.get("name", ""),
            "[green]yes[/green]" if enabled else "[red]no[/red]",
            f"{definition.get('timeout_seconds', 0)}s",
            str(definition.get("max_retries", 0)),
            definition.get("required_role") or "—",
            str(definition.get("version", 1)),
        )

    return table
