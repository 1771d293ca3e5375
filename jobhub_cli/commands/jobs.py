"""Jobs Commands - Submit, inspect and control jobs"""

import json
import time

import typer
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import JobhubClient, JobhubError
from ..utils.config_manager import config
from ..utils.formatting import (
    TERMINAL_STATUSES,
    create_job_panel,
    create_jobs_table,
    create_progress_bar,
    print_error,
    print_info,
    print_success,
    styled_status,
)

console = Console()
app = typer.Typer(name="jobs", help="Job submission and management commands")


def _parse_payload(payload: str | None) -> dict:
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None
    if not isinstance(data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)
    return data


@app.command("submit")
def submit_job(
    job_name: str = typer.Argument(..., help="Job definition name"),
    namespace: str | None = typer.Option(None, "--namespace", "-n", help="Namespace"),
    payload: str | None = typer.Option(None, "--payload", "-p", help="JSON payload"),
    priority: int = typer.Option(0, "--priority", help="Priority (higher runs sooner)"),
    scheduled_at: str | None = typer.Option(
        None, "--at", help="Earliest start time (ISO 8601)"
    ),
    watch: bool = typer.Option(False, "--watch", "-w", help="Watch until finished"),
):
    """🚀 Submit a job"""
    base_url = config.get("api.base_url")
    namespace = namespace or config.get("jobs.default_namespace", "default")
    data = _parse_payload(payload)

    try:
        with JobhubClient(base_url) as client:
            result = client.submit_job(
                job_name,
                namespace=namespace,
                payload=data,
                priority=priority,
                scheduled_at=scheduled_at,
            )
            job_id = result.get("job_id")
            print_success(f"Submitted {namespace}/{job_name}: [cyan]{job_id}[/cyan]")

            if watch:
                _watch(client, job_id, config.get("jobs.watch_interval_s", 2))

    except JobhubError as e:
        print_error(f"Failed to submit job: {e}")
        raise typer.Exit(1) from None


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    namespace: str | None = typer.Option(None, "--namespace", "-n", help="Namespace"),
    job_name: str | None = typer.Option(None, "--name", help="Filter by job name"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", "-o", help="Skip first N jobs"),
):
    """📋 List jobs"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            jobs_data = client.list_jobs(
                status=status,
                namespace=namespace,
                job_name=job_name,
                limit=limit,
                offset=offset,
            )

            jobs = jobs_data.get("jobs", [])
            total = jobs_data.get("total", len(jobs))

            if not jobs:
                console.print(Panel(
                    "📭 [yellow]No jobs found![/yellow]",
                    title="Empty Results",
                    border_style="yellow"
                ))
                return

            console.print(create_jobs_table(jobs))
            console.print(f"\n📊 Showing [cyan]{len(jobs)}[/cyan] of [yellow]{total}[/yellow] jobs")

            if offset + limit < total:
                console.print(f"💡 Use [cyan]--offset {offset + limit}[/cyan] to see more")

    except JobhubError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None


@app.command("get")
def get_job(
    job_id: str = typer.Argument(..., help="Job ID"),
):
    """🔍 Show a job"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            job = client.get_job(job_id)
            console.print(create_job_panel(job))
            if job.get("logs"):
                console.print(Panel(job["logs"], title="Logs", border_style="dim"))

    except JobhubError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("logs")
def show_logs(
    job_id: str = typer.Argument(..., help="Job ID"),
):
    """📜 Show a job's console output"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            lines = client.get_job_logs(job_id).get("lines", [])
            if not lines:
                print_info("No output yet")
                return
            for line in lines:
                _print_log_line(line)

    except JobhubError as e:
        print_error(f"Failed to get logs: {e}")
        raise typer.Exit(1) from None


def _print_log_line(line: dict) -> None:
    level = line.get("level", "info")
    style = "red" if level == "error" else "yellow" if level == "warning" else "white"
    console.print(
        f"[dim]{line.get('line_number'):>4}[/dim] "
        f"[{style}]{level.upper():<7}[/{style}] {line.get('message', '')}"
    )


@app.command("cancel")
def cancel_job(
    job_id: str = typer.Argument(..., help="Job ID"),
):
    """🛑 Cancel a pending or running job"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            job = client.cancel_job(job_id)
            print_success(f"Job {job_id} is now {styled_status(job.get('status'))}")

    except JobhubError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None


@app.command("retry")
def retry_job(
    job_id: str = typer.Argument(..., help="ID of a failed job"),
):
    """🔁 Resubmit a failed job"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            result = client.retry_job(job_id)
            print_success(f"Resubmitted as [cyan]{result.get('job_id')}[/cyan]")

    except JobhubError as e:
        print_error(f"Failed to retry job: {e}")
        raise typer.Exit(1) from None


@app.command("watch")
def watch_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    interval: float | None = typer.Option(
        None, "--interval", "-i", help="Polling interval in seconds"
    ),
):
    """👀 Follow a job until it finishes"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            _watch(client, job_id, interval or config.get("jobs.watch_interval_s", 2))

    except JobhubError as e:
        print_error(f"Failed to watch job: {e}")
        raise typer.Exit(1) from None


def _watch(client: JobhubClient, job_id: str, interval: float) -> None:
    last_seen = None
    last_line = 0
    while True:
        job = client.get_job(job_id)

        for line in client.get_job_logs(job_id, after_line=last_line).get("lines", []):
            _print_log_line(line)
            last_line = max(last_line, line.get("line_number") or 0)

        status = job.get("status")
        snapshot = (status, job.get("progress_percent"), job.get("progress_message"))

        if snapshot != last_seen:
            console.print(styled_status(status), create_progress_bar(job.get("progress_percent")),
                          job.get("progress_message") or "")
            last_seen = snapshot

        if status in TERMINAL_STATUSES:
            console.print(create_job_panel(job))
            if status != "completed":
                raise typer.Exit(1)
            return

        time.sleep(float(interval))
