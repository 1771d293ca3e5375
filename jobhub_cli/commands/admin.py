"""Admin Commands - Workers, definitions and forced termination"""

from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.panel import Panel

from ..client.endpoints import JobhubClient, JobhubError
from ..utils.config_manager import config
from ..utils.formatting import (
    create_definitions_table,
    create_workers_table,
    print_error,
    print_info,
    print_success,
    print_warning,
)

console = Console()
app = typer.Typer(name="admin", help="Administrative commands (privileged role required)")


@app.command("workers")
def list_workers(
    include_dead: bool = typer.Option(True, "--all/--live", help="Include dead workers"),
):
    """🛠 List workers"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            workers = client.list_workers(include_dead=include_dead).get("workers", [])
            if not workers:
                print_warning("No workers registered")
                return
            console.print(create_workers_table(workers))

    except JobhubError as e:
        print_error(f"Failed to list workers: {e}")
        raise typer.Exit(1) from None


@app.command("terminate")
def terminate_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """💥 Force-terminate a job"""
    if not yes and not typer.confirm(f"Terminate job {job_id}?"):
        console.print("Termination cancelled.")
        return

    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            job = client.terminate_job(job_id)
            print_success(
                f"Job {job_id} terminated ({job.get('error_code') or job.get('status')})"
            )

    except JobhubError as e:
        print_error(f"Failed to terminate job: {e}")
        raise typer.Exit(1) from None


@app.command("namespaces")
def list_namespaces():
    """🗂 List namespaces"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            namespaces = client.list_namespaces().get("namespaces", [])
            if not namespaces:
                print_warning("No namespaces defined")
                return
            for namespace in namespaces:
                console.print(f"• [blue]{namespace}[/blue]")

    except JobhubError as e:
        print_error(f"Failed to list namespaces: {e}")
        raise typer.Exit(1) from None


@app.command("definitions")
def list_definitions(
    namespace: str | None = typer.Option(None, "--namespace", "-n", help="Namespace"),
):
    """📚 List job definitions"""
    base_url = config.get("api.base_url")

    try:
        with JobhubClient(base_url) as client:
            definitions = client.list_definitions(namespace).get("definitions", [])
            if not definitions:
                print_warning("No job definitions found")
                return
            console.print(create_definitions_table(definitions))

    except JobhubError as e:
        print_error(f"Failed to list definitions: {e}")
        raise typer.Exit(1) from None


@app.command("define")
def define_job(
    name: str = typer.Argument(..., help="Job definition name"),
    namespace: str = typer.Option("default", "--namespace", "-n", help="Namespace"),
    timeout: int | None = typer.Option(None, "--timeout", help="Timeout in seconds"),
    max_retries: int | None = typer.Option(None, "--max-retries", help="Retry budget"),
    progress_timeout: int | None = typer.Option(
        None, "--progress-timeout", help="Seconds without progress before reclaim"
    ),
    role: str | None = typer.Option(None, "--role", help="Role required to submit"),
    description: str | None = typer.Option(None, "--description", help="Description"),
    disabled: bool = typer.Option(False, "--disabled", help="Create disabled"),
):
    """✏️ Create or update a job definition"""
    base_url = config.get("api.base_url")
    definition = {
        "name": name,
        "namespace": namespace,
        "description": description,
        "enabled": not disabled,
        "timeout_seconds": timeout,
        "max_retries": max_retries,
        "progress_timeout_seconds": progress_timeout,
        "required_role": role,
    }

    try:
        with JobhubClient(base_url) as client:
            result = client.upsert_definition(definition)
            saved = result.get("definition", {})
            print_success(
                f"{namespace}/{name} {result.get('outcome')} (version {saved.get('version')})"
            )

    except JobhubError as e:
        print_error(f"Failed to save definition: {e}")
        raise typer.Exit(1) from None


@app.command("sync")
def sync_definitions(
    file: Path = typer.Argument(..., exists=True, readable=True, help="YAML file"),
    keep_missing: bool = typer.Option(
        False, "--keep-missing", help="Keep definitions absent from the file"
    ),
):
    """🔄 Sync a namespace's definitions from a YAML file

    The file holds a ``namespace`` and a list of ``definitions``.
    """
    base_url = config.get("api.base_url")

    try:
        document = yaml.safe_load(file.read_text()) or {}
    except yaml.YAMLError as e:
        print_error(f"Invalid YAML: {e}")
        raise typer.Exit(1) from None

    namespace = document.get("namespace", "default")
    definitions = document.get("definitions", [])
    print_info(f"Syncing {len(definitions)} definitions into '{namespace}'")

    try:
        with JobhubClient(base_url) as client:
            result = client.sync_definitions(
                namespace, definitions, delete_missing=not keep_missing
            )
            summary = result.get("summary", {})
            console.print(Panel(
                f"• Created: [green]{summary.get('created', 0)}[/green]\n"
                f"• Updated: [yellow]{summary.get('updated', 0)}[/yellow]\n"
                f"• Deleted: [red]{summary.get('deleted', 0)}[/red]\n"
                f"• Unchanged: [dim]{summary.get('unchanged', 0)}[/dim]",
                title=f"Sync: {namespace}",
                border_style="green"
            ))

    except JobhubError as e:
        print_error(f"Failed to sync definitions: {e}")
        raise typer.Exit(1) from None
