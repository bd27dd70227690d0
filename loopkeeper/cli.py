"""loopkeeper CLI - command-line interface for the loopkeeper API."""

import os
import time
from pathlib import Path
from typing import Any

import httpx
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

# Load .env file from project root (parent of loopkeeper/ directory)
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

app = typer.Typer(help="loopkeeper CLI")

console = Console()

# Configuration
API_BASE_URL = os.getenv("LOOPKEEPER_URL", "http://localhost:8000")
API_KEY = os.getenv("API_SECRET_KEY", "dev-secret-key")

STATUS_STYLES = {
    "running": "green",
    "pending": "yellow",
    "paused": "yellow",
    "completed": "blue",
    "stopped": "dim",
    "failed": "red",
}


def get_client() -> httpx.Client:
    """Get configured HTTP client."""
    return httpx.Client(
        base_url=API_BASE_URL,
        headers={"X-API-Key": API_KEY},
        timeout=30.0,
    )


def call_api(method: str, path: str, **kwargs: Any) -> Any:
    """Call the API and return the decoded body.

    Raises:
        typer.Exit: If the API answers with an error status or is unreachable
    """
    try:
        with get_client() as client:
            response = client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        console.print(f"[red]✗[/red] {detail} ({e.response.status_code})")
        raise typer.Exit(1) from e
    except httpx.HTTPError as e:
        console.print(f"[red]✗[/red] Could not reach {API_BASE_URL}: {e}")
        raise typer.Exit(1) from e


def styled(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def print_started(result: dict, verb: str = "Started") -> None:
    console.print(f"[green]✓[/green] {verb} [bold]{result['handle']}[/bold]")
    console.print(f"  Task: {result['task_id']}")
    console.print(f"  Character: {result['character']}")


@app.command("start", context_settings={"ignore_unknown_options": True})
def start_worker(
    worker: str = typer.Argument(..., help="Worker name, see `loopkeeper workers`"),
    args: list[str] = typer.Argument(None, help="Character name and worker args"),
    kind: str = typer.Option(None, "--kind", help="Override the task kind"),
):
    """Start a worker, replacing the character's current task."""
    payload: dict[str, Any] = {"worker": worker, "args": args or []}
    if kind:
        payload["kind"] = kind

    result = call_api("POST", "/v1/tasks", json=payload)
    print_started(result)


@app.command("stop")
def stop_worker(handle: str = typer.Argument(..., help="Worker handle")):
    """Stop a worker and cancel its task."""
    task = call_api("POST", "/v1/workers/stop", json={"handle": handle})
    console.print(f"[green]✓[/green] Stopped {handle}")
    console.print(f"  Task {task['id']}: {styled(task['state'])}")


@app.command("pause")
def pause_worker(handle: str = typer.Argument(..., help="Worker handle")):
    """Stop a worker but keep its task for resume."""
    task = call_api("POST", "/v1/workers/pause", json={"handle": handle})
    console.print(f"[green]✓[/green] Paused {handle}")
    console.print(f"  Resume with: loopkeeper resume {task['id']}")


@app.command("resume")
def resume_task(task_id: int = typer.Argument(..., help="Paused task ID")):
    """Resume a paused task."""
    result = call_api("POST", f"/v1/tasks/{task_id}/resume")
    print_started(result, verb="Resumed")


@app.command("restart")
def restart_worker(handle: str = typer.Argument(..., help="Worker handle")):
    """Restart a worker from its stored arguments."""
    result = call_api("POST", "/v1/workers/restart", json={"handle": handle})
    print_started(result, verb="Restarted")


@app.command("list")
def list_workers():
    """List live workers and recent tasks."""
    workers = call_api("GET", "/v1/workers")

    if not workers:
        console.print("[yellow]No workers running[/yellow]")
        return

    table = Table(title=f"Workers ({len(workers)})")
    table.add_column("Handle", style="cyan")
    table.add_column("Character", style="white")
    table.add_column("Status")
    table.add_column("Task", style="dim")
    table.add_column("Loops", justify="right")
    table.add_column("Actions", justify="right")
    table.add_column("Source", style="dim")

    for worker in workers:
        table.add_row(
            worker["handle"],
            worker["character"],
            styled(worker["status"]),
            str(worker["task_id"] or ""),
            str(worker["loop_count"]),
            str(worker["activity_count"]),
            worker["source"],
        )

    console.print(table)


@app.command("tasks")
def list_tasks(
    character: str = typer.Option(None, "--character", "-c", help="Filter by character"),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of tasks to show"),
):
    """List recent task records."""
    params: dict[str, Any] = {"limit": limit}
    if character:
        params["character"] = character
    data = call_api("GET", "/v1/tasks", params=params)

    tasks = data["tasks"]
    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return

    table = Table(title=f"Recent Tasks (showing {len(tasks)} of {data['total']})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Character", style="white")
    table.add_column("Worker", style="white")
    table.add_column("Kind", style="dim")
    table.add_column("State")
    table.add_column("Updated", style="dim")

    for task in tasks:
        table.add_row(
            str(task["id"]),
            task["character"],
            task["worker_name"],
            task["kind"],
            styled(task["state"]),
            task["updated_at"][:19],
        )

    console.print(table)


@app.command("output")
def worker_output(
    handle: str = typer.Argument(..., help="Worker handle"),
    tail: int = typer.Option(50, "--tail", "-n", help="Number of lines to show"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep polling"),
):
    """Show buffered output of a worker."""
    shown = 0
    while True:
        data = call_api("GET", "/v1/workers/output", params={"handle": handle})
        lines = data["lines"]
        start = shown if shown else max(0, len(lines) - tail)
        for line in lines[start:]:
            style = "red" if line["stream"] == "stderr" else "white"
            console.print(f"[dim]{line['time'][11:19]}[/dim] [{style}]{line['text']}[/{style}]")
        shown = len(lines)

        if not follow:
            break
        time.sleep(2)


@app.command("clear")
def clear_workers():
    """Hide stopped workers from the listing."""
    data = call_api("POST", "/v1/workers/clear")
    console.print(f"[green]✓[/green] Cleared {data['cleared']} stopped workers")


@app.command("workers")
def available_workers():
    """List the workers that may be started."""
    workers = call_api("GET", "/v1/workers/available")

    table = Table(title="Available workers")
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Preset", style="dim")
    table.add_column("Description", style="white")

    for worker in workers:
        table.add_row(
            worker["name"],
            worker["kind"],
            " ".join(worker["preset_args"]),
            worker["description"],
        )

    console.print(table)


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
):
    """Run the API server with the supervisor."""
    import uvicorn

    uvicorn.run("loopkeeper.main:app", host=host, port=port)


if __name__ == "__main__":
    app()
