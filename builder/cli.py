"""Builder CLI - command-line interface for the Builder API."""

import time
from datetime import datetime
from pathlib import Path

import httpx
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from builder.services.api_client import TERMINAL_STATUSES, ApiClientService
from builder.services.git import GitError, GitService

# Load .env file from project root (parent of builder/ directory)
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

app = typer.Typer(help="Builder CLI")
task_app = typer.Typer(help="Task management commands")
pr_app = typer.Typer(help="Pull request commands")
app.add_typer(task_app, name="task")
app.add_typer(pr_app, name="pr")

console = Console()

LEVEL_STYLES = {
    "info": "white",
    "success": "green",
    "error": "red",
    "command": "cyan",
}


def _call(func, *args, **kwargs):
    """Run an API call, turning HTTP errors into a CLI exit."""
    try:
        return func(*args, **kwargs)
    except httpx.HTTPStatusError as e:
        try:
            detail = e.response.json().get("detail", e.response.text)
        except ValueError:
            detail = e.response.text
        if isinstance(detail, dict):
            detail = detail.get("message") or detail
        console.print(f"[red]✗[/red] {e.response.status_code}: {detail}")
        raise typer.Exit(1) from e
    except httpx.HTTPError as e:
        console.print(f"[red]✗[/red] Could not reach the API: {e}")
        raise typer.Exit(1) from e


def _resolve_repo(repo: str | None) -> str:
    if repo is not None:
        return GitService.normalize_repo_url(repo)
    try:
        repo_url, _ = GitService.get_current_repo()
    except GitError as e:
        console.print(f"[red]✗[/red] {e}")
        console.print("  Either run from a git repo or specify --repo explicitly")
        raise typer.Exit(1) from e
    return repo_url


def _print_task_summary(task: dict) -> None:
    console.print(f"  Status: {task['status']}")
    console.print(f"  Repository: {task['repo_url']}")
    console.print(f"  Agent: {task['selected_agent']}")
    if task.get("branch_name"):
        console.print(f"  Branch: [cyan]{task['branch_name']}[/cyan]")


@task_app.command("create")
def create_task(
    prompt: str = typer.Argument(..., help="Natural language prompt for the task"),
    repo: str = typer.Option(
        None, "--repo", help="Repository URL or org/name (defaults to current git repo)"
    ),
    agent: str = typer.Option("claude", "--agent", "-a", help="Coding agent to run"),
    model: str = typer.Option(None, "--model", "-m", help="Model hint for the agent"),
    install: bool = typer.Option(
        False, "--install", help="Install project dependencies first"
    ),
    keep_alive: bool = typer.Option(
        False, "--keep-alive", help="Keep the sandbox running for follow-ups"
    ),
    max_duration: int = typer.Option(
        None, "--max-duration", help="Sandbox lifetime in minutes"
    ),
):
    """Create a new task."""
    task = _call(
        ApiClientService.create_task,
        prompt,
        _resolve_repo(repo),
        selected_agent=agent,
        selected_model=model,
        install_dependencies=install,
        max_duration=max_duration,
        keep_alive=keep_alive,
    )

    console.print(f"[green]✓[/green] Task created: [bold]{task['id']}[/bold]")
    _print_task_summary(task)


@task_app.command("list")
def list_tasks(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of tasks to show"),
):
    """List recent tasks."""
    data = _call(ApiClientService.list_tasks, limit=limit)
    tasks = data["tasks"]

    if not tasks:
        console.print("[yellow]No tasks found[/yellow]")
        return

    table = Table(title=f"Recent Tasks (showing {len(tasks)} of {data['total']})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Progress", justify="right")
    table.add_column("Prompt", style="white")
    table.add_column("Created", style="dim")

    for task in tasks:
        prompt = (
            task["prompt"][:50] + "..." if len(task["prompt"]) > 50 else task["prompt"]
        )
        table.add_row(
            task["id"],
            task["status"],
            f"{task['progress']}%",
            prompt,
            task["created_at"][:10],
        )

    console.print(table)


@task_app.command("get")
def get_task(task_id: str = typer.Argument(..., help="Task ID")):
    """Get task details."""
    task = _call(ApiClientService.get_task, task_id)

    created = datetime.fromisoformat(task["created_at"].replace("Z", "+00:00"))
    updated = datetime.fromisoformat(task["updated_at"].replace("Z", "+00:00"))
    duration = updated - created

    console.print(f"[bold]Task {task['id']}[/bold]")
    _print_task_summary(task)
    console.print(f"  Progress: {task['progress']}%")
    console.print(f"  Created: {task['created_at']}")
    console.print(f"  Duration: {duration.total_seconds():.1f}s")

    if task.get("sandbox_url"):
        console.print(f"  Sandbox: {task['sandbox_url']}")
    if task.get("pr_url"):
        console.print(f"  Pull request: {task['pr_url']} ({task.get('pr_status')})")
    if task.get("error"):
        console.print(f"  [red]Error:[/red] {task['error']}")

    console.print(f"\n[bold]Prompt:[/bold]\n{task['prompt']}")

    for message in task.get("messages", []):
        console.print(f"\n[bold]{message['role']}:[/bold]\n{message['content']}")


@task_app.command("logs")
def get_logs(task_id: str = typer.Argument(..., help="Task ID")):
    """Get task logs."""
    task = _call(ApiClientService.get_task, task_id)
    logs = task["logs"]

    if not logs:
        console.print("[yellow]No logs found[/yellow]")
        return

    console.print(f"[bold]Logs for task {task_id}[/bold] ({len(logs)} entries)\n")
    for entry in logs:
        style = LEVEL_STYLES.get(entry["level"], "white")
        console.print(
            f"[dim]{entry['timestamp']}[/dim] [{style}]{escape(entry['message'])}[/{style}]",
            highlight=False,
        )


@task_app.command("wait")
def wait_task(
    task_id: str = typer.Argument(..., help="Task ID"),
    timeout: int = typer.Option(600, "--timeout", "-t", help="Timeout in seconds"),
):
    """Wait for task to finish."""
    start_time = time.time()

    while True:
        if time.time() - start_time > timeout:
            console.print(f"[red]✗[/red] Timeout after {timeout}s")
            raise typer.Exit(1)

        task = _call(ApiClientService.get_task, task_id)
        status = task["status"]
        console.print(f"Status: {status} ({task['progress']}%)...", end="\r")

        if status in TERMINAL_STATUSES:
            console.print()
            if status == "COMPLETED":
                console.print("[green]✓[/green] Task completed")
            else:
                console.print(f"[red]✗[/red] Task {status}")
                if task.get("error"):
                    console.print(f"  {task['error']}")
                raise typer.Exit(1)
            break

        time.sleep(5)


@task_app.command("cancel")
def cancel_task(task_id: str = typer.Argument(..., help="Task ID")):
    """Request cancellation of a task."""
    task = _call(ApiClientService.cancel_task, task_id)
    console.print(f"[green]✓[/green] Cancellation requested (status: {task['status']})")


@task_app.command("continue")
def continue_task(
    task_id: str = typer.Argument(..., help="Task ID"),
    message: str = typer.Argument(..., help="Follow-up instruction"),
    model: str = typer.Option(None, "--model", "-m", help="Model hint for the agent"),
):
    """Send a follow-up instruction to a kept-alive task."""
    _call(ApiClientService.continue_task, task_id, message, selected_model=model)
    console.print(f"[green]✓[/green] Follow-up queued for task [bold]{task_id}[/bold]")


@task_app.command("retry")
def retry_task(task_id: str = typer.Argument(..., help="Failed or cancelled task ID")):
    """Retry a failed or cancelled task as a new task."""
    task = _call(ApiClientService.retry_task, task_id)
    console.print(f"[green]✓[/green] Retry task created: [bold]{task['id']}[/bold]")
    console.print(f"  Parent: [dim]{task_id}[/dim]")
    _print_task_summary(task)


@pr_app.command("create")
def create_pr(
    task_id: str = typer.Argument(..., help="Task ID"),
    title: str = typer.Option(..., "--title", help="Pull request title"),
    body: str = typer.Option("", "--body", help="Pull request body"),
    base: str = typer.Option(
        None, "--base", help="Base branch (defaults to the repository default)"
    ),
):
    """Open a pull request from the task's branch."""
    task = _call(
        ApiClientService.pull_request_action,
        task_id,
        "pr",
        {"title": title, "body": body, "base_branch": base},
    )
    console.print(f"[green]✓[/green] Pull request created: {task['pr_url']}")


@pr_app.command("merge")
def merge_pr(
    task_id: str = typer.Argument(..., help="Task ID"),
    method: str = typer.Option(
        "squash", "--method", help="Merge method: merge, squash or rebase"
    ),
):
    """Merge the task's pull request."""
    task = _call(
        ApiClientService.pull_request_action,
        task_id,
        "merge-pr",
        {"merge_method": method},
    )
    console.print(f"[green]✓[/green] Pull request merged ({task['pr_merge_commit_sha']})")


@pr_app.command("close")
def close_pr(task_id: str = typer.Argument(..., help="Task ID")):
    """Close the task's pull request."""
    task = _call(ApiClientService.pull_request_action, task_id, "close-pr")
    console.print(f"[green]✓[/green] Pull request {task['pr_status']}")


@pr_app.command("reopen")
def reopen_pr(task_id: str = typer.Argument(..., help="Task ID")):
    """Reopen the task's pull request."""
    task = _call(ApiClientService.pull_request_action, task_id, "reopen-pr")
    console.print(f"[green]✓[/green] Pull request {task['pr_status']}")


@pr_app.command("sync")
def sync_pr(task_id: str = typer.Argument(..., help="Task ID")):
    """Refresh the pull request status from GitHub."""
    task = _call(ApiClientService.pull_request_action, task_id, "sync-pr")
    console.print(f"Pull request {task['pr_url']}: [bold]{task['pr_status']}[/bold]")


if __name__ == "__main__":
    app()
