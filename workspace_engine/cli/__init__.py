"""
Command Line Interface for the workspace engine.
"""

from pathlib import Path

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..errors import EngineError

app = typer.Typer(help="Workspace Engine - installs and runs workspace workflows and apps")
console = Console()

ACTION_STYLE = {
    "present": "🟢",
    "installed": "✅",
    "failed": "❌",
    "skipped": "🟠",
}


@app.command()
def serve(
    port: int = typer.Option(None, help="Port to run the API server on"),
    host: str = typer.Option(None, help="Host to bind the server to"),
    dev: bool = typer.Option(False, help="Reload on code changes"),
):
    """Start the engine API server."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    rprint(Panel.fit("🏗️ Starting Workspace Engine", style="bold blue"))
    console.print(f"🚀 Listening on http://{host}:{port}")
    uvicorn.run("workspace_engine.main:app", host=host, port=port, reload=dev)


@app.command()
def check_update():
    """Run one update cycle against the workspace service."""
    from ..context import build_context
    from ..engine.updates import UpdateManager

    try:
        ctx = build_context()
    except EngineError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)

    applied = UpdateManager(ctx).check_and_update()
    if applied:
        console.print(f"✅ Applied updates: {', '.join(applied)}")
    else:
        console.print("No updates applied")


@app.command()
def deps(
    path: Path = typer.Argument(..., help="Artifact directory holding workflow.yml"),
):
    """Check and install the packages an artifact declares."""
    from ..engine.dependencies import DependencyResolver
    from ..engine.process_runner import SubprocessRunner

    report = DependencyResolver(SubprocessRunner()).resolve(path)
    if not report.manifest_found:
        console.print(f"No workflow.yml in {path}")
        return

    table = Table(title=f"Dependencies of {path}", show_header=True, header_style="bold magenta")
    table.add_column("Package", style="cyan")
    table.add_column("Type", style="yellow")
    table.add_column("Result", style="green")
    table.add_column("Details")

    for outcome in report.outcomes + report.soft_failures:
        table.add_row(
            outcome.name,
            outcome.kind,
            f"{ACTION_STYLE.get(outcome.action, '❓')} {outcome.action}",
            outcome.message,
        )
    console.print(table)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command()
def history(limit: int = typer.Option(5, help="Number of workflows to show")):
    """List the most recently executed workflows."""
    from ..context import build_context
    from ..db.services import WorkflowService

    try:
        ctx = build_context()
    except EngineError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)

    db = ctx.session()
    try:
        workflows = WorkflowService(db).history(limit)
    finally:
        db.close()

    if not workflows:
        console.print("No workflows executed yet")
        return

    table = Table(title="Recent Workflows", show_header=True, header_style="bold cyan")
    table.add_column("Name", style="yellow")
    table.add_column("Status", style="green")
    table.add_column("Path")
    table.add_column("Last run", style="blue")
    for workflow in workflows:
        table.add_row(
            workflow.name,
            workflow.status,
            workflow.path,
            workflow.timestamp.isoformat() if workflow.timestamp else "",
        )
    console.print(table)


@app.command()
def version():
    """Show version information."""
    from .. import __version__

    rprint(Panel.fit(f"Workspace Engine v{__version__}", style="bold green"))


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
