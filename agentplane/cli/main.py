"""agentplane CLI: run the control plane and inspect workers."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

import typer
from rich.console import Console
from rich.table import Table

from agentplane import __version__
from agentplane.config import settings

console = Console()

app = typer.Typer(
    name="agentplane",
    help="agentplane -- control plane for agent worker processes.",
    no_args_is_help=True,
)


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)


@app.command("serve")
def serve(
    host: str = typer.Option(None, "--host", help="Bind address"),
    port: int = typer.Option(None, "--port", "-p", help="Control API port"),
):
    """Start the control API, tool gateway and worker supervisor."""
    from agentplane.serve import main

    cfg = settings.model_copy(update={
        k: v for k, v in {"host": host, "port": port}.items() if v is not None
    })
    console.print(f"[bold]agentplane[/bold] {__version__} on {cfg.host}:{cfg.port}")
    try:
        run_async(main(cfg))
    except KeyboardInterrupt:
        console.print("[dim]Stopped.[/dim]")


@app.command("ps")
def ps():
    """List workers and their status."""
    from agentplane.serve import open_store

    async def _list():
        store = await open_store(settings)
        try:
            return await store.list_workers()
        finally:
            await store.close()

    workers = run_async(_list())
    if not workers:
        console.print("[dim]No workers configured.[/dim]")
        return

    table = Table(title="Workers")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("Provider", style="blue")
    table.add_column("Model")
    table.add_column("Port", justify="right", style="yellow")
    table.add_column("Status", style="green")

    for w in workers:
        style = "bold green" if w.status.value == "running" else "dim"
        status = w.status.value
        if w.status_reason and w.status_reason != status:
            status = f"{status} ({w.status_reason})"
        table.add_row(
            w.id,
            w.name,
            w.provider,
            w.model,
            str(w.port) if w.port else "-",
            f"[{style}]{status}[/{style}]",
        )

    console.print(table)


@app.command("version")
def version():
    """Show the installed version."""
    console.print(f"agentplane {__version__}")


if __name__ == "__main__":
    app()
