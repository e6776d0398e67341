"""Typer CLI for Courier-Engine."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console

app = typer.Typer(name="courier", help="Courier-Engine: webhook dispatch and delivery")
console = Console()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Courier-Engine API server."""
    import uvicorn
    from courier_engine.app import create_app

    console.print(f"[bold green]Starting Courier-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


async def _run_worker() -> None:
    from courier_engine.common.config import get_settings
    from courier_engine.common.logging import setup_logging
    from courier_engine.deps import get_db, get_worker_pool

    setup_logging(get_settings().log_level)
    db = get_db()
    await db.init()
    await db.create_all()
    pool = get_worker_pool()
    await pool.start()
    try:
        await pool.wait()
    finally:
        await pool.stop()
        await db.close()


@app.command()
def worker():
    """Run the delivery worker pool until interrupted."""
    from courier_engine.common.config import get_settings

    settings = get_settings()
    if settings.queue_backend == "memory":
        console.print(
            "[bold yellow]Warning:[/bold yellow] the memory queue is not shared "
            "with the API process; use COURIER_QUEUE_BACKEND=database"
        )
    console.print(
        f"[bold green]Starting delivery workers (concurrency={settings.worker_concurrency})[/bold green]"
    )
    try:
        asyncio.run(_run_worker())
    except KeyboardInterrupt:
        console.print("Stopped")


@app.command()
def sign(
    body_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File with the raw request body"),
    secret: str = typer.Option(..., envvar="COURIER_SIGNING_SECRET", help="Endpoint signing secret"),
    signature: str = typer.Option(None, help="Verify this signature instead of printing one"),
):
    """Compute or verify the X-Webhook-Signature-256 value for a body."""
    from courier_engine.deliveries.signing import signature_header, verify_signature

    body = body_file.read_bytes()
    if signature is None:
        console.print(f"[bold]{signature_header(body, secret)}[/bold]")
        return
    if verify_signature(body, secret, signature):
        console.print("[bold green]VALID[/bold green]")
    else:
        console.print("[bold red]INVALID[/bold red] — signature mismatch")
        raise typer.Exit(1)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Courier-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] — v{data['version']}")
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
