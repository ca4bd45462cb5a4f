"""
Top-level CLI commands: start, status, qr, reset, send.
"""

import os
from typing import Optional

import typer

from wabot.cli._http import _http_get, _http_post


def configure_logging(verbose: bool = False):
    """Configure logging for the CLI."""
    from wabot.logger import setup_logging

    log_level = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "WARNING")
    setup_logging(level=log_level)


def start(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to listen on"),
):
    """Run the bot server in the foreground."""
    from wabot.server import main as run_server

    run_server(host=host, port=port)


def status():
    """Show the WhatsApp connection state."""
    data = _http_get("/status")
    icon = "🟢" if data.get("connected") else "🔴"
    typer.echo(f"{icon} Session '{data.get('session_id')}': {data.get('state')}")
    typer.echo(f"   Uptime: {data.get('uptime')}s")
    if data.get("qr_available"):
        typer.echo("   A pairing QR code is waiting (run `wabot qr`).")
    if data.get("logged_out"):
        typer.echo("   Logged out. Run `wabot reset` to pair again.")


def qr():
    """Print the pending pairing QR payload."""
    data = _http_get("/qr")
    code = data.get("qrCode")
    if not code:
        typer.echo(data.get("message", "No QR code available"))
        return
    typer.echo(code)


def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Discard the WhatsApp session and start a fresh pairing."""
    if not yes:
        typer.confirm(
            "This logs the bot out and deletes the stored session. Continue?",
            abort=True,
        )

    data = _http_post("/session/reset")
    typer.echo("✅ Session reset. Scan the new QR code (`wabot qr`) to pair again.")
    if not data.get("store_cleared", True):
        typer.echo("⚠️  The stored session could not be cleared.")


def send(
    number: str = typer.Argument(help="Phone number or JID"),
    message: str = typer.Argument(help="Text to send"),
):
    """Send a text message through the bot."""
    _http_post("/send-message", data={"number": number, "message": message})
    typer.echo(f"✅ Message sent to {number}")


def register_commands(app: typer.Typer):
    app.command()(start)
    app.command()(status)
    app.command()(qr)
    app.command()(reset)
    app.command()(send)
