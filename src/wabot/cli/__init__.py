"""
wabot CLI: operate the WhatsApp bot.

This package splits CLI commands into focused modules:
- main:      start, status, qr, reset, send
- responses: list, set, delete (keyword response table)
"""

import typer

from wabot.cli._http import _http_get, _http_post  # noqa: F401 re-export for test patching
from wabot.cli.main import configure_logging, register_commands
from wabot.cli.responses import responses_app

app = typer.Typer(help="wabot CLI - WhatsApp bot operator tools")


@app.callback()
def main(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging (DEBUG level)"
    ),
):
    """
    wabot CLI - WhatsApp bot operator tools.
    """
    configure_logging(verbose)


register_commands(app)

app.add_typer(responses_app, name="responses")

if __name__ == "__main__":
    app()
