"""
CLI subcommands for the keyword response table.

Usage:
    wabot responses list
    wabot responses set <keyword> <reply>
    wabot responses delete <keyword>
"""

from urllib.parse import quote

import typer

from wabot.cli._http import _http_delete, _http_get, _http_put

responses_app = typer.Typer(help="View and edit canned responses")


@responses_app.command("list")
def responses_list():
    """List every keyword and its reply."""
    data = _http_get("/responses")
    responses = data.get("responses", [])
    if not responses:
        typer.echo("No responses configured.")
        return

    for entry in responses:
        typer.echo(f"{entry['keyword']}: {entry['reply']}")


@responses_app.command("set")
def responses_set(
    keyword: str = typer.Argument(help="Trigger keyword"),
    reply: str = typer.Argument(help="Reply text"),
):
    """Create or replace the reply for a keyword."""
    data = _http_put(f"/responses/{quote(keyword, safe='')}", data={"reply": reply})
    typer.echo(f"✅ Set '{data.get('keyword', keyword)}'")


@responses_app.command("delete")
def responses_delete(
    keyword: str = typer.Argument(help="Trigger keyword"),
):
    """Remove a keyword from the response table."""
    _http_delete(f"/responses/{quote(keyword, safe='')}")
    typer.echo(f"🗑️  Deleted '{keyword}'")
