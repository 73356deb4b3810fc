from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from quillsync.core.config import DEFAULT_CONFIG_PATH, load_config
from quillsync.core.errors import QuillSyncError
from quillsync.service import DataService, build_service

app = typer.Typer(add_completion=False)
console = Console()


def _build_service(path: Path = DEFAULT_CONFIG_PATH) -> DataService:
    cfg = load_config(path)
    service = build_service(cfg)
    service.store.initialize()
    return service


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _exit_on_failure(summary: dict) -> None:
    if summary.get("status") in ("failed", "offline", "skipped_busy"):
        raise typer.Exit(2)
    if summary.get("fatal_error") or int(summary.get("errors", 0) or 0) > 0:
        raise typer.Exit(2)


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml."""
    cfg = load_config(path)
    _print_json(cfg.model_dump())


@app.command()
def status(path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config")):
    """Show sync status and pending work."""
    cfg = load_config(path)
    service = _build_service(path)
    pending = service.list_pending()
    payload = service.status_payload()

    table = Table(title="QuillSync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(path))
    table.add_row("sync_enabled", "yes" if cfg.sync.enabled else "no")
    table.add_row("signed_in", "yes" if service.auth.is_signed_in() else "no")
    table.add_row("status", payload["status"])
    table.add_row("needs_manual_sync", "yes" if payload["needs_manual_sync"] else "no")
    table.add_row("offline_reason", str(payload["offline_reason"] or "-"))
    table.add_row("pending_books", str(len(pending.books)))
    table.add_row("pending_chapters", str(len(pending.chapters)))
    table.add_row("pending_deletions", str(len(pending.deletions)))
    table.add_row("last_sync_attempt", str(payload["last_sync_attempt"] or "-"))
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command()
def books(path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config")):
    """List local books."""
    service = _build_service(path)
    table = Table(title="Books")
    table.add_column("Name")
    table.add_column("Chapters")
    table.add_column("State")
    for name in service.list_books():
        record = service.store.get_book(name)
        if record is None:
            continue
        table.add_row(name, str(len(service.list_chapter_files(name))), record.sync_state.value)
    console.print(table)


@app.command()
def chapters(
    book: str = typer.Argument(..., help="Book name."),
    path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config"),
):
    """List chapter files of a book."""
    service = _build_service(path)
    if service.store.get_book(book) is None:
        console.print(f"[red]book_not_found: {book}[/red]")
        raise typer.Exit(1)
    table = Table(title=f"Chapters of {book}")
    table.add_column("File")
    table.add_column("Chars")
    table.add_column("State")
    for record in service.store.list_chapters(book):
        table.add_row(record.file_name, str(len(record.content)), record.sync_state.value)
    console.print(table)


@app.command()
def push(path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config")):
    """Push pending local changes and print summary JSON."""
    service = _build_service(path)
    summary = asyncio.run(service.force_sync_to_cloud())
    _print_json(summary)
    _exit_on_failure(summary)


@app.command()
def pull(path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config")):
    """Pull remote changes and print summary JSON."""
    service = _build_service(path)
    summary = asyncio.run(service.force_sync_from_cloud())
    _print_json(summary)
    _exit_on_failure(summary)


@app.command("force-sync")
def force_sync(path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config")):
    """Push then pull, print both summaries."""
    service = _build_service(path)
    result = asyncio.run(service.force_sync())
    _print_json(result)
    _exit_on_failure(result)


@app.command()
def conflicts(
    limit: int = typer.Option(20, "--limit", min=1),
    path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config"),
):
    """Show local edits that a pull overwrote."""
    service = _build_service(path)
    table = Table(title="Conflicts (remote won)")
    table.add_column("ID")
    table.add_column("When")
    table.add_column("Kind")
    table.add_column("Book")
    table.add_column("File")
    table.add_column("Discarded local (head)")
    for c in service.list_conflicts(limit=limit):
        table.add_row(str(c.id), c.created_at, c.kind, c.book_name, c.file_name or "-", c.discarded_local[:60])
    console.print(table)


@app.command()
def runs(
    limit: int = typer.Option(20, "--limit", min=1),
    path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config"),
):
    """Show recent sync run history."""
    service = _build_service(path)
    _print_json(service.store.list_sync_runs(limit=limit))


@app.command("auth-import")
def auth_import(
    access_token: str = typer.Option("", "--access-token"),
    refresh_token: str = typer.Option("", "--refresh-token"),
    expires_in: int = typer.Option(3600, "--expires-in", min=1),
    path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config"),
):
    """Save OAuth tokens obtained elsewhere into the token file."""
    cfg = load_config(path)
    service = build_service(cfg)
    try:
        service.auth.import_tokens(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in)
    except (ValueError, QuillSyncError) as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _print_json(
        {
            "ok": True,
            "saved_to": cfg.auth.token_file,
            "has_access_token": bool(access_token),
            "has_refresh_token": bool(refresh_token),
            "signed_in": service.auth.is_signed_in(),
        }
    )


@app.command("auth-signout")
def auth_signout(path: Path = typer.Option(DEFAULT_CONFIG_PATH, "--config")):
    """Remove the token file."""
    cfg = load_config(path)
    build_service(cfg).auth.sign_out()
    _print_json({"ok": True, "removed": cfg.auth.token_file})


def main():
    app()


if __name__ == "__main__":
    main()
