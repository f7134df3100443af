"""SlippiSheet CLI - track your Slippi ranked rating after every match."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

app = typer.Typer(
    name="slippi-sheet",
    help="SlippiSheet: records your Slippi ranked rating after each match",
    add_completion=False,
)
console = Console()


def async_run(coro):
    """Run async function."""
    return asyncio.run(coro)


def _load_settings():
    """Return the shared settings, exiting cleanly if the config cannot be parsed."""
    from pydantic import ValidationError

    try:
        from src.config import settings
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "config"
        console.print(f"[red]Invalid configuration: {field}: {first['msg']}[/red]")
        console.print("[dim]Fix user-config.json, .env or the SLIPPI_* variables[/dim]")
        raise typer.Exit(1)
    return settings


@app.command()
def watch(
    replay_dir: Optional[Path] = typer.Option(None, "--replay-dir", "-d", help="Slippi replay directory"),
    no_live: bool = typer.Option(False, "--no-live", help="Skip the Dolphin relay, watch replay files only"),
):
    """Detect matches and record the rating after each one."""
    settings = _load_settings()

    from src.config.logging import configure_logging
    from src.core.errors import SlippiSheetError
    from src.core.session_tracker import build_tracker

    overrides: dict = {}
    if replay_dir is not None:
        overrides["replay_dir"] = replay_dir
    if no_live:
        overrides["use_live_stream"] = False
    cfg = settings.model_copy(update=overrides) if overrides else settings

    configure_logging(cfg.log_level, cfg.log_format)
    console.print(
        Panel.fit(
            "[bold blue]SlippiSheet[/bold blue] - tracking ranked sessions",
            subtitle=f"Code: {cfg.connect_code or 'not configured'}",
        )
    )
    console.print("[dim]Press Ctrl+C to exit[/dim]\n")

    async def run_tracker():
        async with build_tracker(cfg) as tracker:
            await tracker.run()

    try:
        async_run(run_tracker())
    except KeyboardInterrupt:
        console.print("\n[dim]SlippiSheet stopped[/dim]")
    except SlippiSheetError as e:
        console.print(f"[red]SlippiSheet stopped: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def rating(
    code: Optional[str] = typer.Option(None, "--code", "-c", help="Connect code (defaults to config)"),
    record: bool = typer.Option(False, "--record", "-r", help="Append the rating to the record sink"),
):
    """Fetch the current rating once."""
    settings = _load_settings()

    from src.config.settings import is_valid_connect_code
    from src.core.errors import SlippiSheetError
    from src.core.session_tracker import build_record_sink
    from src.services import RatingClient, SheetsRecordSink

    connect_code = (code or settings.connect_code or "").strip().upper()
    if not connect_code:
        console.print('[red]Connect code not configured. Run "slippi-sheet setup" first.[/red]')
        raise typer.Exit(1)
    if not is_valid_connect_code(connect_code):
        console.print(f"[red]Invalid connect code format: {connect_code}. Expected format: ABCD#123[/red]")
        raise typer.Exit(1)

    async def fetch():
        async with RatingClient(settings.api_url, connect_code, settings.api_timeout) as client:
            value = await client.fetch_rating()
        appended = None
        if record:
            sink = build_record_sink(settings)
            try:
                appended = await sink.append_rating(value)
            finally:
                if isinstance(sink, SheetsRecordSink):
                    await sink.aclose()
        return value, appended

    try:
        value, appended = async_run(fetch())
    except SlippiSheetError as e:
        console.print(f"[red]Error: {e}[/red]")
        hint = getattr(e, "hint", "")
        if hint:
            console.print(f"[dim]Hint: {hint}[/dim]")
        raise typer.Exit(1)

    console.print(f"[bold]{connect_code}[/bold] rating: [green]{value:.1f}[/green]")
    if appended is True:
        console.print("[green]✓ Rating recorded[/green]")
    elif appended is False:
        console.print("[yellow]No change in rating, nothing recorded[/yellow]")


@app.command()
def status():
    """Show configuration and record state."""
    settings = _load_settings()

    from datetime import datetime

    from src.config.settings import is_valid_connect_code
    from src.core.errors import RecordError
    from src.core.session_dir import month_folder_name
    from src.services import LedgerRecordSink

    console.print(Panel.fit("[bold blue]SlippiSheet Status[/bold blue]"))

    table = Table()
    table.add_column("Component", style="cyan")
    table.add_column("State", style="green", no_wrap=True)
    table.add_column("Detail", style="dim")

    table.add_row(
        "Connect code",
        "✓" if settings.connect_code and is_valid_connect_code(settings.connect_code) else "✗",
        settings.connect_code or "run: slippi-sheet setup",
    )

    month_dir = Path(settings.replay_dir).expanduser() / month_folder_name(datetime.now())
    table.add_row(
        "Replay folder",
        "✓" if month_dir.is_dir() else "✗",
        str(month_dir)[:60],
    )
    table.add_row(
        "Live relay",
        "on" if settings.use_live_stream else "off",
        f"{settings.dolphin_host}:{settings.dolphin_port}",
    )

    if settings.record_backend == "ledger":
        ledger = LedgerRecordSink(settings.ledger_path)
        try:
            rows = async_run(ledger.records())
        except RecordError as e:
            table.add_row("Ledger", "✗", str(e))
        else:
            last = f"{rows[-1].rating:.1f}" if rows else "-"
            table.add_row(
                "Ledger",
                f"{len(rows)} rows" if rows else "empty",
                f"{settings.ledger_path} (last: {last})",
            )
    else:
        table.add_row(
            "Google Sheet",
            "✓" if settings.spreadsheet_id and settings.sheets_access_token else "✗",
            f"{settings.spreadsheet_id or '-'} / {settings.sheet_name}",
        )

    console.print(table)


@app.command()
def setup(
    config_file: Optional[Path] = typer.Option(None, "--config-file", help="Where to write the user config"),
):
    """Interactive setup: connect code, replay folder and record backend."""
    settings = _load_settings()

    from src.config.settings import USER_CONFIG_FILE, is_valid_connect_code

    target = config_file or USER_CONFIG_FILE
    console.print(Panel.fit("[bold blue]SlippiSheet Setup[/bold blue]"))

    connect_code = typer.prompt("Slippi connect code (e.g. ABCD#123)").strip().upper()
    if not is_valid_connect_code(connect_code):
        console.print("[red]Invalid connect code format. Expected format: ABCD#123[/red]")
        raise typer.Exit(1)

    replay_dir = typer.prompt("Slippi replay directory", default=str(settings.replay_dir))
    backend = typer.prompt("Record backend (ledger/sheets)", default=settings.record_backend)
    if backend not in ("ledger", "sheets"):
        console.print(f"[red]Unknown record backend: {backend}[/red]")
        raise typer.Exit(1)

    existing: dict = {}
    if target.exists():
        try:
            existing = json.loads(target.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            console.print(f"[yellow]Ignoring unreadable {target}[/yellow]")

    existing.update(
        {
            "connect_code": connect_code,
            "replay_dir": replay_dir,
            "record_backend": backend,
        }
    )
    if backend == "sheets":
        spreadsheet_id = typer.prompt("Google Spreadsheet ID", default=settings.spreadsheet_id or "")
        if not spreadsheet_id:
            console.print("[red]Spreadsheet ID is required[/red]")
            raise typer.Exit(1)
        existing["spreadsheet_id"] = spreadsheet_id
        existing["sheet_name"] = typer.prompt("Sheet name", default=settings.sheet_name)

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(existing, indent=2), encoding="utf-8")
    except OSError as e:
        console.print(f"[red]Failed to save configuration: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"\n[green]✓ Configuration saved to {target}[/green]")
    console.print("[dim]Next: run 'slippi-sheet watch' to begin tracking your rating[/dim]")
    if backend == "sheets":
        console.print("[dim]Set SLIPPI_SHEETS_ACCESS_TOKEN before starting[/dim]")


if __name__ == "__main__":
    app()
