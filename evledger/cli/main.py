# evledger/cli/main.py
"""
CLI for operating and inspecting a persistent EV energy ledger.
"""

import os
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from evledger.core.errors import LedgerError
from evledger.core.hashing import state_digest, vehicle_key
from evledger.core.types import event_to_dict
from evledger.engine.ledger import LedgerEngine
from evledger.storage import SQLiteStorage
from evledger.verify.verifier import StateVerifier

app = typer.Typer(
    name="evledger",
    help="Register vehicles, settle charging sessions and move energy credits",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def get_db_path(db_flag: Optional[Path] = None) -> Path:
    """Resolve DB path in this order:
    1. --db flag
    2. EVLEDGER_DB_PATH environment variable
    3. Default: ~/.evledger/evledger.db
    """
    if db_flag:
        path = db_flag.resolve()
    else:
        env_path = os.environ.get("EVLEDGER_DB_PATH")
        if env_path:
            path = Path(env_path).resolve()
        else:
            path = Path.home() / ".evledger" / "evledger.db"

    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _resolve(ctx: typer.Context, db: Optional[Path]) -> Path:
    if db is None and ctx.obj:
        db = ctx.obj.get("db")
    return get_db_path(db)


def _require_existing(db_path: Path) -> None:
    if not db_path.exists():
        console.print(f"[red]Database file not found: {escape(str(db_path))}[/]")
        console.print("[yellow]To get started:[/]")
        console.print("  • Register a vehicle first (creates the DB)")
        console.print("  • Set env var: export EVLEDGER_DB_PATH=/path/to/ledger.db")
        console.print("  • Or use --db: evledger stats --db /custom/path.db")
        raise typer.Exit(1)


def _open_engine(db_path: Path) -> LedgerEngine:
    try:
        return LedgerEngine(storage=SQLiteStorage(db_path))
    except (sqlite3.Error, ValueError) as e:
        console.print(f"[red]Failed to open database: {escape(str(e))}[/]")
        console.print("[yellow]The file may be corrupted or not a valid ledger DB.[/]")
        raise typer.Exit(1)


def _reject(e: LedgerError) -> None:
    console.print(f"[red]{e.kind}: {escape(str(e))}[/]")
    raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="Path to SQLite database (overrides EVLEDGER_DB_PATH env var)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log ledger activity"),
):
    """Operate an EV energy ledger."""
    ctx.obj = {"db": db}
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


@app.command()
def register(
    ctx: typer.Context,
    vehicle_id: str = typer.Argument(..., help="Vehicle key (see `vehicle-key`)"),
    model: str = typer.Option(..., "--model", help="Vehicle model"),
    battery: str = typer.Option(..., "--battery", help="Battery capacity, e.g. 75kWh"),
    caller: str = typer.Option(..., "--as", help="Identity registering (becomes owner)"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Register a vehicle under the calling identity."""
    engine = _open_engine(_resolve(ctx, db))
    try:
        engine.register_vehicle(vehicle_id, model, battery, caller, utc_now())
    except LedgerError as e:
        _reject(e)
    finally:
        engine.close()
    console.print(f"[green]Registered {escape(vehicle_id)} for {escape(caller)}[/]")


@app.command("vehicle-key")
def vehicle_key_cmd(vin: str = typer.Argument(..., help="Vehicle identification number")):
    """Print the vehicle key derived from a VIN."""
    try:
        console.print(vehicle_key(vin))
    except ValueError as e:
        console.print(f"[red]{escape(str(e))}[/]")
        raise typer.Exit(1)


def _print_settlement(settlement) -> None:
    s = settlement.session
    console.print(
        f"[green]Session {s.session_id} recorded: {s.energy_amount} kWh, cost {s.cost}[/]"
    )
    if settlement.refund:
        console.print(f"  Refunded {settlement.refund} to caller")


@app.command()
def charge(
    ctx: typer.Context,
    vehicle_id: str = typer.Argument(..., help="Vehicle key"),
    energy: int = typer.Option(..., "--energy", help="Energy delivered (kWh)"),
    cost: int = typer.Option(..., "--cost", help="Price of the session"),
    funds: Optional[int] = typer.Option(None, "--funds", help="Value attached (default: cost)"),
    caller: str = typer.Option(..., "--as", help="Station identity recording the session"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Record a charging session; the caller is the station."""
    engine = _open_engine(_resolve(ctx, db))
    try:
        settlement = engine.record_charging_session(
            vehicle_id, energy, cost, caller, cost if funds is None else funds, utc_now()
        )
    except LedgerError as e:
        _reject(e)
    finally:
        engine.close()
    _print_settlement(settlement)


@app.command("charge-owner")
def charge_owner(
    ctx: typer.Context,
    vehicle_id: str = typer.Argument(..., help="Vehicle key"),
    station: str = typer.Option(..., "--station", help="Identity that supplied the energy"),
    energy: int = typer.Option(..., "--energy", help="Energy delivered (kWh)"),
    cost: int = typer.Option(..., "--cost", help="Price of the session"),
    funds: Optional[int] = typer.Option(None, "--funds", help="Value attached (default: cost)"),
    caller: str = typer.Option(..., "--as", help="Vehicle owner"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Record a charging session as the vehicle owner, naming the station."""
    engine = _open_engine(_resolve(ctx, db))
    try:
        settlement = engine.record_owner_charging_session(
            vehicle_id, energy, cost, station, caller,
            cost if funds is None else funds, utc_now()
        )
    except LedgerError as e:
        _reject(e)
    finally:
        engine.close()
    _print_settlement(settlement)


@app.command("add-credits")
def add_credits(
    ctx: typer.Context,
    vehicle_id: str = typer.Argument(..., help="Vehicle key"),
    amount: int = typer.Argument(..., help="Credits to issue"),
    caller: str = typer.Option(..., "--as", help="Vehicle owner"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Issue energy credits to an owned vehicle."""
    engine = _open_engine(_resolve(ctx, db))
    try:
        engine.add_energy_credits(vehicle_id, amount, caller)
        balance = engine.get_available_energy_credits(vehicle_id)
    except LedgerError as e:
        _reject(e)
    finally:
        engine.close()
    console.print(f"[green]Added {amount} credits, balance {balance}[/]")


@app.command()
def transfer(
    ctx: typer.Context,
    from_vehicle: str = typer.Argument(..., help="Source vehicle key"),
    to_vehicle: str = typer.Argument(..., help="Destination vehicle key"),
    amount: int = typer.Argument(..., help="Credits to move"),
    caller: str = typer.Option(..., "--as", help="Owner of the source vehicle"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Move energy credits between two vehicles."""
    engine = _open_engine(_resolve(ctx, db))
    try:
        engine.transfer_energy_credits(from_vehicle, to_vehicle, amount, caller)
    except LedgerError as e:
        _reject(e)
    finally:
        engine.close()
    console.print(f"[green]Transferred {amount} credits[/]")


@app.command()
def credits(
    ctx: typer.Context,
    vehicle_id: str = typer.Argument(..., help="Vehicle key"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show a vehicle's energy credit balance."""
    db_path = _resolve(ctx, db)
    _require_existing(db_path)
    engine = _open_engine(db_path)
    try:
        balance = engine.get_available_energy_credits(vehicle_id)
    except LedgerError as e:
        _reject(e)
    finally:
        engine.close()
    console.print(f"Credits: {balance}")


@app.command()
def vehicle(
    ctx: typer.Context,
    vehicle_id: str = typer.Argument(..., help="Vehicle key"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show a registered vehicle."""
    db_path = _resolve(ctx, db)
    _require_existing(db_path)
    engine = _open_engine(db_path)
    try:
        info = engine.get_vehicle_info(vehicle_id)
    except LedgerError as e:
        _reject(e)
    finally:
        engine.close()

    table = Table(title="Vehicle", show_header=False)
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Key", escape(info.vehicle_id))
    table.add_row("Model", escape(info.model))
    table.add_row("Battery", escape(info.battery_capacity))
    table.add_row("Owner", escape(info.owner))
    table.add_row("Energy (kWh)", str(info.total_energy_consumed))
    table.add_row("Registered", escape(info.registered_at))
    console.print(table)


@app.command()
def vehicles(
    ctx: typer.Context,
    owner: str = typer.Argument(..., help="Owner identity"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """List vehicles owned by an identity, in registration order."""
    db_path = _resolve(ctx, db)
    _require_existing(db_path)
    engine = _open_engine(db_path)
    try:
        owned = engine.get_owner_vehicles(owner)
    finally:
        engine.close()

    if not owned:
        console.print(f"[yellow]No vehicles registered to '{escape(owner)}'[/]")
        return
    for vid in owned:
        console.print(escape(vid))


@app.command()
def session(
    ctx: typer.Context,
    session_id: int = typer.Argument(..., help="Charging session id"),
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show one charging session."""
    db_path = _resolve(ctx, db)
    _require_existing(db_path)
    engine = _open_engine(db_path)
    try:
        s = engine.get_charging_session(session_id)
    except LedgerError as e:
        _reject(e)
    finally:
        engine.close()

    console.print(f"[bold cyan]{s.session_id:4d} | {escape(s.timestamp)} | {escape(s.vehicle_id)}[/]")
    console.print(f"  station {escape(s.station)} · {s.energy_amount} kWh · cost {s.cost}")


@app.command()
def stats(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Show aggregate counters and the state digest."""
    db_path = _resolve(ctx, db)
    _require_existing(db_path)
    engine = _open_engine(db_path)
    try:
        vehicles_registered, sessions_recorded = engine.get_contract_stats()
        digest = state_digest(engine.state)
        event_count = len(engine.get_events())
    finally:
        engine.close()

    table = Table(title="Ledger Stats")
    table.add_column("Vehicles")
    table.add_column("Sessions")
    table.add_column("Events")
    table.add_row(str(vehicles_registered), str(sessions_recorded), str(event_count))
    console.print(table)
    console.print(f"State digest: {digest}")


@app.command()
def events(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent events to show"),
):
    """Show the most recent ledger notifications."""
    db_path = _resolve(ctx, db)
    _require_existing(db_path)

    try:
        storage = SQLiteStorage(db_path)
    except sqlite3.Error as e:
        console.print(f"[red]Failed to open database: {escape(str(e))}[/]")
        raise typer.Exit(1)

    try:
        recent = storage.query_events(limit=limit)
        total = storage.get_event_count()
    finally:
        storage.close()

    if not recent:
        console.print("[yellow]No events recorded yet.[/]")
        return

    first = total - len(recent) + 1
    for seq, event in enumerate(recent, start=first):
        fields = {k: v for k, v in event_to_dict(event).items() if k != "kind"}
        detail = " ".join(f"{k}={v}" for k, v in fields.items())
        console.print(f"[bold cyan]{seq:4d} | {event.kind}[/]")
        console.print(f"  {escape(detail)}")


@app.command()
def verify(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
):
    """Check every ledger invariant against the stored snapshot."""
    db_path = _resolve(ctx, db)
    _require_existing(db_path)

    try:
        storage = SQLiteStorage(db_path)
    except sqlite3.Error as e:
        console.print(f"[red]Failed to open database: {escape(str(e))}[/]")
        raise typer.Exit(1)

    try:
        result = StateVerifier().verify_from_storage(storage)
    finally:
        storage.close()

    if result.is_valid:
        console.print("[green]✓ Ledger state is valid[/]")
        console.print(f"  {result.message}")
    else:
        console.print("[red]✗ Ledger verification failed[/]")
        for failure in result.failures:
            console.print(f"  • [{escape(failure.key)}] {failure.category}: {escape(failure.message)}")
        raise typer.Exit(1)


@app.command()
def export(
    ctx: typer.Context,
    db: Optional[Path] = typer.Option(None, "--db", hidden=True),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (default: events.jsonl)"),
):
    """Export the notification log as JSONL (one event per line)."""
    db_path = _resolve(ctx, db)
    _require_existing(db_path)

    try:
        storage = SQLiteStorage(db_path)
    except sqlite3.Error as e:
        console.print(f"[red]Failed to open database: {escape(str(e))}[/]")
        raise typer.Exit(1)

    try:
        log = storage.load_events()
    finally:
        storage.close()

    if not log:
        console.print("[yellow]No events recorded yet.[/]")
        raise typer.Exit(0)

    out_path = output or Path("events.jsonl")
    with open(out_path, "w", encoding="utf-8") as f:
        for event in log:
            json.dump(event_to_dict(event), f, separators=(",", ":"))
            f.write("\n")

    console.print(f"[green]Exported {len(log)} events to {escape(str(out_path))}[/]")


if __name__ == "__main__":
    app()
