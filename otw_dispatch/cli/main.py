"""
CLI interface for OTW Dispatch.

Provides command-line access to quoting and the delivery request lifecycle.
"""

import sys
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from otw_dispatch.config.loader import DispatchConfig, load_dispatch_config
from otw_dispatch.core.errors import DispatchError
from otw_dispatch.core.logging import configure_logging
from otw_dispatch.core.pricing import MembershipTier, ServiceType
from otw_dispatch.core.rate_limiter import RateLimiter
from otw_dispatch.service import RequestService
from otw_dispatch.storage.models import DeliveryRequest
from otw_dispatch.storage.repository import RequestRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@dataclass
class CLIState:
    config: DispatchConfig
    db_path: str


def _state(ctx: typer.Context) -> CLIState:
    return ctx.obj


@lru_cache(maxsize=None)
def shared_rate_limiter(max_keys: int) -> RateLimiter:
    """Limiter used by every command run in this process."""
    return RateLimiter(max_keys=max_keys)


def get_service(state: CLIState) -> RequestService:
    """Build a service over the configured database."""
    config = state.config
    return RequestService(
        repository=RequestRepository(state.db_path),
        rate_limiter=shared_rate_limiter(config.rate_limit.max_keys),
        pricing=config.pricing,
        rate_limit=config.rate_limit,
    )


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML configuration file"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON"),
):
    """OTW Dispatch CLI."""
    try:
        configure_logging(log_level, json_logs)
        dispatch_config = load_dispatch_config(config) if config else DispatchConfig()
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        _fail(e)
    ctx.obj = CLIState(config=dispatch_config, db_path=db or dispatch_config.db_path)

    if ctx.invoked_subcommand is None:
        console.print("OTW Dispatch - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the dispatch database."""
    try:
        initialize_schema(_state(ctx).db_path)
    except DispatchError as e:
        _fail(e)
    console.print("[green]✓[/] Database initialized successfully")


@app.command()
def quote(
    ctx: typer.Context,
    miles: float = typer.Argument(..., help="Trip distance in miles"),
    service_type: ServiceType = typer.Option(ServiceType.FOOD, "--service-type", "-s"),
    tier: MembershipTier = typer.Option(MembershipTier.BASIC, "--tier", "-t"),
    breakdown: bool = typer.Option(False, "--breakdown", "-b", help="Show itemised checkout total"),
):
    """Quote a delivery without creating a request."""
    service = get_service(_state(ctx))
    try:
        if not breakdown:
            console.print(_format_currency(service.quote(miles, service_type, tier)))
            return
        result = service.quote_breakdown(miles, service_type, tier)
    except DispatchError as e:
        _fail(e)

    table = Table(title="Delivery Quote")
    table.add_column("Item")
    table.add_column("Amount", justify="right")
    table.add_row("Base price", _format_currency(result.base_price))
    table.add_row(f"{tier.value} discount", f"-{_format_currency(result.discount)}")
    table.add_row("Delivery quote", _format_currency(result.discounted_price))
    table.add_row("Service fee", _format_currency(result.service_fee))
    table.add_row("[bold]Total[/]", f"[bold]{_format_currency(result.total)}[/]")
    console.print(table)


@app.command()
def submit(
    ctx: typer.Context,
    requester: str = typer.Option(..., "--requester", "-r", help="Requesting customer id"),
    pickup: str = typer.Option(..., "--pickup"),
    dropoff: str = typer.Option(..., "--dropoff"),
    service_type: ServiceType = typer.Option(ServiceType.FOOD, "--service-type", "-s"),
    miles: float = typer.Option(0.0, "--miles", "-m"),
    tier: MembershipTier = typer.Option(MembershipTier.BASIC, "--tier", "-t"),
):
    """Submit a new delivery request."""
    service = get_service(_state(ctx))
    try:
        request = service.submit(requester, pickup, dropoff, service_type, miles=miles, tier=tier)
    except DispatchError as e:
        _fail(e)
    console.print(f"[green]✓[/] Submitted request {request.id} at {_format_currency(request.quoted_price)}")


@app.command()
def assign(ctx: typer.Context, request_id: str, driver_id: str):
    """Assign a driver to a submitted request."""
    service = get_service(_state(ctx))
    try:
        request = service.assign(request_id, driver_id)
    except DispatchError as e:
        _fail(e)
    console.print(f"[green]✓[/] Request {request.id} assigned to {request.driver_id}")


@app.command()
def advance(
    ctx: typer.Context,
    request_id: str,
    status: str = typer.Argument(..., help="Target status, e.g. PICKED_UP"),
    message: Optional[str] = typer.Option(None, "--message"),
):
    """Move a request to its next status."""
    service = get_service(_state(ctx))
    try:
        request = service.advance(request_id, status.upper(), message)
    except DispatchError as e:
        _fail(e)
    console.print(f"[green]✓[/] Request {request.id} is now {request.status.value}")


@app.command()
def cancel(
    ctx: typer.Context,
    request_id: str,
    reason: Optional[str] = typer.Option(None, "--reason"),
):
    """Cancel a request that has not been delivered."""
    service = get_service(_state(ctx))
    try:
        request = service.cancel(request_id, reason)
    except DispatchError as e:
        _fail(e)
    console.print(f"[green]✓[/] Request {request.id} cancelled")


@app.command()
def note(ctx: typer.Context, request_id: str, message: str):
    """Add a note to a request's history."""
    service = get_service(_state(ctx))
    try:
        event = service.add_note(request_id, message)
    except DispatchError as e:
        _fail(e)
    console.print(f"[green]✓[/] Note #{event.seq} added to {request_id}")


@app.command()
def show(ctx: typer.Context, request_id: str):
    """Show a request and its event history."""
    service = get_service(_state(ctx))
    try:
        request = service.get(request_id)
        events = service.history(request_id)
        consistent = service.verify_history(request_id)
    except DispatchError as e:
        _fail(e)

    _display_request(request)

    table = Table(title="History")
    table.add_column("#", justify="right")
    table.add_column("Event")
    table.add_column("Message")
    table.add_column("At")
    for event in events:
        table.add_row(str(event.seq), event.event_type.value, event.message, event.created_at.isoformat())
    console.print(table)

    if not consistent:
        console.print("[yellow]Warning:[/] event history does not replay to the stored status")


@app.command(name="list")
def list_requests(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status", help="Filter by status"),
    limit: int = typer.Option(20, "--limit"),
):
    """List recent requests."""
    service = get_service(_state(ctx))
    try:
        requests = service.list_requests(status.upper() if status else None, limit)
    except DispatchError as e:
        _fail(e)

    if not requests:
        console.print("[dim]No delivery requests found.[/]")
        return

    table = Table(title="Delivery Requests")
    table.add_column("ID", no_wrap=True)
    table.add_column("Status")
    table.add_column("Driver")
    table.add_column("Quote", justify="right")
    for request in requests:
        table.add_row(
            request.id,
            request.status.value,
            request.driver_id or "-",
            _format_currency(request.quoted_price),
        )
    console.print(table)


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.2f}"


def _display_request(request: DeliveryRequest):
    console.print(f"\n[bold]Request:[/bold] {request.id}")
    console.print(f"Status: {request.status.value}")
    console.print(f"Requester: {request.requester_id}")
    console.print(f"Driver: {request.driver_id or '-'}")
    console.print(f"Route: {request.pickup} -> {request.dropoff} ({request.miles:g} mi)")
    console.print(f"Service: {request.service_type.value} / {request.tier.value}")
    console.print(f"Quoted price: {_format_currency(request.quoted_price)}")


if __name__ == "__main__":
    app()
