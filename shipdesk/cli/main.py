"""ShipDesk CLI: batch labels and shipment lifecycle from the terminal.

Usage:
    shipdesk orders list                 Orders still waiting for a label
    shipdesk batch run --carrier UPS     Buy labels for eligible orders
    shipdesk shipments list              List shipments
    shipdesk shipments add-event ID ...  Ingest a tracking event
    shipdesk shipments track ID          Pull carrier scans for a shipment
    shipdesk shipments void ID           Void an unused label
    shipdesk intents list --unresolved   Labels needing operator review

Exit codes: 0 success, 1 error or failed jobs, 2 session expired.
"""

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import typer
from rich.console import Console
from rich.markup import escape

from shipdesk import __version__
from shipdesk.cli.output import (
    format_batch_result,
    format_intent_table,
    format_shipment_detail,
    format_shipment_table,
)
from shipdesk.config import ShipDeskConfig, configure_logging, load_config
from shipdesk.db import configure, init_db, new_session
from shipdesk.db.models import UNRESOLVED_INTENT_STATUSES, IntentStatus, NoteType, ShipmentStatus
from shipdesk.errors import DomainError, ValidationError
from shipdesk.services.api_client import ResilientApiClient
from shipdesk.services.batch_orchestrator import BatchDefaults, BatchOrchestrator
from shipdesk.services.carrier_gateway import CarrierGateway
from shipdesk.services.carrier_models import SignatureOption
from shipdesk.services.carrier_services import Carrier, list_services, parse_carrier
from shipdesk.services.errors import ApiError, AuthExpiredError, CarrierServiceError
from shipdesk.services.label_printer import BrowserLabelPrinter, ManifestLabelPrinter
from shipdesk.services.order_source import HttpOrderSource, OrderFilters
from shipdesk.services.shipment_service import ShipmentService, cost_to_cents
from shipdesk.services.shipment_state import validate_transition
from shipdesk.services.token_manager import TokenManager

_log = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_SESSION_EXPIRED = 2

app = typer.Typer(
    name="shipdesk",
    help="Shipment lifecycle and batch carrier labels",
    no_args_is_help=True,
)
orders_app = typer.Typer(help="Orders awaiting shipment")
batch_app = typer.Typer(help="Batch label purchases")
shipments_app = typer.Typer(help="Shipment records and tracking")
intents_app = typer.Typer(help="Label purchase intents")
config_app = typer.Typer(help="Configuration management")
carriers_app = typer.Typer(help="Carriers and service levels")

app.add_typer(orders_app, name="orders")
app.add_typer(batch_app, name="batch")
app.add_typer(shipments_app, name="shipments")
app.add_typer(intents_app, name="intents")
app.add_typer(config_app, name="config")
app.add_typer(carriers_app, name="carriers")

console = Console()
err_console = Console(stderr=True)

# --- Global state ---
_config_path: str | None = None
_config: ShipDeskConfig | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to shipdesk.yaml config file"
    ),
):
    """ShipDesk: batch carrier labels and shipment tracking."""
    global _config_path, _config
    _config_path = config
    _config = None


def _get_config() -> ShipDeskConfig:
    """Load configuration once per invocation and set up logging."""
    global _config
    if _config is None:
        try:
            _config = load_config(config_path=_config_path)
        except (FileNotFoundError, ValueError) as e:
            err_console.print(f"[red]Config error:[/red] {escape(str(e))}")
            raise typer.Exit(EXIT_ERROR)
        configure_logging(_config.logging)
    return _config


@contextmanager
def _store() -> Generator[ShipmentService, None, None]:
    """Open the shipment store on the configured database."""
    cfg = _get_config()
    engine = configure(cfg.database.url)
    init_db(engine)
    db = new_session()
    try:
        yield ShipmentService(db)
    finally:
        db.close()


def _fail(error: Exception) -> None:
    """Print a domain or API error and exit."""
    code = getattr(error, "code", "E-4001")
    message = getattr(error, "message", None) or str(error)
    _log.debug("Command failed: %s", error, exc_info=error)
    err_console.print(f"[red]{code}:[/red] {escape(message)}")
    if isinstance(error, AuthExpiredError):
        raise typer.Exit(EXIT_SESSION_EXPIRED)
    raise typer.Exit(EXIT_ERROR)


def _build_api(cfg: ShipDeskConfig) -> ResilientApiClient:
    tokens = TokenManager(
        access_token=cfg.api.access_token,
        refresh_token=cfg.api.refresh_token,
        refresh_margin_seconds=cfg.api.refresh_margin_seconds,
    )

    def _on_expired() -> None:
        err_console.print("[bold red]Session expired.[/bold red] Sign in again to continue.")

    return ResilientApiClient(
        cfg.api.base_url,
        tokens,
        timeout=cfg.api.timeout,
        max_retries=cfg.api.max_retries,
        base_delay=cfg.api.base_delay,
        max_delay=cfg.api.max_delay,
        on_session_expired=_on_expired,
    )


# --- Version ---


@app.command()
def version():
    """Show ShipDesk version."""
    typer.echo(f"ShipDesk v{__version__}")


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    cfg = _get_config()
    token = cfg.api.access_token
    masked = f"{token[:4]}...{token[-4:]}" if len(token) > 12 else ("***" if token else "(none)")

    console.print("[bold]API:[/bold]")
    console.print(f"  base_url: {cfg.api.base_url}")
    console.print(f"  access_token: {masked}")
    console.print(f"  refresh_token: {'***' if cfg.api.refresh_token else '(none)'}")
    console.print(f"  timeout: {cfg.api.timeout}s, max_retries: {cfg.api.max_retries}")

    console.print("\n[bold]Batch:[/bold]")
    console.print(f"  concurrency: {cfg.batch.concurrency}")
    console.print(f"  default: {cfg.batch.default_carrier} / {cfg.batch.default_service}")
    console.print(f"  package_type: {cfg.batch.default_package_type}")
    console.print(f"  signature: {cfg.batch.default_signature}")

    sf = cfg.ship_from
    console.print("\n[bold]Ship from:[/bold]")
    console.print(f"  {sf.name}, {sf.street1}, {sf.city} {sf.state_code} {sf.postal_code} {sf.country_code}")

    console.print("\n[bold]Database:[/bold]")
    console.print(f"  url: {cfg.database.url or '(default)'}")


# --- Carriers ---


@carriers_app.command("services")
def carriers_services(
    carrier: Optional[str] = typer.Argument(None, help="Carrier code (UPS, FEDEX, USPS, DHL)"),
):
    """List the service levels each carrier offers."""
    try:
        carriers = [parse_carrier(carrier)] if carrier else list(Carrier)
    except ValueError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(EXIT_ERROR)
    for c in carriers:
        console.print(f"[bold]{c.value}[/bold]")
        for service in list_services(c):
            console.print(f"  {service}")


# --- Orders ---


@orders_app.command("list")
def orders_list(
    status: str = typer.Option("Processing", "--status", help="Order status filter"),
    date_from: Optional[str] = typer.Option(None, "--from", help="Start date (YYYY-MM-DD)"),
    date_to: Optional[str] = typer.Option(None, "--to", help="End date (YYYY-MM-DD)"),
):
    """List orders that still need a label."""
    cfg = _get_config()
    filters = OrderFilters(status=status, date_from=date_from, date_to=date_to)

    async def _run():
        async with _build_api(cfg) as api:
            with _store() as store:
                orchestrator = BatchOrchestrator(
                    HttpOrderSource(api), CarrierGateway(api=api), store,
                    cfg.ship_from.to_address(),
                )
                return await orchestrator.load_eligible_orders(filters)

    try:
        orders = asyncio.run(_run())
    except (ApiError, DomainError) as e:
        _fail(e)

    if not orders:
        typer.echo("No orders awaiting shipment.")
        return
    for order in orders:
        addr = order.shipping_address
        typer.echo(
            f"{order.id}  {order.order_number or '-':<12} {order.customer.name:<24} "
            f"{addr.city}, {addr.state_code}  {order.total_weight():.1f} lb"
        )


# --- Batch ---


@batch_app.command("run")
def batch_run(
    status: str = typer.Option("Processing", "--status", help="Order status filter"),
    date_from: Optional[str] = typer.Option(None, "--from", help="Start date (YYYY-MM-DD)"),
    date_to: Optional[str] = typer.Option(None, "--to", help="End date (YYYY-MM-DD)"),
    order_ids: Optional[list[str]] = typer.Option(
        None, "--order", help="Only these order IDs (repeatable); default is all eligible",
    ),
    carrier: Optional[str] = typer.Option(None, "--carrier", help="Carrier for every job"),
    service: Optional[str] = typer.Option(None, "--service", help="Service level for every job"),
    package_type: Optional[str] = typer.Option(None, "--package-type", help="Packaging type"),
    signature: Optional[str] = typer.Option(
        None, "--signature", help="required, not_required or adult",
    ),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Parallel label calls"),
    print_labels: bool = typer.Option(False, "--print", help="Open labels in the browser"),
    manifest: bool = typer.Option(False, "--manifest", help="Write a label manifest file"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Buy carrier labels for eligible orders."""
    cfg = _get_config()
    try:
        defaults = BatchDefaults(
            carrier=parse_carrier(carrier or cfg.batch.default_carrier),
            service=service or cfg.batch.default_service,
            package_type=package_type or cfg.batch.default_package_type,
            signature=SignatureOption(signature or cfg.batch.default_signature),
        )
    except ValueError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(EXIT_ERROR)
    if carrier and not service:
        defaults.service = list_services(defaults.carrier)[0]

    filters = OrderFilters(status=status, date_from=date_from, date_to=date_to)

    async def _on_progress(event: str, order_id: str, **details) -> None:
        if json_output:
            return
        if event == "job_succeeded":
            console.print(f"  [green]OK[/green]    {order_id}  {details.get('tracking_number')}")
        elif event == "job_failed":
            message = escape(f"{details.get('error_code')}: {details.get('error_message')}")
            console.print(f"  [red]FAIL[/red]  {order_id}  {message}")

    async def _run():
        async with _build_api(cfg) as api:
            with _store() as store:
                orchestrator = BatchOrchestrator(
                    HttpOrderSource(api),
                    CarrierGateway(api=api),
                    store,
                    cfg.ship_from.to_address(),
                    max_concurrent=concurrency or cfg.batch.concurrency,
                    defaults=defaults,
                )
                eligible = await orchestrator.load_eligible_orders(filters)
                jobs = orchestrator.build_jobs(eligible)
                wanted = set(order_ids or [])
                for job in jobs:
                    if not wanted or job.order_id in wanted:
                        job.select()
                if not any(job.selected for job in jobs):
                    return orchestrator, None
                if not json_output:
                    console.print(
                        f"Processing {sum(j.selected for j in jobs)} order(s) "
                        f"with {defaults.carrier.value} / {defaults.service}..."
                    )
                result = await orchestrator.process_selected(jobs, on_progress=_on_progress)
                return orchestrator, result

    try:
        orchestrator, result = asyncio.run(_run())
    except (ApiError, DomainError) as e:
        _fail(e)

    if result is None:
        typer.echo("No eligible orders to process.")
        return

    typer.echo(format_batch_result(result, as_json=json_output))

    if result.succeeded and (print_labels or manifest):
        printer = (
            ManifestLabelPrinter(Path(cfg.batch.labels_dir).expanduser())
            if manifest else BrowserLabelPrinter()
        )
        count = orchestrator.print_labels(result.jobs, printer)
        if not json_output:
            console.print(f"Sent {count} label(s) to the printer.")

    if result.session_expired:
        raise typer.Exit(EXIT_SESSION_EXPIRED)
    if result.failed:
        raise typer.Exit(EXIT_ERROR)


# --- Shipments ---


@shipments_app.command("list")
def shipments_list(
    date_from: Optional[str] = typer.Option(None, "--from", help="Created on or after (YYYY-MM-DD)"),
    date_to: Optional[str] = typer.Option(None, "--to", help="Created on or before (YYYY-MM-DD)"),
    carrier: Optional[str] = typer.Option(None, "--carrier", help="Filter by carrier"),
    status: Optional[ShipmentStatus] = typer.Option(None, "--status", help="Filter by status"),
    order_id: Optional[str] = typer.Option(None, "--order", help="Filter by order ID"),
    returns: Optional[bool] = typer.Option(
        None, "--returns/--outbound", help="Only returns or only outbound shipments",
    ),
    limit: int = typer.Option(50, "--limit", help="Maximum rows"),
    offset: int = typer.Option(0, "--offset", help="Rows to skip"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List shipments, newest first."""
    with _store() as store:
        try:
            shipments = store.list_by_filters(
                date_from=date_from,
                date_to=date_to,
                carrier=carrier,
                status=status,
                order_id=order_id,
                is_return=returns,
                limit=limit,
                offset=offset,
            )
        except DomainError as e:
            _fail(e)
        typer.echo(format_shipment_table(shipments, as_json=json_output))


@shipments_app.command("show")
def shipments_show(
    shipment_id: str = typer.Argument(..., help="Shipment ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a shipment with its tracking history and notes."""
    with _store() as store:
        try:
            shipment = store.get_by_id(shipment_id)
        except DomainError as e:
            _fail(e)
        typer.echo(format_shipment_detail(shipment, as_json=json_output))


@shipments_app.command("add-event")
def shipments_add_event(
    shipment_id: str = typer.Argument(..., help="Shipment ID"),
    carrier_status: str = typer.Argument(..., help="Carrier status code, e.g. in_transit"),
    description: str = typer.Argument(..., help="Event description"),
    event_date: Optional[str] = typer.Option(None, "--date", help="ISO8601 event time"),
    location: Optional[str] = typer.Option(None, "--location", help="Scan location"),
):
    """Ingest a tracking event and apply the status it implies."""
    with _store() as store:
        try:
            shipment = store.append_event(
                shipment_id, carrier_status, description,
                event_date=event_date, location=location,
            )
        except DomainError as e:
            _fail(e)
        typer.echo(f"Shipment {shipment.id} is {shipment.status}.")


@shipments_app.command("add-note")
def shipments_add_note(
    shipment_id: str = typer.Argument(..., help="Shipment ID"),
    text: str = typer.Argument(..., help="Note text"),
    note_type: NoteType = typer.Option(NoteType.system, "--type", help="customer, vendor or system"),
    author: Optional[str] = typer.Option(None, "--by", help="Who wrote the note"),
):
    """Append a note to a shipment."""
    with _store() as store:
        try:
            store.append_note(shipment_id, text, note_type=note_type.value, created_by=author)
        except DomainError as e:
            _fail(e)
        typer.echo("Note added.")


@shipments_app.command("report-damage")
def shipments_report_damage(
    shipment_id: str = typer.Argument(..., help="Shipment ID"),
    description: str = typer.Argument(..., help="What was damaged"),
    author: Optional[str] = typer.Option(None, "--by", help="Who reported it"),
):
    """Record the shipment's damage report."""
    with _store() as store:
        try:
            store.report_damage(shipment_id, description, reported_by=author)
        except DomainError as e:
            _fail(e)
        typer.echo(f"Damage recorded for shipment {shipment_id}.")


@shipments_app.command("return")
def shipments_return(
    shipment_id: str = typer.Argument(..., help="Original shipment ID"),
    reason: str = typer.Option(..., "--reason", help="Why the return is authorized"),
    author: Optional[str] = typer.Option(None, "--by", help="Who authorized it"),
    carrier: Optional[str] = typer.Option(None, "--carrier", help="Return carrier"),
    service: Optional[str] = typer.Option(None, "--service", help="Return service level"),
):
    """Create a return shipment for a shipped order."""
    with _store() as store:
        try:
            shipment = store.create_return_shipment(
                shipment_id, reason, authorized_by=author,
                carrier=carrier, service_level=service,
            )
        except DomainError as e:
            _fail(e)
        typer.echo(f"Return shipment {shipment.id} created.")


@shipments_app.command("track")
def shipments_track(
    shipment_id: str = typer.Argument(..., help="Shipment ID"),
):
    """Pull the carrier's scan history and apply new events."""
    cfg = _get_config()

    async def _run():
        async with _build_api(cfg) as api:
            with _store() as store:
                shipment = store.get_by_id(shipment_id)
                if not shipment.tracking_number:
                    raise ValidationError(
                        f"Shipment {shipment_id} has no tracking number yet", code="E-2006",
                    )
                info = await CarrierGateway(api=api).get_tracking(
                    shipment.carrier, shipment.tracking_number,
                )
                shipment, added = store.sync_tracking(shipment_id, info.events)
                return shipment.status, added

    try:
        status, added = asyncio.run(_run())
    except (ApiError, CarrierServiceError, DomainError) as e:
        _fail(e)
    typer.echo(f"{added} new event(s). Shipment {shipment_id} is {status}.")


@shipments_app.command("void")
def shipments_void(
    shipment_id: str = typer.Argument(..., help="Shipment ID"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Why the label is voided"),
    author: Optional[str] = typer.Option(None, "--by", help="Who voided it"),
):
    """Void an unused label with the carrier and cancel the shipment."""
    cfg = _get_config()

    async def _run():
        async with _build_api(cfg) as api:
            with _store() as store:
                shipment = store.get_by_id(shipment_id)
                validate_transition(ShipmentStatus(shipment.status), ShipmentStatus.cancelled)
                result = await CarrierGateway(api=api).void_label(
                    shipment.carrier, shipment.carrier_shipment_id or shipment.tracking_number,
                )
                if not result.voided:
                    return result, None
                shipment = store.void_shipment(
                    shipment_id,
                    refund_cents=cost_to_cents(result.refund_amount),
                    reason=reason,
                    voided_by=author,
                )
                return result, shipment

    try:
        result, shipment = asyncio.run(_run())
    except (ApiError, CarrierServiceError, DomainError) as e:
        _fail(e)
    if shipment is None:
        err_console.print(
            f"[red]Carrier did not void the label:[/red] {escape(result.message or 'no reason given')}"
        )
        raise typer.Exit(EXIT_ERROR)
    refund = f" Refund {result.refund_amount} {result.refund_currency}." if result.refund_amount else ""
    typer.echo(f"Shipment {shipment.id} cancelled.{refund}")


# --- Intents ---


@intents_app.command("list")
def intents_list(
    status: Optional[IntentStatus] = typer.Option(None, "--status", help="Filter by status"),
    unresolved: bool = typer.Option(
        False, "--unresolved", help="Only pending and purchased intents",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List label intents."""
    with _store() as store:
        intents = store.list_intents(status)
        if unresolved:
            intents = [i for i in intents if i.status in UNRESOLVED_INTENT_STATUSES]
        typer.echo(format_intent_table(intents, as_json=json_output))


@intents_app.command("reconcile")
def intents_reconcile(
    intent_id: Optional[str] = typer.Argument(
        None, help="Intent ID; default reconciles every purchased intent",
    ),
):
    """Record shipments for labels that were bought but not saved."""
    with _store() as store:
        try:
            targets = [intent_id] if intent_id else [i.id for i in store.list_unreconciled_intents()]
            if not targets:
                typer.echo("Nothing to reconcile.")
                return
            for target in targets:
                shipment = store.reconcile_intent(target)
                typer.echo(f"Intent {target} -> shipment {shipment.id} ({shipment.tracking_number})")
        except DomainError as e:
            _fail(e)


@intents_app.command("discard")
def intents_discard(
    intent_id: str = typer.Argument(..., help="Pending intent ID"),
    reason: str = typer.Option(..., "--reason", help="Why no label was bought"),
):
    """Close a pending intent after confirming no label was bought."""
    with _store() as store:
        try:
            store.mark_intent_failed(intent_id, None, f"Discarded by operator: {reason}")
        except DomainError as e:
            _fail(e)
        typer.echo(f"Intent {intent_id} discarded.")


if __name__ == "__main__":
    app()
