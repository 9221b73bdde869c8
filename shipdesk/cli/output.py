"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from shipdesk.db.models import LabelIntent, Shipment
from shipdesk.errors import ShipDeskError, format_error_summary
from shipdesk.services.batch_orchestrator import BatchJob, BatchResult, JobState

console = Console()

# Status color map for shipments, intents and batch jobs
STATUS_COLORS = {
    "pending": "yellow",
    "created": "cyan",
    "in_transit": "blue",
    "delivered": "green",
    "exception": "red",
    "returned": "magenta",
    "cancelled": "dim",
    "purchased": "yellow",
    "completed": "green",
    "failed": "red",
    "not_started": "dim",
    "processing": "blue",
    "succeeded": "green",
}


def format_cost(cents: int | None, currency: str = "USD") -> str:
    """Format cost in cents as a money string.

    Args:
        cents: Cost in cents, or None.
        currency: ISO currency code; non-USD amounts carry the code.

    Returns:
        Formatted string like "$12.50", "12.50 CAD" or "-" for None.
    """
    if cents is None:
        return "-"
    if currency == "USD":
        return f"${cents / 100:,.2f}"
    return f"{cents / 100:,.2f} {currency}"


def _status(value: str) -> str:
    color = STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _render(renderable: Any) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def shipment_to_dict(shipment: Shipment, include_history: bool = False) -> dict[str, Any]:
    """Plain dict of a shipment for JSON output."""
    data = {
        "id": shipment.id,
        "order_id": shipment.order_id,
        "carrier": shipment.carrier,
        "service_level": shipment.service_level,
        "status": shipment.status,
        "tracking_number": shipment.tracking_number,
        "tracking_url": shipment.tracking_url,
        "label_url": shipment.label_url,
        "package_type": shipment.package_type,
        "signature": shipment.signature,
        "length": shipment.length,
        "width": shipment.width,
        "height": shipment.height,
        "weight": shipment.weight,
        "unit": shipment.unit,
        "cost_cents": shipment.cost_cents,
        "currency": shipment.currency,
        "shipping_date": shipment.shipping_date,
        "estimated_delivery_date": shipment.estimated_delivery_date,
        "actual_delivery_date": shipment.actual_delivery_date,
        "damaged_reported": shipment.damaged_reported,
        "is_return": shipment.is_return,
        "return_of_id": shipment.return_of_id,
        "return_reason": shipment.return_reason,
        "created_at": shipment.created_at,
        "updated_at": shipment.updated_at,
    }
    if include_history:
        data["events"] = [
            {
                "event_date": e.event_date,
                "carrier_status": e.carrier_status,
                "description": e.description,
                "location": e.location,
            }
            for e in shipment.events
        ]
        data["notes"] = [
            {
                "note_type": n.note_type,
                "text": n.text,
                "created_by": n.created_by,
                "created_at": n.created_at,
            }
            for n in shipment.notes
        ]
    return data


def format_shipment_table(shipments: list[Shipment], as_json: bool = False) -> str:
    """Format a list of shipments as a Rich table or JSON.

    Args:
        shipments: Shipments to display.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps([shipment_to_dict(s) for s in shipments], indent=2)

    if not shipments:
        return "No shipments found."

    table = Table(title="Shipments", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Order")
    table.add_column("Carrier")
    table.add_column("Service")
    table.add_column("Status")
    table.add_column("Tracking", style="cyan")
    table.add_column("Cost", justify="right")
    table.add_column("Created")

    for s in shipments:
        order = f"{s.order_id} (return)" if s.is_return else s.order_id
        table.add_row(
            s.id,
            order,
            s.carrier,
            s.service_level,
            _status(s.status),
            s.tracking_number or "-",
            format_cost(s.cost_cents, s.currency),
            s.created_at[:19] if s.created_at else "-",
        )
    return _render(table)


def format_shipment_detail(shipment: Shipment, as_json: bool = False) -> str:
    """Format one shipment with its tracking history and notes."""
    if as_json:
        return json.dumps(shipment_to_dict(shipment, include_history=True), indent=2)

    lines = [
        f"[bold]Shipment:[/bold]  {shipment.id}",
        f"[bold]Order:[/bold]     {shipment.order_id}",
        f"[bold]Status:[/bold]    {_status(shipment.status)}",
        f"[bold]Carrier:[/bold]   {shipment.carrier} / {shipment.service_level}",
        f"[bold]Tracking:[/bold]  {shipment.tracking_number or '-'}",
        f"[bold]Label:[/bold]     {shipment.label_url or '-'}",
        f"[bold]Cost:[/bold]      {format_cost(shipment.cost_cents, shipment.currency)}",
        f"[bold]Shipped:[/bold]   {(shipment.shipping_date or '-')[:19]}",
        f"[bold]ETA:[/bold]       {shipment.estimated_delivery_date or '-'}",
        f"[bold]Delivered:[/bold] {(shipment.actual_delivery_date or '-')[:19]}",
    ]
    if shipment.damaged_reported:
        lines.append("[bold red]Damage reported[/bold red]")
    if shipment.is_return:
        lines.append(f"[bold]Return of:[/bold] {shipment.return_of_id} ({shipment.return_reason})")

    if shipment.events:
        lines.append("")
        lines.append("[bold]Tracking history:[/bold]")
        for e in shipment.events:
            where = f" @ {e.location}" if e.location else ""
            lines.append(escape(f"  {e.event_date[:19]}  {e.carrier_status:<20} {e.description}{where}"))

    if shipment.notes:
        lines.append("")
        lines.append("[bold]Notes:[/bold]")
        for n in shipment.notes:
            lines.append(escape(f"  [{n.note_type}] {n.created_at[:19]}  {n.text}"))

    return _render(Panel("\n".join(lines), title="Shipment Detail", border_style="cyan"))


def format_intent_table(intents: list[LabelIntent], as_json: bool = False) -> str:
    """Format label intents as a Rich table or JSON."""
    if as_json:
        return json.dumps(
            [
                {
                    "id": i.id,
                    "order_id": i.order_id,
                    "carrier": i.carrier,
                    "service_level": i.service_level,
                    "status": i.status,
                    "tracking_number": i.tracking_number,
                    "label_url": i.label_url,
                    "shipment_id": i.shipment_id,
                    "error_code": i.error_code,
                    "error_message": i.error_message,
                    "created_at": i.created_at,
                }
                for i in intents
            ],
            indent=2,
        )

    if not intents:
        return "No label intents found."

    table = Table(title="Label Intents", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Order")
    table.add_column("Carrier")
    table.add_column("Status")
    table.add_column("Tracking", style="cyan")
    table.add_column("Error")
    table.add_column("Created")

    for i in intents:
        error = f"{i.error_code}: {i.error_message}" if i.error_code else "-"
        table.add_row(
            i.id,
            i.order_id,
            f"{i.carrier} / {i.service_level}",
            _status(i.status),
            i.tracking_number or "-",
            escape(error[:50]),
            i.created_at[:19] if i.created_at else "-",
        )
    return _render(table)


def _job_errors(jobs: list[BatchJob]) -> list[ShipDeskError]:
    errors = []
    for job in jobs:
        error = ShipDeskError.from_code(
            job.error_code or "E-4001", orders=[job.order.order_number or job.order_id],
        )
        # The job text carries the specifics the template cannot.
        if job.error:
            error.message = job.error
        errors.append(error)
    return errors


def format_batch_result(result: BatchResult, as_json: bool = False) -> str:
    """Format a batch outcome: per-job rows plus a grouped error summary."""
    if as_json:
        return json.dumps(
            {
                "succeeded": result.succeeded,
                "failed": result.failed,
                "cancelled": result.cancelled,
                "session_expired": result.session_expired,
                "label_urls": result.label_urls,
                "jobs": [
                    {
                        "order_id": j.order_id,
                        "state": j.state.value,
                        "carrier": j.carrier.value,
                        "service": j.service,
                        "tracking_number": j.label_response.tracking_number
                        if j.label_response else None,
                        "label_url": j.label_response.label_url if j.label_response else None,
                        "shipment_id": j.shipment_id,
                        "error_code": j.error_code,
                        "error": j.error,
                    }
                    for j in result.jobs
                ],
            },
            indent=2,
        )

    table = Table(title="Batch Result", show_lines=True)
    table.add_column("Order", style="cyan")
    table.add_column("Carrier")
    table.add_column("State")
    table.add_column("Tracking")
    table.add_column("Error")
    for job in result.jobs:
        table.add_row(
            job.order.order_number or job.order_id,
            f"{job.carrier.value} / {job.service}",
            _status(job.state.value),
            job.label_response.tracking_number if job.label_response else "-",
            escape(f"{job.error_code}: {job.error}"[:60]) if job.state == JobState.FAILED else "-",
        )

    summary = (
        f"[green]{result.succeeded} succeeded[/green], "
        f"[red]{result.failed} failed[/red], "
        f"[dim]{result.cancelled} not started[/dim]"
    )
    parts = [_render(table), _render(summary)]
    if result.session_expired:
        parts.append(_render(
            "[bold red]Session expired.[/bold red] Sign in again and re-run the remaining orders."
        ))
    if result.failed_jobs:
        parts.append(format_error_summary(_job_errors(result.failed_jobs)))
    return "\n".join(parts)
