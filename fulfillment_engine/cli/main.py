"""
CLI interface for the fulfillment engine.

Operator access to the database, the billing ledger, vendor payables, SLA
reporting, and pack period closing.
"""

import sqlite3
import sys
from decimal import Decimal
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from fulfillment_engine.config.loader import EngineConfig, load_engine_config
from fulfillment_engine.core.billing import BillingLedger, LedgerFilter
from fulfillment_engine.core.lifecycle import RequestLifecycle
from fulfillment_engine.core.payables import VendorPayables
from fulfillment_engine.core.retry import run_with_retries
from fulfillment_engine.demo.seed_demo_data import demo_config, seed_demo_data
from fulfillment_engine.logging_config import configure_logging
from fulfillment_engine.storage.db import DEFAULT_DB_PATH
from fulfillment_engine.storage.models import PaymentStatus, RequestStatus
from fulfillment_engine.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Engine config YAML (defaults to the demo catalog)"
)


def _load_config(config_path: Optional[str]) -> EngineConfig:
    if config_path is None:
        return demo_config()
    return load_engine_config(config_path)


def _lifecycle(db: str, config_path: Optional[str]) -> RequestLifecycle:
    return RequestLifecycle(_load_config(config_path), db_path=db)


def _format_currency(amount: Decimal) -> str:
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _fail_missing_schema(e: sqlite3.OperationalError) -> None:
    if "no such table" in str(e).lower():
        console.print("\n[bold yellow]Database is not initialized[/]")
        console.print("Run `fulfillment-engine init` first.\n")
        sys.exit(EXIT_CODE_FAIL)
    raise e


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Fulfillment engine CLI."""
    configure_logging()
    if ctx.invoked_subcommand is None:
        console.print("Fulfillment engine - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the engine database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def seed(db: str = DB_OPTION, config: Optional[str] = CONFIG_OPTION):
    """Insert demo requests, a pack period, and deliveries."""
    try:
        initialize_schema(db)
        counts = seed_demo_data(_lifecycle(db, config))
        console.print("[green]✓[/] Demo data inserted")
        for name, count in counts.items():
            console.print(f"  {name.replace('_', ' ')}: {count}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error seeding demo data:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command("requests")
def list_requests(
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    client: Optional[str] = typer.Option(None, "--client", help="Filter by client id"),
):
    """List requests and where they are in their lifecycle."""
    try:
        status_filter = RequestStatus(status) if status else None
        rows = _lifecycle(db, config).list_requests(status=status_filter, client_id=client)
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("[dim]No requests found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Requests")
    for column in ("ID", "Client", "Service", "Qty", "Status", "Assignee", "Vendor"):
        table.add_column(column)
    for request in rows:
        table.add_row(
            request.id[:8],
            request.client_id,
            request.service_id,
            str(request.quantity),
            request.status.value,
            request.assignee_id or "-",
            request.vendor_assignee_id or "-",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ledger(
    db: str = DB_OPTION,
    client: Optional[str] = typer.Option(None, "--client", help="Filter by client id"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="pending or paid"),
    period: Optional[str] = typer.Option(None, "--period", "-p", help="Billing month, YYYY-MM"),
):
    """Show ledger entries and their totals."""
    try:
        ledger_filter = LedgerFilter(
            client_id=client,
            status=PaymentStatus(status) if status else None,
            period_key=period,
        )
        billing = BillingLedger(db)
        entries = billing.list_entries(ledger_filter)
        summary = billing.summarize(ledger_filter)
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("[dim]No ledger entries found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Billing Ledger")
    for column in ("ID", "Source", "Client", "Period", "Amount", "Status"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            str(entry.id),
            f"{entry.source_kind.value}:{entry.source_id[:8]}",
            entry.client_id,
            entry.period_key or "-",
            _format_currency(entry.amount),
            entry.status.value,
        )
    console.print(table)
    console.print(
        f"Total: {_format_currency(summary.total_amount)} across {summary.total_items} entries "
        f"({summary.pending_count} pending, {summary.paid_count} paid)"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("mark-paid")
def mark_paid(
    entry_ids: List[int] = typer.Argument(..., help="Ledger entry ids to mark paid"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Mark ledger entries paid. Exits non-zero if any id is unknown."""
    try:
        engine_config = _load_config(config)
        billing = BillingLedger(db, lock_timeout=engine_config.lock_timeout_seconds)
        result = run_with_retries(
            billing.mark_paid, entry_ids, max_attempts=engine_config.max_attempts
        )
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Marked {result.updated_count} entries paid")
    if result.already_paid:
        console.print(f"Already paid: {', '.join(str(i) for i in result.already_paid)}")
    for entry_id, reason in result.errors.items():
        console.print(f"[red]Entry {entry_id}:[/] {reason}")
    sys.exit(EXIT_CODE_FAIL if result.errors else EXIT_CODE_PASS)


@app.command()
def payables(
    db: str = DB_OPTION,
    vendor: Optional[str] = typer.Option(None, "--vendor", "-v", help="Filter by vendor id"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="pending or paid"),
    period: Optional[str] = typer.Option(None, "--period", "-p", help="Billing month, YYYY-MM"),
):
    """Show what is owed to outside vendors for delivered work."""
    try:
        payment_status = PaymentStatus(status) if status else None
        vendor_payables = VendorPayables(db)
        rows = vendor_payables.list_payables(vendor, payment_status, period)
        summary = vendor_payables.summarize(vendor, payment_status, period)
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("[dim]No vendor payables found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Vendor Payables")
    for column in ("ID", "Request", "Vendor", "Service", "Qty", "Period", "Amount", "Status"):
        table.add_column(column)
    for payable in rows:
        table.add_row(
            str(payable.id),
            payable.request_id[:8],
            payable.vendor_id,
            payable.service_id,
            str(payable.quantity),
            payable.period_key or "-",
            _format_currency(payable.amount),
            payable.status.value,
        )
    console.print(table)
    console.print(
        f"Total: {_format_currency(summary.total_amount)} across {summary.total_items} payables "
        f"({summary.pending_count} pending, {summary.paid_count} paid)"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command("mark-vendor-paid")
def mark_vendor_paid(
    payable_ids: List[int] = typer.Argument(..., help="Vendor payable ids to mark paid"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Mark vendor payables paid. Exits non-zero if any id is unknown."""
    try:
        engine_config = _load_config(config)
        vendor_payables = VendorPayables(db, lock_timeout=engine_config.lock_timeout_seconds)
        result = run_with_retries(
            vendor_payables.mark_paid, payable_ids, max_attempts=engine_config.max_attempts
        )
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Marked {result.updated_count} payables paid")
    if result.already_paid:
        console.print(f"Already paid: {', '.join(str(i) for i in result.already_paid)}")
    for payable_id, reason in result.errors.items():
        console.print(f"[red]Payable {payable_id}:[/] {reason}")
    sys.exit(EXIT_CODE_FAIL if result.errors else EXIT_CODE_PASS)


@app.command("sla-report")
def sla_report(
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
    vendor: Optional[str] = typer.Option(None, "--vendor", "-v", help="Filter by vendor id"),
):
    """Summarize SLA performance over delivered requests."""
    try:
        summary = _lifecycle(db, config).sla_report(vendor_id=vendor)
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("\n[bold]SLA Report[/bold]" + (f" - {vendor}" if vendor else ""))
    console.print("-" * 40)
    console.print(f"Delivered: {summary.total_delivered}")
    console.print(f"Delivered with SLA: {summary.delivered_with_sla}")
    console.print(f"On time: {summary.on_time}")
    console.print(f"Over SLA: {summary.over_sla} ({summary.over_sla_percentage}%)")
    sys.exit(EXIT_CODE_PASS)


@app.command("close-period")
def close_period(
    period_id: str = typer.Argument(..., help="Pack period id"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Close a pack period and record its fee. Unused quota is discarded."""
    try:
        lifecycle = _lifecycle(db, config)
        result = run_with_retries(
            lifecycle.quota.close_period, period_id, max_attempts=lifecycle.config.max_attempts
        )
    except KeyError as e:
        console.print(f"[red]Error:[/] {e.args[0]}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.OperationalError as e:
        _fail_missing_schema(e)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    verb = "Closed" if result.created else "Already closed"
    console.print(
        f"[green]✓[/] {verb} period {period_id}: fee entry {result.entry_id} "
        f"for {_format_currency(result.entry.amount)}"
    )
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
