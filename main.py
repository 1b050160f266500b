#!/usr/bin/env python3
"""
Material & Supplier Analytics: CLI entry point.

Usage examples:
  python main.py check                              # Verify the store is reachable
  python main.py ingest results.jsonl               # Ingest a batch extraction results file
  python main.py ingest results.jsonl --tenant acme

  python main.py materials --sort quantity          # Material analytics (full mode)
  python main.py materials --page 2 --page-size 20  # Paginated mode
  python main.py suppliers --monthly --json

  python main.py export materials.csv --category cement
  python main.py alerts --status PENDING
  python main.py merge-providers SOURCE_ID TARGET_ID
"""
import json
import logging
import sqlite3
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from config import Config
from dashboard.services.export import write_csv
from models.analytics import AnalyticsFilters
from pipeline.analytics import AnalyticsService
from pipeline.database import Database
from pipeline.errors import NotFoundError, SystemicError
from pipeline.processor import IngestionService, cancel_on_signal


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)


def _open_db(config: Config) -> Database:
    return Database(config.db_path, timeout=config.transaction_timeout_seconds)


def _filters(ctx_tenant: str | None, **params) -> AnalyticsFilters:
    try:
        return AnalyticsFilters(tenant_id=ctx_tenant, **params)
    except ValidationError as e:
        raise click.BadParameter(str(e))


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--tenant", "-t", default=None, help="Tenant id (default: TENANT_ID or 'default')")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, tenant: str | None) -> None:
    """Material & Supplier Analytics: ingest invoices, analyse spend and prices."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    config = Config()
    if tenant:
        config.tenant_id = tenant
    ctx.obj["config"] = config
    _setup_logging(verbose)


# --------------------------------------------------------------------
# check command
# --------------------------------------------------------------------

@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Verify that the database is reachable and show headline counts."""
    config: Config = ctx.obj["config"]

    click.echo("\n=== Pipeline Setup Check ===\n")
    click.echo(f"  Database:   {config.db_path}")
    click.echo(f"  Tenant:     {config.tenant_id}")
    click.echo(f"  Alert threshold:  {config.price_alert_threshold}%")
    click.echo()

    try:
        db = _open_db(config)
        db.ping()
    except (sqlite3.Error, OSError) as e:
        click.echo(f"  Store:      ✗ NOT reachable ({e})")
        click.echo("  → Check DB_PATH and directory permissions")
        sys.exit(1)

    stats = db.get_stats(config.tenant_id)
    click.echo("  Store:      ✓ reachable")
    click.echo(f"  Invoices:   {stats['invoices']}")
    click.echo(f"  Providers:  {stats['providers']}")
    click.echo(f"  Materials:  {stats['materials']}")
    click.echo(f"  Pending alerts:  {stats['pending_alerts']}")
    click.echo(f"  Total spent:     {stats['total_spent']}")
    click.echo()


# --------------------------------------------------------------------
# ingest command
# --------------------------------------------------------------------

@cli.command()
@click.argument("results", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def ingest(ctx: click.Context, results: str) -> None:
    """
    Ingest a batch extraction RESULTS file (JSON Lines).

    \b
    Each invoice is committed on its own; a bad line or invoice is reported
    and skipped. Ctrl-C stops after the current invoice and marks the job
    CANCELLED, keeping everything already committed.
    """
    config: Config = ctx.obj["config"]
    service = IngestionService(config)

    try:
        with cancel_on_signal() as stop:
            report = service.run_batch(Path(results), cancel_event=stop)
    except SystemicError as e:
        click.echo(f"\n✗ Batch aborted: {e}", err=True)
        sys.exit(2)

    click.echo()
    click.echo(f"  Job:         {report.job_id}")
    click.echo(f"  Status:      {report.status}")
    click.echo(f"  Attempted:   {report.attempted}")
    click.echo(f"  Succeeded:   {report.succeeded}  ({report.duplicates} duplicate(s) skipped)")
    click.echo(f"  Failed:      {report.failed}  ({report.parse_errors} unparseable line(s))")

    if report.failures:
        click.echo(f"\n  Failures ({len(report.failures)}):")
        for f in report.failures:
            where = f"line {f.line_number}" if f.line_number else "job"
            label = f.invoice_code or f.key or ""
            click.echo(f"    ✗ [{f.stage}] {where} {label}: {f.reason}")
    click.echo()


# --------------------------------------------------------------------
# analytics commands
# --------------------------------------------------------------------

def _analytics_options(func):
    options = [
        click.option("--category", default=None, help="Category contains (case-insensitive)"),
        click.option("--work-order", default=None, help="Work order contains"),
        click.option("--supplier-id", default=None, help="Restrict to one provider id"),
        click.option("--search", "material_search", default=None, help="Material name / code contains"),
        click.option("--start", "start_date", default=None, help="From date (YYYY-MM-DD)"),
        click.option("--end", "end_date", default=None, help="To date (YYYY-MM-DD)"),
        click.option("--sort", "sort_by", default=None, help="Sort key"),
        click.option("--order", "sort_order", type=click.Choice(["asc", "desc"]), default=None),
        click.option("--page", type=int, default=None, help="Page number (enables paginated mode)"),
        click.option("--page-size", type=int, default=None, help="Rows per page"),
        click.option("--json", "as_json", is_flag=True, help="Print JSON"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@cli.command()
@_analytics_options
@click.pass_context
def materials(ctx: click.Context, page, page_size, as_json, **params) -> None:
    """Per-material spend, quantities and price evolution."""
    config: Config = ctx.obj["config"]
    service = AnalyticsService(_open_db(config), config)
    filters = _filters(config.tenant_id, **params)

    try:
        if page is None:
            rows = service.get_material_analytics(filters)
            total = len(rows)
        else:
            result = service.get_material_analytics_paginated(filters, page, page_size)
            rows, total = result.items, result.total_count
    except ValueError as e:
        raise click.BadParameter(str(e))

    if as_json:
        _echo_json([r.model_dump(mode="json") for r in rows])
        return

    click.echo(f"\n  {total} material(s)\n")
    for r in rows:
        click.echo(
            f"  {r.code:<24} {r.name[:40]:<40} qty={r.total_quantity:<12} "
            f"cost={r.total_cost:<14} avg={r.average_unit_price:<10} "
            f"suppliers={r.supplier_count}"
        )
    click.echo()


@cli.command()
@_analytics_options
@click.option("--monthly", is_flag=True, help="Include monthly spend breakdown")
@click.pass_context
def suppliers(ctx: click.Context, page, page_size, as_json, monthly, **params) -> None:
    """Per-supplier spend, invoice counts and top materials."""
    config: Config = ctx.obj["config"]
    service = AnalyticsService(_open_db(config), config)
    filters = _filters(config.tenant_id, include_monthly_breakdown=monthly, **params)

    try:
        if page is None:
            rows = service.get_supplier_analytics(filters)
            total = len(rows)
        else:
            result = service.get_supplier_analytics_paginated(filters, page, page_size)
            rows, total = result.items, result.total_count
    except ValueError as e:
        raise click.BadParameter(str(e))

    if as_json:
        _echo_json([r.model_dump(mode="json") for r in rows])
        return

    click.echo(f"\n  {total} supplier(s)\n")
    for r in rows:
        click.echo(
            f"  {r.tax_id:<14} {r.name[:40]:<40} spent={r.total_spent:<14} "
            f"invoices={r.invoice_count:<5} materials={r.material_count}"
        )
        for m in r.monthly_spending or []:
            click.echo(f"      {m.month}  {m.total}  ({m.invoice_count} invoice(s))")
    click.echo()


# --------------------------------------------------------------------
# export command
# --------------------------------------------------------------------

@cli.command()
@click.argument("output", type=click.Path(dir_okay=False))
@click.option("--category", default=None)
@click.option("--work-order", default=None)
@click.option("--supplier-id", default=None)
@click.option("--search", "material_search", default=None)
@click.option("--start", "start_date", default=None)
@click.option("--end", "end_date", default=None)
@click.pass_context
def export(ctx: click.Context, output: str, **params) -> None:
    """Write the filtered line items to OUTPUT as CSV."""
    config: Config = ctx.obj["config"]
    service = AnalyticsService(_open_db(config), config)
    filters = _filters(config.tenant_id, **params)
    count = write_csv(service.get_export_rows(filters), Path(output))
    click.echo(f"✓ Exported {count} row(s) to {output}")


# --------------------------------------------------------------------
# alerts command
# --------------------------------------------------------------------

@cli.command()
@click.option("--status", type=click.Choice(["PENDING", "APPROVED", "REJECTED"], case_sensitive=False),
              default=None, help="Only alerts with this status")
@click.option("--limit", type=int, default=100)
@click.pass_context
def alerts(ctx: click.Context, status: str | None, limit: int) -> None:
    """List price-change alerts, newest first."""
    config: Config = ctx.obj["config"]
    db = _open_db(config)
    rows = db.list_price_alerts(config.tenant_id, status=status.upper() if status else None, limit=limit)

    if not rows:
        click.echo("No price alerts.")
        return
    for a in rows:
        icon = "✗" if a["severity"] == "HIGH" else ("⚠" if a["severity"] == "MEDIUM" else "ℹ")
        click.echo(
            f"  {icon} {a['effective_date']}  [{a['severity']:<6}] {a['material_name'][:36]:<36} "
            f"{a['provider_name'][:28]:<28} {a['old_price']} → {a['new_price']} "
            f"(+{a['percentage']}%)  {a['status']}"
        )


# --------------------------------------------------------------------
# merge-providers command
# --------------------------------------------------------------------

@cli.command("merge-providers")
@click.argument("source_id")
@click.argument("target_id")
@click.confirmation_option(prompt="Merge SOURCE into TARGET? The source provider is deleted.")
@click.pass_context
def merge_providers(ctx: click.Context, source_id: str, target_id: str) -> None:
    """Fold provider SOURCE_ID into TARGET_ID (invoices, prices, alerts)."""
    config: Config = ctx.obj["config"]
    db = _open_db(config)
    try:
        result = db.merge_providers(source_id, target_id)
    except (NotFoundError, ValueError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(
        f"✓ Merged: {result['invoices_moved']} invoice(s), {result['alerts_moved']} alert(s) moved, "
        f"{result['alerts_dropped']} duplicate alert(s) dropped"
    )


if __name__ == "__main__":
    cli()
