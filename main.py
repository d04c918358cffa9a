#!/usr/bin/env python3
"""
Invoice Extraction & Reconciliation Pipeline: CLI entry point.

Usage examples:
  python main.py check                                   # Verify setup (providers, data files)
  python main.py process invoices.pdf                    # Extract every invoice in a PDF
  python main.py process invoices.pdf --project P-100    # ... and tag them with a project
  python main.py process upload.pdf --channel supplier_portal

  python main.py approve 3f2a...                         # Approve as extracted
  python main.py approve 3f2a... --set total=5000        # Approve with a correction
  python main.py reject 3f2a... --reason "duplicate"

  python main.py match P-100 --estimate data/estimates.csv
  python main.py training-stats
"""
import json
import logging
import sys
from pathlib import Path

import click

from config import Config
from pipeline.errors import EmptyDocument, InvoiceNotFound, ReviewStateError
from pipeline.estimates import EstimateLoader
from pipeline.processor import InvoiceProcessor


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quieten noisy third-party loggers
    logging.getLogger("pdfminer").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _parse_assignments(pairs: tuple[str, ...]) -> dict:
    """Turn ("total=5000", "vendor_name=Acme Ltd") into a corrections dict."""
    corrected = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"expected field=value, got {pair!r}", param_hint="--set")
        field, value = pair.split("=", 1)
        value = value.strip()
        if value.startswith("["):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as e:
                raise click.BadParameter(f"{field}: invalid JSON list ({e})", param_hint="--set")
        corrected[field.strip()] = value
    return corrected


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Invoice Pipeline: extract, review and reconcile invoices against estimates."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)


# --------------------------------------------------------------------
# check command
# --------------------------------------------------------------------

@cli.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Verify that providers, pdfplumber and data files are ready."""
    config = Config()
    processor = InvoiceProcessor(config)
    status = processor.check_setup()

    click.echo("\n=== Pipeline Setup Check ===\n")
    click.echo(f"  Provider order:  {', '.join(config.provider_order)}")

    for key, info in status.items():
        if not key.startswith("provider:"):
            continue
        name = key.split(":", 1)[1]
        if info.get("ok"):
            extra = ""
            if "model_available" in info:
                extra = "  model ✓" if info["model_available"] else f"  model '{config.llm_model}' ✗ NOT found"
            click.echo(f"  {name:<12} ✓ ready{extra}")
        else:
            click.echo(f"  {name:<12} ✗ {info.get('error', 'not configured')}")

    click.echo()
    pdf = status["pdfplumber"]
    click.echo(f"  pdfplumber:                   {'✓' if pdf['ok'] else '✗ ' + pdf['error']}")

    est = status["estimates_csv"]
    tick = "✓" if est["exists"] else "✗"
    click.echo(f"  estimates.csv                 {tick}  {est['path']}")

    out = status["output_dir"]
    tick = "✓" if out["exists"] else "✗"
    click.echo(f"  Output directory:             {tick}  {out['path']}")
    click.echo()


# --------------------------------------------------------------------
# process command
# --------------------------------------------------------------------

@cli.command()
@click.argument("target", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--channel", type=click.Choice(["internal", "supplier_portal"]), default="internal",
    show_default=True, help="Where the upload came from",
)
@click.option("--project", "-p", default=None, help="Project id to tag the invoices with")
@click.option("--json", "as_json", is_flag=True, help="Print the full job result as JSON")
@click.pass_context
def process(ctx: click.Context, target: str, channel: str, project: str | None, as_json: bool) -> None:
    """Extract every invoice in TARGET (PDF or plain text)."""
    processor = InvoiceProcessor(Config())

    def progress(stage: str, detail: str) -> None:
        if ctx.obj.get("verbose"):
            click.echo(f"  [{stage}] {detail}")

    try:
        result = processor.process_file(target, channel=channel, project_id=project, on_progress=progress)
    except EmptyDocument as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(result.model_dump_json(indent=2))
        return

    click.echo()
    for inv in result.invoices:
        flag = "⚠ review" if inv.needs_review else "✓"
        total = f"{inv.total:,.2f}" if inv.total is not None else "(unknown)"
        click.echo(
            f"  [{inv.page_range:>5}]  {inv.invoice_number or '(no number)':<16} "
            f"{inv.vendor_name or '(unknown vendor)':<28} {total:>12}  "
            f"{inv.confidence * 100:.0f}%  {flag}  via {inv.provider}"
        )
        click.echo(f"           id: {inv.id}")
        for w in inv.warnings:
            icon = "⚠" if w.severity == "warning" else "ℹ"
            click.echo(f"           {icon} {w.description}")

    for failure in result.failures:
        click.echo(f"  [{failure.page_range:>5}]  ✗ needs manual entry")
        for reason in failure.reasons:
            click.echo(f"           - {reason}")

    for warning in result.warnings:
        click.echo(f"  ⚠ {warning}")

    click.echo()
    click.echo(f"  {result.summary}")
    if result.total_cost:
        click.echo(f"  Provider cost: ${result.total_cost:.4f}")
    click.echo()


# --------------------------------------------------------------------
# review commands
# --------------------------------------------------------------------

@cli.command()
@click.argument("invoice_id")
@click.option("--set", "assignments", multiple=True, metavar="FIELD=VALUE",
              help="Correct a field before approving (repeatable)")
@click.option("--actor", default="cli", show_default=True, help="Reviewer name for the audit log")
@click.pass_context
def approve(ctx: click.Context, invoice_id: str, assignments: tuple[str, ...], actor: str) -> None:
    """Approve INVOICE_ID, optionally correcting fields first."""
    processor = InvoiceProcessor(Config())
    corrected = _parse_assignments(assignments)
    try:
        example = processor.approve(invoice_id, corrected, actor=actor)
    except (InvoiceNotFound, ReviewStateError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"✓ Approved {invoice_id}")
    for corr in example.corrections:
        click.echo(f"    {corr.field}: {corr.original_value!r} → {corr.corrected_value!r}")


@cli.command()
@click.argument("invoice_id")
@click.option("--reason", "-r", required=True, help="Why the invoice is being rejected")
@click.option("--actor", default="cli", show_default=True, help="Reviewer name for the audit log")
@click.pass_context
def reject(ctx: click.Context, invoice_id: str, reason: str, actor: str) -> None:
    """Reject INVOICE_ID with a reason."""
    processor = InvoiceProcessor(Config())
    try:
        processor.reject(invoice_id, reason, actor=actor)
    except (InvoiceNotFound, ReviewStateError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Rejected {invoice_id}")


# --------------------------------------------------------------------
# match command
# --------------------------------------------------------------------

@cli.command()
@click.argument("project_id")
@click.option("--estimate", "-e", "estimate_csv", default=None, type=click.Path(exists=True, dir_okay=False),
              help="Estimates CSV (default: ESTIMATES_CSV / data/estimates.csv)")
@click.option("--json", "as_json", is_flag=True, help="Print the MatchResult as JSON")
@click.pass_context
def match(ctx: click.Context, project_id: str, estimate_csv: str | None, as_json: bool) -> None:
    """Reconcile PROJECT_ID's approved invoices against its estimate."""
    config = Config()
    if estimate_csv:
        config.estimates_csv = Path(estimate_csv)
    processor = InvoiceProcessor(config)
    estimate = EstimateLoader(config.estimates_csv).load(project_id)
    result = processor.match_project(project_id, estimate)

    if as_json:
        click.echo(result.model_dump_json(indent=2))
        return

    click.echo(f"\n=== Project {project_id}: {len(result.invoice_ids)} approved invoice(s) ===\n")
    click.echo(f"  {'Category':<28} {'Estimated':>12} {'Actual':>12} {'Variance':>12}  Status")
    for cat in result.categories:
        click.echo(
            f"  {cat.category_name[:28]:<28} {cat.estimated:>12,.2f} {cat.actual:>12,.2f} "
            f"{cat.variance:>+12,.2f}  {cat.status} ({cat.variance_pct:+.1f}%)"
        )
    click.echo(
        f"  {'TOTAL':<28} {result.total_estimated:>12,.2f} {result.total_actual:>12,.2f} "
        f"{result.total_variance:>+12,.2f}  ({result.total_variance_pct:+.1f}%)"
    )
    if result.unmatched:
        click.echo(f"\n  Unmatched line items ({len(result.unmatched)}, {result.unmatched_total:,.2f}):")
        for item in result.unmatched:
            click.echo(f"    - {item.description or '(no description)'}  {item.amount:,.2f}")
    click.echo()


# --------------------------------------------------------------------
# training-stats command
# --------------------------------------------------------------------

@cli.command("training-stats")
@click.pass_context
def training_stats(ctx: click.Context) -> None:
    """Show how much reviewer feedback the pipeline has learned from."""
    processor = InvoiceProcessor(Config())
    stats = processor.training.stats()

    click.echo("\n=== Training Data ===\n")
    click.echo(f"  Training examples:  {stats['training_examples']}")
    click.echo(f"  Learned patterns:   {stats['learned_patterns']}")
    if stats["corrections_by_field"]:
        click.echo("  Corrections by field:")
        for field, count in stats["corrections_by_field"].items():
            click.echo(f"    {field:<16} {count}")
    inv = stats["invoices"]
    click.echo(
        f"\n  Invoices: {inv.get('total', 0)} total, {inv.get('unreviewed', 0)} unreviewed, "
        f"{inv.get('approved', 0)} approved, {inv.get('rejected', 0)} rejected"
    )
    click.echo()


if __name__ == "__main__":
    cli()
