"""Audit ledger commands: verify-ledger and audit."""

from pathlib import Path
from typing import Optional

import typer

from kyc_secure.cli._app import app
from kyc_secure.cli._common import setup_logging
from kyc_secure.cli._console import (
    OUTCOME_STYLES,
    console,
    output_result,
    output_table,
    print_err,
    print_ok,
)


def _ledger_file(path: Path) -> Path:
    from kyc_secure.services.audit_ledger import LEDGER_FILE_NAME

    return path / LEDGER_FILE_NAME if path.is_dir() else path


@app.command("verify-ledger", help="Verify the hash chain of an audit ledger.")
def verify_ledger_cmd(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Audit directory or audit.jsonl file"),
):
    """Walk the chain and report the first break. Exit code 1 if broken."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    from kyc_secure.services.audit_ledger import AuditLedger

    if not path.exists():
        print_err(f"Ledger not found: {path}")
        raise SystemExit(2)

    report = AuditLedger.verify_file(_ledger_file(path))

    if ctx.obj["json"]:
        output_result(report.model_dump(mode="json"), ctx=ctx)
    elif report.valid:
        if not ctx.obj["quiet"]:
            print_ok(f"Ledger intact ({report.total_entries} entries)")
    else:
        print_err(f"Ledger broken at entry {report.break_at_index} ({report.error_type})")
        if report.error_details:
            console.print(f"  {report.error_details}")

    if not report.valid:
        raise SystemExit(1)


@app.command("audit", help="List audit ledger entries.")
def audit_cmd(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Audit directory or audit.jsonl file"),
    operation: Optional[str] = typer.Option(None, "--operation", help="Filter by operation"),
    field_type: Optional[str] = typer.Option(None, "--field-type", help="Filter by field type"),
    outcome: Optional[str] = typer.Option(None, "--outcome", help="success or failure"),
    subject: Optional[str] = typer.Option(None, "--subject", help="Filter by record id"),
    limit: int = typer.Option(100, "--limit", help="Maximum entries to show"),
):
    """Show entries matching the filters as a table (or JSON with --json)."""
    setup_logging(verbose=ctx.obj["verbose"], quiet=ctx.obj["quiet"])

    from kyc_secure.schemas.audit_entry import AuditQuery
    from kyc_secure.services.audit_ledger import AuditLedger, filter_entries

    if not path.exists():
        print_err(f"Ledger not found: {path}")
        raise SystemExit(2)

    try:
        query = AuditQuery(
            operation=operation,
            field_type=field_type,
            outcome=outcome,
            subject_id=subject,
            limit=limit,
        )
    except ValueError as e:
        print_err(f"Invalid filter: {e}")
        raise SystemExit(2)

    try:
        entries = AuditLedger.read_file(_ledger_file(path))
    except ValueError as e:
        print_err(str(e))
        raise SystemExit(1)

    rows = [
        {
            "timestamp": entry.timestamp.isoformat(),
            "operation": entry.operation.value,
            "field_type": entry.field_type.value if entry.field_type else "",
            "outcome": entry.outcome.value,
            "generation": "" if entry.actor_key_generation is None else entry.actor_key_generation,
            "subject_id": entry.subject_id or "",
            "detail": entry.detail or "",
        }
        for entry in filter_entries(entries, query)
    ]
    output_table(
        rows,
        ctx=ctx,
        title=f"Audit entries ({len(rows)})",
        styles={"outcome": OUTCOME_STYLES},
    )
