"""Rich consoles and the output helpers shared by the kyc-secure commands.

Human-readable output (status lines, panels, tables) goes to stderr; with
``--json`` the data goes to stdout instead so it can be piped to jq.
"""

import json
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console(stderr=True)
stdout_console = Console()

# Cell styles for audit outcomes
OUTCOME_STYLES: Dict[str, str] = {
    "success": "green",
    "failure": "bold red",
}


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json"))


def print_ok(msg: str) -> None:
    console.print(f"[green]✓[/green] {msg}")


def print_err(msg: str) -> None:
    console.print(f"[red]✗[/red] {msg}")


def output_result(data: dict, *, ctx: typer.Context, title: str = "") -> None:
    """Print a single result: JSON on stdout, or an indented panel on stderr."""
    if _wants_json(ctx):
        stdout_console.print_json(data=data)
        return

    body = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    console.print(Panel(body, title=title or None, border_style="blue"))


def output_table(
    rows: List[dict],
    *,
    ctx: typer.Context,
    title: str = "",
    columns: Optional[List[str]] = None,
    styles: Optional[Dict[str, Dict[str, str]]] = None,
) -> None:
    """Print rows as a JSON array or a Rich table.

    Args:
        rows: One dict per row.
        ctx: Typer context carrying the ``json`` flag.
        title: Table title.
        columns: Columns to show (defaults to the first row's keys).
        styles: Per-column map of cell value to Rich style, e.g.
            ``{"outcome": OUTCOME_STYLES}``.
    """
    if _wants_json(ctx):
        stdout_console.print_json(data=rows)
        return

    if not rows:
        console.print(f"[dim]{title or 'Table'}: no rows[/dim]")
        return

    styles = styles or {}
    cols = columns or list(rows[0].keys())
    table = Table(title=title)
    for col in cols:
        table.add_column(col.replace("_", " "))
    for row in rows:
        cells = []
        for col in cols:
            text = str(row.get(col, ""))
            style = styles.get(col, {}).get(text)
            cells.append(f"[{style}]{text}[/{style}]" if style else text)
        table.add_row(*cells)
    console.print(table)
