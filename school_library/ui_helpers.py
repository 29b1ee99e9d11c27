import json
import os
from typing import Any, Dict, List, Sequence, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

Column = Tuple[str, str]


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _cell(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def print_rows(
    rows: List[Dict[str, Any]],
    columns: Sequence[Column],
    *,
    title: str,
    empty_message: str,
) -> None:
    """Print a list of dicts in the current output mode.

    - plain: one ``key=value`` line per row, or ``empty_message``
    - json: JSON array of the full dicts
    - rich: Rich table with ``columns`` (``(key, header)`` pairs)
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
        return

    if not rows:
        print(empty_message)
        return

    if mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for i, (_, header) in enumerate(columns):
            table.add_column(header, style="magenta" if i == 0 else "white", no_wrap=i == 0)
        for row in rows:
            table.add_row(*(_cell(row.get(key)) for key, _ in columns))
        _console.print(table)
    else:
        for row in rows:
            print("  ".join(f"{header}: {_cell(row.get(key))}" for key, header in columns))


def print_mapping(data: Dict[str, Any], *, title: str, labels: Sequence[Column] = ()) -> None:
    """Print a single object (stats, a receipt, a report) in the current output mode."""
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
        return
    pairs = list(labels) or [(key, key.replace("_", " ").title()) for key in data]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {_cell(data.get(key))}" for key, label in pairs)
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        for key, label in pairs:
            print(f"{label}: {_cell(data.get(key))}")


def print_error(message: str, **details: Any) -> None:
    if get_output_mode() == "json":
        print(json.dumps({"error": message, **details}, ensure_ascii=False, default=str))
    elif get_output_mode() == "rich":
        _console.print(f"[bold red]Error:[/] {message}")
    else:
        print(f"Error: {message}")
