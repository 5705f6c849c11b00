import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LENDING_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _dump(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, default=str))


def print_titles_result(titles: List[Any], total: int | None = None) -> None:
    """Print titles in the current output mode.
    - plain: 'ID - Title by Author [available/total STATUS]' lines, or 'No titles in library.'
    - json: JSON array of title dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not titles:
        print("No titles in library.")
        return

    if mode == "json":
        _dump([t.to_dict() for t in titles])
    elif mode == "rich":
        table = Table(title="📚 Titles", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Available", justify="right")
        table.add_column("Status")
        for t in titles:
            style = "red" if t.status.value == "ALL_LOANED" else "green"
            table.add_row(str(t.id), t.title, t.author, f"{t.available_copies}/{t.total_copies}",
                          f"[{style}]{t.status.value}[/]")
        _console.print(table)
    else:
        for t in titles:
            print(f"{t.id} - {t.title} by {t.author} [{t.available_copies}/{t.total_copies} {t.status.value}]")
    if total is not None and total > len(titles) and mode != "json":
        print(f"Showing {len(titles)} of {total}.")


def print_loans_result(loans: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()

    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        _dump(loans)
    elif mode == "rich":
        table = Table(title="🔖 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Borrower", style="white")
        table.add_column("Opened")
        table.add_column("State")
        for loan in loans:
            table.add_row(str(loan["id"]), loan["title"], loan.get("username") or "-",
                          loan["opened_at"][:19], loan["state"])
        _console.print(table)
    else:
        for loan in loans:
            borrower = loan.get("username") or "(deleted user)"
            print(f"{loan['id']} - {loan['title']} -> {borrower} [{loan['state']}]")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print the statistics overview.
    - plain: one 'Label: value' line per counter
    - json: JSON object
    - rich: Panel with the main counters and the trend
    """
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        _dump(stats)
    elif mode == "rich":
        trend = "  ".join(f"{p['day'][5:]}: {p['total']}" for p in stats.get("trend", []))
        content = (
            f"[bold]Titles:[/] {stats['books']}\n"
            f"[bold]Users:[/] {stats['users']}\n"
            f"[bold]Borrowed:[/] {stats['borrowed']}\n"
            f"[bold]In Library:[/] {stats['in_library']}\n"
            f"[bold]Borrow Rate:[/] {stats['borrow_rate']}%\n"
            f"[dim]{trend}[/]"
        )
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        print(f"Titles: {stats['books']}")
        print(f"Users: {stats['users']}")
        print(f"Borrowed: {stats['borrowed']}")
        print(f"In Library: {stats['in_library']}")
        print(f"Borrow Rate: {stats['borrow_rate']}%")


def print_audit_result(problems: List[Dict[str, Any]]) -> None:
    mode = get_output_mode()

    if mode == "json":
        _dump({"consistent": not problems, "problems": problems})
        return
    if not problems:
        print("Ledger is consistent.")
        return
    if mode == "rich":
        table = Table(title="⚠️ Ledger mismatches", show_lines=True, header_style="bold red")
        for column in ("Title ID", "Title", "Total", "Available", "Open loans", "Expected"):
            table.add_column(column)
        for p in problems:
            table.add_row(str(p["title_id"]), p["title"], str(p["total_copies"]), str(p["available_copies"]),
                          str(p["open_loans"]), str(p["expected_available"]))
        _console.print(table)
    else:
        for p in problems:
            print(f"Title {p['title_id']} ({p['title']}): available {p['available_copies']}, "
                  f"expected {p['expected_available']} ({p['open_loans']} open of {p['total_copies']})")
