import logging
import os
import subprocess
import sys
import webbrowser
from functools import wraps
from typing import Optional

import typer
from rich.console import Console

from config import settings
from lending.database import initialize_database
from lending.errors import LendingError
from lending.library import Library
from utils.ui_helpers import (
    print_audit_result,
    print_loans_result,
    print_stats_result,
    print_titles_result,
    set_output_mode,
)

console = Console()

app = typer.Typer(help="Library lending CLI")


def _library(ctx: typer.Context) -> Library:
    if ctx.obj.get("library") is None:
        ctx.obj["library"] = Library(settings=settings, db_file=ctx.obj["db_file"])
    return ctx.obj["library"]


def report_errors(func):
    """Print lending failures as one line and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LendingError as e:
            print(f"Error: {e.message}")
            raise typer.Exit(code=1)
    return wrapper


@app.callback()
def _global_options(
    ctx: typer.Context,
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LENDING_DB_FILE)"),
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr"),
):
    """Global options for every command."""
    if output:
        set_output_mode(output)
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO) if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"db_file": db or settings.db_file, "library": None}


@app.command("init-db")
@report_errors
def cli_init_db(ctx: typer.Context):
    """Create the tables (or add missing columns) in the database file."""
    db_file = ctx.obj["db_file"]
    initialize_database(db_file, busy_timeout=settings.db_busy_timeout, lock_timeout=settings.lock_timeout)
    print(f"Database ready: {db_file}")


@app.command("create-user")
@report_errors
def cli_create_user(
    ctx: typer.Context,
    username: str,
    role: str = typer.Option("user", "--role", help="admin | user"),
    email: Optional[str] = typer.Option(None, "--email"),
    student_id: Optional[str] = typer.Option(None, "--student-id"),
):
    """Create an account and print its API key."""
    user = _library(ctx).users.create_user(username, role=role, email=email, student_id=student_id)
    print(f"Created user {user.id} ({user.username}, {user.role.value})")
    print(f"API key: {user.api_key}")


@app.command("add-title")
@report_errors
def cli_add_title(
    ctx: typer.Context,
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of physical copies"),
    publisher: Optional[str] = typer.Option(None, "--publisher"),
    publish_date: Optional[str] = typer.Option(None, "--publish-date"),
    price: float = typer.Option(0.0, "--price"),
):
    """Add a title to the catalog."""
    created = _library(ctx).catalog.create_title(
        title, author, copies, publisher=publisher, publish_date=publish_date, price=price
    )
    print(f"Added title {created.id}: {created.title} by {created.author} ({created.total_copies} copies)")


@app.command("titles")
@report_errors
def cli_titles(
    ctx: typer.Context,
    keyword: str = typer.Option("", "--keyword", "-k"),
    status: Optional[str] = typer.Option(None, "--status", help="IN_STOCK | ALL_LOANED"),
    page: int = typer.Option(1, "--page"),
    limit: Optional[int] = typer.Option(None, "--limit"),
):
    """List catalog titles with their availability."""
    lib = _library(ctx)
    titles, total = lib.catalog.list_titles(keyword=keyword, status=status, page=max(page, 1),
                                            limit=lib.page_size(limit))
    print_titles_result(titles, total)


@app.command("loans")
@report_errors
def cli_loans(
    ctx: typer.Context,
    user: Optional[int] = typer.Option(None, "--user", help="Only loans of this borrower id"),
    state: Optional[str] = typer.Option(None, "--state", help="OPEN | CLOSED"),
    keyword: str = typer.Option("", "--keyword", "-k"),
    page: int = typer.Option(1, "--page"),
    limit: Optional[int] = typer.Option(None, "--limit"),
):
    """List loans, oldest first."""
    rows, _ = _library(ctx).list_loans(borrower_id=user, keyword=keyword, state=state, page=page, limit=limit)
    print_loans_result(rows)


@app.command("borrow")
@report_errors
def cli_borrow(ctx: typer.Context, title_id: int, user_id: int):
    """Lend one copy of a title to a user."""
    loan_id = _library(ctx).borrow(title_id, user_id)
    print(f"Loan {loan_id} opened: title {title_id} -> user {user_id}")


@app.command("return")
@report_errors
def cli_return(ctx: typer.Context, loan_id: int):
    """Return a borrowed copy."""
    loan = _library(ctx).return_loan(loan_id)
    print(f"Loan {loan.id} returned.")


@app.command("delete-loan")
@report_errors
def cli_delete_loan(ctx: typer.Context, loan_id: int):
    """Remove a loan record; an open loan gives its copy back."""
    restored = _library(ctx).admin_delete_loan(loan_id)
    suffix = " Copy restored." if restored else ""
    print(f"Loan {loan_id} deleted.{suffix}")


@app.command("delete-title")
@report_errors
def cli_delete_title(
    ctx: typer.Context,
    title_id: int,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Delete a title together with all of its loans."""
    if not yes and not typer.confirm(f"Delete title {title_id} and all of its loans?"):
        print("Aborted.")
        raise typer.Exit(code=1)
    removed = _library(ctx).catalog.delete_title(title_id)
    print(f"Title {title_id} deleted ({removed} loan record(s) removed).")


@app.command("delete-user")
@report_errors
def cli_delete_user(
    ctx: typer.Context,
    user_id: int,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Delete a user; their open loans are returned first."""
    if not yes and not typer.confirm(f"Delete user {user_id}?"):
        print("Aborted.")
        raise typer.Exit(code=1)
    closed = _library(ctx).users.delete_user(user_id)
    print(f"User {user_id} deleted ({closed} open loan(s) auto-returned).")


@app.command("audit")
@report_errors
def cli_audit(ctx: typer.Context):
    """Check every title's available count against its open loans."""
    problems = _library(ctx).audit()
    print_audit_result(problems)
    if problems:
        raise typer.Exit(code=2)


@app.command("stats")
@report_errors
def cli_stats(ctx: typer.Context):
    """Show lending statistics."""
    print_stats_result(_library(ctx).get_statistics())


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Stop the server after N seconds"),
    open_browser: bool = typer.Option(True, "--browser/--no-browser"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    url = f"http://{host}:{port}/docs"
    console.print(f"[green]Starting API on [link={url}]{url}[/link][/]")

    if open_browser:
        try:
            webbrowser.open(url)
        except webbrowser.Error:
            console.print("[yellow]Could not open a web browser automatically.[/]")

    env = dict(os.environ, LENDING_DB_FILE=ctx.obj["db_file"])
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        if timeout and timeout > 0:
            proc = subprocess.Popen(args, env=env, start_new_session=os.name != "nt")
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
        else:
            if settings.debug:
                args.append("--reload")
            subprocess.run(args, env=env)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Is it installed?")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
