import asyncio
import logging
import os
import subprocess
import sys
import webbrowser
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console

from bookwize.config import settings
from bookwize.errors import LibraryError
from bookwize.models import BookRequestStatus, PaymentMethod, utcnow
from bookwize.services.circulation import CirculationService, build_circulation_service
from bookwize.ui_helpers import (
    print_balance_result,
    print_book_request_result,
    print_book_requests_result,
    print_book_result,
    print_fine_result,
    print_import_result,
    print_loans_result,
    set_output_mode,
)

APP_NAME = "BookWize circulation desk"

console = Console()

T = TypeVar("T")


def get_service() -> CirculationService:
    return build_circulation_service(settings)


def _now():
    return utcnow()


def _run(action: Callable[[CirculationService], Awaitable[T]]) -> T:
    """Run one service call on a fresh event loop; errors exit with status 1."""
    async def runner():
        service = get_service()
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except (LibraryError, ValueError) as e:
        print(f"Error: {e}")
        raise typer.Exit(code=1)


# --- Typer CLI app ---
app = typer.Typer(help=APP_NAME)

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    logging.basicConfig(level=settings.log_level.upper(),
                        format="%(levelname)s %(name)s: %(message)s")
    if output:
        set_output_mode(output)

@app.command("issue")
def cli_issue(isbn: str, member_id: str):
    """Lend one copy of ISBN to a member."""
    now = _now()
    record = _run(lambda svc: svc.issue_book(isbn, member_id, now))
    print(f"Issued {record.isbn} to {record.member_id}: loan {record.id}, due {record.due_date:%Y-%m-%d}")

@app.command("return")
def cli_return(
    loan_id: str,
    damage: Optional[str] = typer.Option(None, "--damage", "-d", help="Damage fine to charge on return"),
):
    """Take back a loaned copy; overdue and damage fines are assessed."""
    damage_fine = None
    if damage is not None:
        try:
            damage_fine = Decimal(damage)
        except InvalidOperation:
            print(f"Error: invalid amount {damage!r}")
            raise typer.Exit(code=1)
    now = _now()
    result = _run(lambda svc: svc.return_book(loan_id, now, damage_fine=damage_fine))
    print(f"Returned loan {result.record.id}")
    for fine in result.fines:
        print_fine_result(fine)

@app.command("renew")
def cli_renew(loan_id: str):
    """Extend a loan by the member's loan period."""
    now = _now()
    record = _run(lambda svc: svc.renew_loan(loan_id, now))
    print(f"Renewed loan {record.id} until {record.due_date:%Y-%m-%d} (renewal {record.renewal_count})")

@app.command("loans")
def cli_loans(member_id: str):
    """List a member's open loans."""
    now = _now()
    loans = _run(lambda svc: svc.open_loans(member_id))
    print_loans_result(loans, title=f"Loans of {member_id}", now=now)

@app.command("overdue")
def cli_overdue():
    """List every overdue loan."""
    now = _now()
    loans = _run(lambda svc: svc.overdue_loans(now))
    print_loans_result(loans, title="Overdue loans", now=now)

@app.command("balance")
def cli_balance(member_id: str):
    """Show what a member owes, including fines still accruing."""
    now = _now()
    balance = _run(lambda svc: svc.outstanding_balance(member_id, now))
    print_balance_result(member_id, balance)

@app.command("pay")
def cli_pay(
    fine_id: str,
    method: PaymentMethod = typer.Option(PaymentMethod.CASH, "--method", "-m", help="cash | card | online"),
):
    """Settle a pending fine."""
    now = _now()
    print_fine_result(_run(lambda svc: svc.pay_fine(fine_id, method, now)))

@app.command("waive")
def cli_waive(fine_id: str):
    """Waive a pending fine."""
    now = _now()
    print_fine_result(_run(lambda svc: svc.waive_fine(fine_id, now)))

@app.command("import-csv")
def cli_import_csv(file_path: str):
    """Import books from a CSV file (ISBN,Title,Author,Publisher,Quantity)."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        raise typer.Exit(code=1)
    with open(file_path, "r", encoding="utf-8") as f:
        content = f.read()
    now = _now()
    report = _run(lambda svc: svc.inventory.import_csv(content, now=now))
    print_import_result(report.to_dict())

@app.command("find")
def cli_find(isbn: str):
    """Find a book by ISBN and show its copy counts."""
    print_book_result(_run(lambda svc: svc.get_book(isbn)))

@app.command("request")
def cli_request(
    title: str,
    author: str,
    quantity: int = typer.Option(1, "--quantity", "-q", help="Copies wanted"),
    reason: str = typer.Option("", "--reason", "-r", help="Why the title is needed"),
):
    """Ask for a title to be added to the catalog."""
    now = _now()
    print_book_request_result(_run(lambda svc: svc.request_book(title, author, quantity, reason, now)))

@app.command("requests")
def cli_requests(
    status: Optional[BookRequestStatus] = typer.Option(None, "--status", "-s", help="pending | approved | rejected"),
):
    """List book requests, newest first."""
    print_book_requests_result(_run(lambda svc: svc.book_requests(status)))

@app.command("approve")
def cli_approve(
    request_id: str,
    isbn: Optional[str] = typer.Option(None, "--isbn", help="Catalog the requested copies under this ISBN"),
):
    """Approve a pending book request."""
    now = _now()
    print_book_request_result(_run(lambda svc: svc.approve_book_request(request_id, now, isbn=isbn)))

@app.command("reject")
def cli_reject(request_id: str):
    """Reject a pending book request."""
    now = _now()
    print_book_request_result(_run(lambda svc: svc.reject_book_request(request_id, now)))

@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before exiting (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    try:
        webbrowser.open(url)
    except webbrowser.Error:
        console.print("[yellow]Could not open a web browser.[/]")

    args = [
        sys.executable,
        "-m", "uvicorn",
        "bookwize.api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        if timeout and timeout > 0:
            # no reloader, so terminate() reaches the server itself
            start_new_session = os.name != "nt"
            proc = subprocess.Popen(args, start_new_session=start_new_session)
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=3)
        else:
            args.append("--reload")
            subprocess.run(args)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not launch uvicorn. Make sure it is installed.")
        raise typer.Exit(code=1)

if __name__ == "__main__":
    app()
