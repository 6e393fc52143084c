import os
import json
from decimal import Decimal
from typing import List, Any, Dict, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def _date(value) -> str:
    return value.strftime("%Y-%m-%d") if value else "-"

def print_loans_result(loans: List[Any], title: str = "Loans", now=None) -> None:
    """Print loans in the current output mode.
    - plain: 'id  isbn  due YYYY-MM-DD' lines, or 'No loans.'
    - json: array of loan records
    - rich: Rich table, overdue rows in red
    """
    mode = get_output_mode()

    if not loans:
        print("No loans.")
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("ISBN", style="white")
        table.add_column("Member", style="white")
        table.add_column("Due", style="white")
        table.add_column("Renewals", justify="right")
        for loan in loans:
            overdue = now is not None and loan.is_overdue(now)
            table.add_row(loan.id, loan.isbn, loan.member_id, _date(loan.due_date),
                          str(loan.renewal_count), style="red" if overdue else None)
        _console.print(table)
    else:
        for loan in loans:
            flag = " OVERDUE" if now is not None and loan.is_overdue(now) else ""
            print(f"{loan.id}  {loan.isbn}  member {loan.member_id}  due {_date(loan.due_date)}{flag}")

def print_balance_result(member_id: str, balance: Decimal) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps({"member_id": member_id, "balance": str(balance)}))
    elif mode == "rich":
        style = "green" if balance == 0 else "yellow"
        _console.print(Panel.fit(f"[bold]Outstanding:[/] {balance}", title=f"Member {member_id}", border_style=style))
    else:
        print(f"Outstanding balance for {member_id}: {balance}")

def print_fine_result(fine: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(fine.to_dict(), ensure_ascii=False))
    else:
        print(f"Fine {fine.id}: {fine.amount} ({fine.reason.value}) is {fine.status.value}")

def print_book_result(book: Optional[Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(book.to_dict(), ensure_ascii=False))
    elif mode == "rich":
        content = (f"[bold]Title:[/] {book.title}\n[bold]Author:[/] {book.author}\n"
                   f"[bold]ISBN:[/] {book.isbn}\n"
                   f"[bold]Available:[/] {book.available_quantity}/{book.quantity}")
        _console.print(Panel.fit(content, title="Book", border_style="green"))
    else:
        print("Book Found")
        print(f"Title: {book.title}")
        print(f"Author: {book.author}")
        print(f"ISBN: {book.isbn}")
        print(f"Available: {book.available_quantity}/{book.quantity}")

def print_import_result(report: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(report, ensure_ascii=False))
        return
    print(f"Import complete: {report['added']} added, {report['merged']} merged, {report['skipped']} skipped")
    for err in report.get("errors", []):
        print(f"  {err}")

def print_book_requests_result(requests: List[Any]) -> None:
    """Print book requests, newest first, in the current output mode."""
    mode = get_output_mode()

    if not requests:
        print("No book requests.")
        return

    if mode == "json":
        print(json.dumps([r.to_dict() for r in requests], ensure_ascii=False))
    elif mode == "rich":
        colors = {"pending": "yellow", "approved": "green", "rejected": "red"}
        table = Table(title="Book requests", show_lines=True, header_style="bold cyan")
        table.add_column("Request", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Qty", justify="right")
        table.add_column("Status")
        for r in requests:
            status = r.status.value
            table.add_row(r.id, r.title, r.author, str(r.quantity), f"[{colors[status]}]{status}[/]")
        _console.print(table)
    else:
        for r in requests:
            print(f"{r.id}  {r.quantity} x {r.title} by {r.author}  [{r.status.value}]")

def print_book_request_result(request: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(request.to_dict(), ensure_ascii=False))
    else:
        print(f"Book request {request.id} ({request.quantity} x {request.title}) is {request.status.value}")
