"""CLI for Debt Ledger using Typer."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation

import typer
from rich.console import Console
from rich.table import Table

from .clients.ledger_api import LedgerApiClient
from .config import Settings, load_settings
from .credentials import (
    DatabaseCredentialStore,
    MappingCredentialStore,
    build_credential_provider,
    mask_token,
)
from .db import Database
from .diagnostics import check_auth, describe_credentials, needs_refresh, validate_token
from .exceptions import DebtLedgerError
from .models import (
    Debt,
    DebtDirection,
    DebtInput,
    LedgerUser,
    OperationResult,
    Participant,
    PaymentMethod,
)
from .notifications import NotificationService, format_notification_message
from .reporting import ReportingService
from .service import DebtLedgerService, SplitExpenseService

app = typer.Typer(
    name="debt-ledger",
    help="Track debts and split expenses with friends",
)
debts_app = typer.Typer(help="Manage debts")
split_app = typer.Typer(help="Manage split expenses")
notifications_app = typer.Typer(help="Read and manage notifications")
auth_app = typer.Typer(help="Manage and inspect credentials")

app.add_typer(debts_app, name="debts")
app.add_typer(split_app, name="split")
app.add_typer(notifications_app, name="notifications")
app.add_typer(auth_app, name="auth")

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@dataclass
class Session:
    """Services wired together for one CLI invocation."""

    settings: Settings
    db: Database
    client: LedgerApiClient
    ledger: DebtLedgerService
    splits: SplitExpenseService
    notifier: NotificationService
    reporting: ReportingService


@asynccontextmanager
async def open_session(settings: Settings) -> AsyncIterator[Session]:
    """Open the database and API client, and drain notifications on exit."""
    db = Database(settings.database_path)
    current_user = (
        LedgerUser(id=settings.user_id, name=settings.user_name)
        if settings.user_id
        else None
    )
    try:
        credentials = build_credential_provider(settings, db)
        async with LedgerApiClient.from_settings(settings, credentials) as client:
            notifier = NotificationService(client)
            ledger = DebtLedgerService(settings, client, db, notifier, current_user)
            session = Session(
                settings=settings,
                db=db,
                client=client,
                ledger=ledger,
                splits=SplitExpenseService(settings, client, notifier, current_user),
                notifier=notifier,
                reporting=ReportingService(ledger),
            )
            yield session
            await ledger.drain_notifications()
            await session.splits.drain_notifications()
    finally:
        db.close()


def run(coro, verbose: bool = False):
    """Run a command coroutine, turning errors into a clean exit."""
    setup_logging(verbose)
    try:
        return asyncio.run(coro)
    except DebtLedgerError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        raise typer.Exit(1) from e


def check(result: OperationResult) -> OperationResult:
    """Print a failed result and exit non-zero."""
    if result.success:
        return result
    console.print(f"[bold red]Error:[/bold red] {result.message}")
    for error in result.errors:
        console.print(f"  - {error}")
    if result.auth_error:
        console.print("[yellow]Run 'debt-ledger auth login <token>' first.[/yellow]")
    raise typer.Exit(1)


def format_money(amount: Decimal | float, symbol: str = "₹", use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (₹85.02)
    Positive amounts have spaces:      ₹85.02
    """
    abs_amount = abs(amount)
    if amount < 0:
        if use_color:
            return f"({symbol}[red]{abs_amount:,.2f}[/red])"
        return f"({symbol}{abs_amount:,.2f})"
    if use_color:
        return f" [green]{symbol}{abs_amount:,.2f}[/green] "
    return f" {symbol}{abs_amount:,.2f} "


def display_debts(debts: list[Debt], title: str, symbol: str):
    """Display debts in a table."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Counterparty", style="cyan")
    table.add_column("Description", width=36)
    table.add_column("Amount", justify="right", width=14)
    table.add_column("Due", style="yellow")
    table.add_column("Status")

    for debt in debts:
        party = debt.counterparty
        name = (party.name or party.email) if party else None
        table.add_row(
            debt.id,
            name or debt.friend_email or debt.friend_id or "Unknown User",
            debt.description,
            format_money(debt.amount, symbol),
            debt.due_date.isoformat() if debt.due_date else "-",
            "✓ paid" if debt.is_paid else "⏱ pending",
        )

    console.print(table)


# ============================================================================
# Debts
# ============================================================================


@debts_app.command("list")
def list_debts(
    by_me: bool = typer.Option(False, "--by-me", help="Show debts you owe"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List debts owed to you (or by you with --by-me)."""

    async def _run():
        settings = load_settings()
        async with open_session(settings) as session:
            if by_me:
                result = await session.ledger.fetch_debts_owed_by_me()
                title = "Debts you owe"
            else:
                result = await session.ledger.fetch_debts_owed_to_me()
                title = "Debts owed to you"
            check(result)
            display_debts(result.debts, title, settings.currency_symbol)
            console.print(
                f"  {result.count} debts, total "
                f"{format_money(result.total_amount, settings.currency_symbol)}"
            )

    run(_run(), verbose)


@debts_app.command("create")
def create_debt(
    amount: str = typer.Option(..., "--amount", "-a", help="Amount owed"),
    description: str = typer.Option(..., "--description", "-d", help="What it is for"),
    direction: DebtDirection = typer.Option(
        ..., "--type", "-t", help="owe-me: they owe you, i-owe: you owe them"
    ),
    friend_id: str | None = typer.Option(None, "--friend-id", help="Friend's user id"),
    friend_email: str | None = typer.Option(
        None, "--friend-email", help="Friend's email"
    ),
    due_date: str | None = typer.Option(None, "--due", help="Due date (YYYY-MM-DD)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a debt between you and a friend."""

    async def _run():
        settings = load_settings()
        async with open_session(settings) as session:
            result = check(
                await session.ledger.create_manual_debt(
                    DebtInput(
                        friend_id=friend_id,
                        friend_email=friend_email,
                        amount=amount,
                        description=description,
                        direction=direction.value,
                        due_date=due_date,
                    )
                )
            )
            console.print(f"[bold green]✓ {result.message}[/bold green] ({result.debt.id})")

    run(_run(), verbose)


@debts_app.command("pay")
def pay_debt(
    debt_id: str = typer.Argument(..., help="Debt to mark as paid"),
    method: PaymentMethod | None = typer.Option(
        None, "--method", "-m", help="Payment method"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Mark a debt as paid."""

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(await session.ledger.mark_debt_as_paid(debt_id, method))
            suffix = f" Method: {method.value}" if method else ""
            console.print(f"[bold green]✓ {result.message}[/bold green]{suffix}")

    run(_run(), verbose)


@debts_app.command("delete")
def delete_debt(
    debt_id: str = typer.Argument(..., help="Debt to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Delete a debt."""
    if not yes and not typer.confirm(f"Delete debt {debt_id}?"):
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(0)

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(await session.ledger.delete_debt(debt_id))
            console.print(f"[bold green]✓ {result.message}[/bold green]")

    run(_run(), verbose)


@debts_app.command("remind")
def remind(
    debt_id: str = typer.Argument(..., help="Debt to send a reminder about"),
    message: str = typer.Option("Payment reminder", "--message", "-m"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Send a payment reminder for an open debt."""

    async def _run():
        async with open_session(load_settings()) as session:
            owed_to_me = check(await session.ledger.fetch_debts_owed_to_me())
            debt = next((d for d in owed_to_me.debts if d.id == debt_id), None)
            result = check(
                await session.ledger.send_payment_reminder(debt or debt_id, message)
            )
            console.print(f"[bold green]✓ {result.message}[/bold green]")

    run(_run(), verbose)


@debts_app.command("overview")
def overview(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the server-computed debt overview."""

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(await session.reporting.get_debt_overview())
            table = Table(title="Debt Overview", show_header=False)
            for key, value in (result.overview or {}).items():
                table.add_row(str(key), str(value))
            console.print(table)

    run(_run(), verbose)


@debts_app.command("summary")
def summary(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Summarize both sides of the ledger."""

    async def _run():
        settings = load_settings()
        symbol = settings.currency_symbol
        async with open_session(settings) as session:
            result = check(await session.reporting.build_summary())
            s = result.summary
            console.print("\n[bold]Summary:[/bold]")
            console.print(
                f"  Owed to you: {format_money(s.total_owed_to_me, symbol)} "
                f"({s.owed_to_me_count} debts)"
            )
            console.print(
                f"  You owe:     {format_money(s.total_owed_by_me, symbol)} "
                f"({s.owed_by_me_count} debts)"
            )
            console.print(f"  Net balance: {format_money(s.net_balance, symbol)}")
            console.print(f"  Open: {s.open_count}  Paid: {s.paid_count}")
            if s.overdue:
                display_debts(s.overdue, "Overdue", symbol)

    run(_run(), verbose)


# ============================================================================
# Split expenses
# ============================================================================


def parse_participant(value: str) -> Participant:
    """Parse USER_ID:AMOUNT."""
    user_id, sep, amount = value.rpartition(":")
    if not sep or not user_id:
        raise typer.BadParameter(f"Expected USER_ID:AMOUNT, got '{value}'")
    try:
        share = Decimal(amount.strip())
    except InvalidOperation:
        raise typer.BadParameter(f"Invalid amount '{amount}' in '{value}'") from None
    if not share.is_finite():
        raise typer.BadParameter(f"Invalid amount '{amount}' in '{value}'")
    return Participant(user_id=user_id, amount=share)


def parse_date(value: str | None) -> date | None:
    """Parse an optional YYYY-MM-DD date."""
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Expected a YYYY-MM-DD date, got '{value}'") from None


@split_app.command("create")
def create_split(
    description: str = typer.Option(..., "--description", "-d"),
    total: str = typer.Option(..., "--total", help="Total amount"),
    participants: list[str] = typer.Option(
        ..., "--participant", "-p", help="USER_ID:AMOUNT (repeat; include yourself)"
    ),
    category: str = typer.Option("other", "--category", "-c"),
    expense_date: str | None = typer.Option(None, "--date", help="YYYY-MM-DD"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a split expense and notify the participants."""
    shares = [parse_participant(p) for p in participants]
    when = parse_date(expense_date)

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(
                await session.splits.create_split_expense(
                    description,
                    total,
                    shares,
                    category=category,
                    expense_date=when,
                )
            )
            console.print(f"[bold green]✓ {result.message}[/bold green]")
            fan_out = result.notifications
            if fan_out is not None:
                console.print(
                    f"  Notified {fan_out.notifications_sent} of "
                    f"{fan_out.total_participants} participants"
                )
                for delivery in fan_out.details:
                    if not delivery.success:
                        console.print(f"  [yellow]⚠ {delivery.user_id}: {delivery.error}[/yellow]")

    run(_run(), verbose)


@split_app.command("list")
def list_splits(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List your split expenses."""

    async def _run():
        settings = load_settings()
        async with open_session(settings) as session:
            result = check(await session.splits.fetch_split_expenses())
            table = Table(title="Split Expenses", header_style="bold magenta")
            table.add_column("Date")
            table.add_column("Description", style="cyan")
            table.add_column("Category")
            table.add_column("Total", justify="right")
            table.add_column("People", justify="right")
            for expense in result.expenses:
                table.add_row(
                    expense.date.isoformat(),
                    expense.description,
                    expense.category,
                    format_money(expense.total_amount, settings.currency_symbol),
                    str(len(expense.participants)),
                )
            console.print(table)

    run(_run(), verbose)


@split_app.command("show")
def show_split(
    expense_id: str = typer.Argument(..., help="Split expense to show"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show one split expense and its participants."""

    async def _run():
        settings = load_settings()
        symbol = settings.currency_symbol
        async with open_session(settings) as session:
            expense = check(await session.splits.get_split_expense(expense_id)).expense
            console.print(
                f"\n[bold]{expense.description}[/bold] ({expense.category}, "
                f"{expense.date.isoformat()}) {format_money(expense.total_amount, symbol)}"
            )
            table = Table(header_style="bold magenta")
            table.add_column("Participant", style="cyan")
            table.add_column("Share", justify="right")
            table.add_column("Paid")
            for p in expense.participants:
                table.add_row(
                    p.name or p.user_id,
                    format_money(p.amount, symbol),
                    "✓" if p.paid else "",
                )
            console.print(table)

    run(_run(), verbose)


@split_app.command("delete")
def delete_split(
    expense_id: str = typer.Argument(..., help="Split expense to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Delete a split expense."""
    if not yes and not typer.confirm(f"Delete split expense {expense_id}?"):
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(0)

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(await session.splits.delete_split_expense(expense_id))
            console.print(f"[bold green]✓ {result.message}[/bold green]")

    run(_run(), verbose)


@split_app.command("summary")
def split_summary(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the server-computed split expense summary."""

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(await session.splits.get_expense_summary())
            table = Table(title="Split Expense Summary", show_header=False)
            for key, value in (result.summary or {}).items():
                table.add_row(str(key), str(value))
            console.print(table)

    run(_run(), verbose)


@split_app.command("balance")
def balance(
    friend_id: str = typer.Argument(..., help="Friend's user id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show your net split-expense balance with a friend."""

    async def _run():
        settings = load_settings()
        async with open_session(settings) as session:
            result = check(await session.splits.get_balance_with_friend(friend_id))
            if result.balance is None:
                console.print(f"[yellow]No balance reported for {friend_id}[/yellow]")
                return
            if result.balance > 0:
                label = "owes you"
            elif result.balance < 0:
                label = "you owe"
            else:
                label = "settled up"
            console.print(
                f"  {friend_id}: {format_money(result.balance, settings.currency_symbol)}"
                f" ({label})"
            )

    run(_run(), verbose)


@split_app.command("settle")
def settle(
    friend_id: str = typer.Argument(..., help="Friend you are paying"),
    amount: str = typer.Option(..., "--amount", "-a", help="Amount paid"),
    method: PaymentMethod | None = typer.Option(
        None, "--method", "-m", help="Payment method"
    ),
    note: str | None = typer.Option(None, "--note", help="Note for your friend"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a settle-up payment to a friend."""

    async def _run():
        settings = load_settings()
        async with open_session(settings) as session:
            result = check(
                await session.splits.settle_with_friend(friend_id, amount, method, note)
            )
            console.print(
                f"[bold green]✓ {result.message}[/bold green] "
                f"{format_money(result.amount, settings.currency_symbol)} to {friend_id}"
            )

    run(_run(), verbose)


# ============================================================================
# Notifications
# ============================================================================


@notifications_app.command("list")
def list_notifications(
    unread: bool = typer.Option(False, "--unread", "-u", help="Only unread"),
    limit: int = typer.Option(50, "--limit", "-n"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List your notifications."""

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(
                await session.notifier.fetch_notifications(unread_only=unread, limit=limit)
            )
            table = Table(title=f"Notifications ({result.unread_count} unread)")
            table.add_column("ID", style="dim")
            table.add_column("Type", style="cyan")
            table.add_column("Message")
            for n in result.notifications:
                try:
                    text = format_notification_message(n.type, n.payload)["message"]
                except (KeyError, ValueError, TypeError):
                    text = n.payload.get("message", "")
                marker = "" if n.read else "[bold]● [/bold]"
                table.add_row(n.id, n.type.value, f"{marker}{text}")
            console.print(table)

    run(_run(), verbose)


@notifications_app.command("read")
def read_notification(
    notification_id: str = typer.Argument(...),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Mark a notification as read."""

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(await session.notifier.mark_notification_as_read(notification_id))
            console.print(f"[green]✓ {result.message}[/green]")

    run(_run(), verbose)


@notifications_app.command("read-all")
def read_all_notifications(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Mark every notification as read."""

    async def _run():
        async with open_session(load_settings()) as session:
            result = check(await session.notifier.mark_all_notifications_as_read())
            console.print(f"[green]✓ {result.message}[/green]")

    run(_run(), verbose)


# ============================================================================
# Auth
# ============================================================================


@auth_app.command("login")
def login(token: str = typer.Argument(..., help="Bearer token from the auth provider")):
    """Store a bearer token in the local database."""
    settings = load_settings()
    db = Database(settings.database_path)
    try:
        DatabaseCredentialStore(db).save_token(token)
        console.print(f"[green]✓ Token stored[/green] ({mask_token(token)})")
    finally:
        db.close()


@auth_app.command("logout")
def logout():
    """Remove stored bearer tokens."""
    settings = load_settings()
    db = Database(settings.database_path)
    try:
        removed = DatabaseCredentialStore(db).clear()
        console.print(f"[green]✓ Removed {removed} stored token(s)[/green]")
    finally:
        db.close()


@auth_app.command("status")
def status(
    verify: bool = typer.Option(False, "--verify", help="Ask the server to verify the token"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show where credentials were found and whether they look valid."""

    async def _run():
        settings = load_settings()
        async with open_session(settings) as session:
            stores = [
                DatabaseCredentialStore(session.db),
                MappingCredentialStore({"authToken": settings.auth_token}),
            ]
            table = Table(title="Credential sources", header_style="bold magenta")
            table.add_column("Source")
            table.add_column("Present")
            table.add_column("Preview", style="dim")
            for source in describe_credentials(stores):
                table.add_row(
                    source["source"],
                    "✓" if source["present"] else "",
                    source["preview"] or "",
                )
            console.print(table)

            token = session.client.credentials.get_token()
            validation = validate_token(token)
            if validation["valid"]:
                console.print(
                    f"[green]Token valid[/green] for user {validation['user_id']}"
                    f" (expires {validation['expires_at'] or 'never'})"
                )
                if needs_refresh(token):
                    console.print("[yellow]Token expires within 5 minutes[/yellow]")
            else:
                console.print(f"[yellow]Token not valid: {validation['reason']}[/yellow]")

            if verify:
                outcome = await check_auth(session.client)
                if outcome["authenticated"]:
                    console.print("[green]✓ Server accepted the token[/green]")
                else:
                    console.print(f"[red]✗ Server rejected the token: {outcome['error']}[/red]")

    run(_run(), verbose)


if __name__ == "__main__":
    app()
