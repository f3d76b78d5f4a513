"""CLI for SplitLedger using Typer."""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from decimal import Decimal

import typer
from rich.console import Console
from rich.table import Table

from .clients.webhook import WebhookClient
from .config import Settings, load_settings
from .db import Database
from .exceptions import NotFoundError, SplitLedgerError, ValidationError
from .models import Balance, Member, Settlement
from .service import LedgerService, balances_to_json, settlements_to_json
from .splitter import from_minor_units, to_minor_units

app = typer.Typer(
    name="split-ledger",
    help="Track shared bills in a group and work out who owes whom",
)
group_app = typer.Typer(help="Manage groups")
member_app = typer.Typer(help="Manage group members")
bill_app = typer.Typer(help="Record and inspect bills")

app.add_typer(group_app, name="group")
app.add_typer(member_app, name="member")
app.add_typer(bill_app, name="bill")

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@contextmanager
def open_service(verbose: bool = False) -> Iterator[tuple[Settings, LedgerService]]:
    """Open the database-backed service for one command, reporting errors."""
    setup_logging(verbose)
    db = None
    webhook = None
    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(db)
        if settings.webhook_url:
            webhook = WebhookClient(settings.webhook_url, settings.webhook_timeout)
            service.add_listener(webhook.as_listener())

        yield settings, service

    except SplitLedgerError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if webhook is not None:
            webhook.close()
        if db is not None:
            db.close()


def format_money(amount: int, minor_units: int = 2, use_color: bool = True) -> str:
    """
    Format minor units in accounting style.

    Negative amounts use parentheses: (85.02)
    Positive amounts have spaces:      85.02
    """
    major = abs(from_minor_units(amount, minor_units))
    if amount < 0:
        return f"([red]{major:,}[/red])" if use_color else f"({major:,})"
    return f" [green]{major:,}[/green] " if use_color else f" {major:,} "


def resolve_group(service: LedgerService, ref: str) -> str:
    """Resolve a group by id or (case-insensitive) name."""
    groups = service.list_groups()
    for group in groups:
        if group.id == ref:
            return group.id
    matches = [g for g in groups if g.name.lower() == ref.lower()]
    if len(matches) == 1:
        return matches[0].id
    if len(matches) > 1:
        raise ValidationError(f"Group name '{ref}' is ambiguous, use the id")
    raise NotFoundError("group", ref)


def resolve_member(members: list[Member], ref: str) -> str:
    """Resolve a member by id or (case-insensitive) name."""
    for member in members:
        if member.id == ref:
            return member.id
    matches = [m for m in members if m.name.lower() == ref.lower()]
    if len(matches) == 1:
        return matches[0].id
    if len(matches) > 1:
        raise ValidationError(f"Member name '{ref}' is ambiguous, use the id")
    raise NotFoundError("member", ref)


def parse_amount(value: str, minor_units: int) -> int:
    """
    Parse a major-unit amount such as ``12.50`` into minor units.

    Raises:
        ValidationError: If the value is not a finite number or has more
            decimal places than the currency allows
    """
    try:
        amount = Decimal(value)
    except ArithmeticError as e:
        raise ValidationError(f"Invalid amount: {value}") from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value}")

    minor = to_minor_units(amount, minor_units)
    if from_minor_units(minor, minor_units) != amount:
        raise ValidationError(
            f"Amount {value} has more than {minor_units} decimal places"
        )
    return minor


# ============================================================================
# Groups
# ============================================================================


@group_app.command("create")
def group_create(
    name: str = typer.Argument(..., help="Group name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a new group."""
    with open_service(verbose) as (_settings, service):
        group = service.create_group(name)
        console.print(f"[green]✓ Created group {group.name}[/green] ({group.id})")


@group_app.command("list")
def group_list(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List all groups."""
    with open_service(verbose) as (_settings, service):
        groups = service.list_groups()
        if not groups:
            console.print("[yellow]No groups yet.[/yellow]")
            return

        table = Table(title="Groups", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Created")
        for group in groups:
            table.add_row(group.id, group.name, group.created_at.strftime("%Y-%m-%d"))
        console.print(table)


# ============================================================================
# Members
# ============================================================================


@member_app.command("add")
def member_add(
    group: str = typer.Argument(..., help="Group id or name"),
    name: str = typer.Argument(..., help="Member display name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add a member to a group."""
    with open_service(verbose) as (_settings, service):
        group_id = resolve_group(service, group)
        member = service.add_member(group_id, name)
        console.print(f"[green]✓ Added {member.name}[/green] ({member.id})")


@member_app.command("remove")
def member_remove(
    group: str = typer.Argument(..., help="Group id or name"),
    member: str = typer.Argument(..., help="Member id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Remove a member who has no bills and a zero balance."""
    with open_service(verbose) as (_settings, service):
        group_id = resolve_group(service, group)
        member_id = resolve_member(service.get_members(group_id), member)
        removed = service.remove_member(group_id, member_id)
        console.print(f"[green]✓ Removed {removed.name}[/green]")


@member_app.command("list")
def member_list(
    group: str = typer.Argument(..., help="Group id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List the members of a group."""
    with open_service(verbose) as (_settings, service):
        group_id = resolve_group(service, group)
        table = Table(title="Members", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Name", style="cyan")
        for member in service.get_members(group_id):
            table.add_row(member.id, member.name)
        console.print(table)


# ============================================================================
# Bills
# ============================================================================


@bill_app.command("add")
def bill_add(
    group: str = typer.Argument(..., help="Group id or name"),
    payer: str = typer.Argument(..., help="Member who paid (id or name)"),
    amount: str = typer.Argument(..., help="Total amount, e.g. 42.50"),
    among: list[str] = typer.Option(
        None, "--among", "-a", help="Split equally among these members"
    ),
    share: list[str] = typer.Option(
        None, "--share", "-s", help="Explicit share as MEMBER=AMOUNT (repeatable)"
    ),
    description: str = typer.Option("", "--description", "-d", help="Description"),
    category: str | None = typer.Option(None, "--category", help="Category"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Record a bill.

    Without --share the bill is split equally, among the --among members or
    the whole group.
    """
    with open_service(verbose) as (settings, service):
        group_id = resolve_group(service, group)
        members = service.get_members(group_id)
        payer_id = resolve_member(members, payer)
        total = parse_amount(amount, settings.minor_units)

        if share:
            shares: dict[str, int] = {}
            for entry in share:
                ref, sep, value = entry.partition("=")
                if not sep:
                    raise ValidationError(f"Share must be MEMBER=AMOUNT: {entry}")
                shares[resolve_member(members, ref)] = parse_amount(
                    value, settings.minor_units
                )
            bill = service.create_bill(
                group_id, payer_id, total, shares, description, category
            )
        else:
            member_ids = [resolve_member(members, ref) for ref in among] if among else None
            bill = service.create_equal_bill(
                group_id, payer_id, total, member_ids, description, category
            )

        console.print(
            f"[green]✓ Recorded bill[/green] {bill.id} "
            f"({format_money(bill.total, settings.minor_units)})"
        )


@bill_app.command("list")
def bill_list(
    group: str = typer.Argument(..., help="Group id or name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List the bills of a group."""
    with open_service(verbose) as (settings, service):
        group_id = resolve_group(service, group)
        names = {m.id: m.name for m in service.get_members(group_id)}
        bills = service.get_bills(group_id)
        if not bills:
            console.print("[yellow]No bills recorded.[/yellow]")
            return

        table = Table(title="Bills", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim", width=12)
        table.add_column("Description", style="cyan", width=30)
        table.add_column("Paid by")
        table.add_column("Amount", justify="right", width=12)
        table.add_column("Status")
        for bill in bills:
            table.add_row(
                bill.id[:12],
                bill.description,
                names.get(bill.payer_id, bill.payer_id),
                format_money(bill.total, settings.minor_units),
                bill.status,
            )
        console.print(table)


@bill_app.command("delete")
def bill_delete(
    bill_id: str = typer.Argument(..., help="Bill id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Delete a bill."""
    with open_service(verbose) as (_settings, service):
        service.delete_bill(bill_id)
        console.print(f"[green]✓ Deleted bill {bill_id}[/green]")


# ============================================================================
# Payments, balances and settlements
# ============================================================================


@app.command()
def pay(
    group: str = typer.Argument(..., help="Group id or name"),
    sender: str = typer.Argument(..., help="Member who paid (id or name)"),
    receiver: str = typer.Argument(..., help="Member who received (id or name)"),
    amount: str = typer.Argument(..., help="Amount, e.g. 12.50"),
    note: str = typer.Option("", "--note", "-n", help="Note"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Record a payment made between two members."""
    with open_service(verbose) as (settings, service):
        group_id = resolve_group(service, group)
        members = service.get_members(group_id)
        payment = service.record_payment(
            group_id,
            resolve_member(members, sender),
            resolve_member(members, receiver),
            parse_amount(amount, settings.minor_units),
            note,
        )
        console.print(
            f"[green]✓ Recorded payment[/green] "
            f"({format_money(payment.amount, settings.minor_units)})"
        )


@app.command()
def balances(
    group: str = typer.Argument(..., help="Group id or name"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON (minor units)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the net balance of every member."""
    with open_service(verbose) as (settings, service):
        group_id = resolve_group(service, group)
        snapshot = service.get_snapshot(group_id)
        if as_json:
            console.print_json(balances_to_json(snapshot.balances))
            return

        names = {m.id: m.name for m in service.get_members(group_id)}
        display_balances(snapshot.balances, names, settings.minor_units)
        console.print(f"\n  [dim]Version {snapshot.version}[/dim]")


@app.command()
def settle(
    group: str = typer.Argument(..., help="Group id or name"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON (minor units)"),
    record: bool = typer.Option(
        False, "--record", help="Record the planned transfers as payments"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the transfers that settle the group."""
    with open_service(verbose) as (settings, service):
        group_id = resolve_group(service, group)
        settlements = service.get_settlements(group_id)
        if as_json:
            console.print_json(settlements_to_json(settlements))
            return

        if not settlements:
            console.print("[green]✓ Everyone is settled up.[/green]")
            return

        names = {m.id: m.name for m in service.get_members(group_id)}
        display_settlements(settlements, names, settings.minor_units)

        if not record:
            return
        if not yes and not typer.confirm("\nRecord these transfers as payments?"):
            console.print("[yellow]Nothing recorded.[/yellow]")
            return

        for s in settlements:
            service.record_payment(
                group_id, s.from_member_id, s.to_member_id, s.amount, "Settle up"
            )
        console.print(f"[green]✓ Recorded {len(settlements)} payments[/green]")


def display_balances(
    balances: tuple[Balance, ...], names: dict[str, str], minor_units: int = 2
):
    """Display balances in a table."""
    table = Table(title="Balances", show_header=True, header_style="bold magenta")
    table.add_column("Member", style="cyan")
    table.add_column("Balance", justify="right", width=14)
    table.add_column("")

    for balance in balances:
        if balance.amount > 0:
            state = "is owed"
        elif balance.amount < 0:
            state = "owes"
        else:
            state = "[dim]settled[/dim]"
        table.add_row(
            names.get(balance.member_id, balance.member_id),
            format_money(balance.amount, minor_units),
            state,
        )

    console.print(table)

    # Verification
    total = sum(balance.amount for balance in balances)
    if total == 0:
        console.print("  [green]✓ Balances sum to zero[/green]")
    else:
        console.print(f"  [red]✗ Balances sum to {total}, expected 0[/red]")


def display_settlements(
    settlements: tuple[Settlement, ...], names: dict[str, str], minor_units: int = 2
):
    """Display settlements in a table."""
    table = Table(title="Settle Up", show_header=True, header_style="bold magenta")
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Amount", justify="right", width=14)

    for s in settlements:
        table.add_row(
            names.get(s.from_member_id, s.from_member_id),
            names.get(s.to_member_id, s.to_member_id),
            format_money(s.amount, minor_units),
        )

    console.print(table)
    console.print(f"  Total transfers: {len(settlements)}")


if __name__ == "__main__":
    app()
