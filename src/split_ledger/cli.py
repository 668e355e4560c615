"""CLI for Split Ledger."""

import logging
import sys
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .exceptions import LedgerFileError, SplitLedgerError
from .ledger.feed import day_label, describe_item, local_time
from .ledger.service import LedgerService, StaticIdentity
from .mcp_server import run_server
from .models import (
    AdjustmentSplit,
    AllScope,
    EqualSplit,
    ExactSplit,
    Group,
    GroupScope,
    PercentageSplit,
    Person,
    PersonScope,
    SharesSplit,
    SplitMethod,
)
from .money import Money
from .store import LedgerStore, load_ledger, save_ledger
from .ui import select_person_interactive

app = typer.Typer(
    name="split-ledger",
    help="Track shared expenses, balances and settlements",
)

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def open_service(settings: Settings) -> LedgerService:
    """Load the ledger document and wrap it in a service."""
    store = load_ledger(settings.ledger_path)
    identity = (
        StaticIdentity(settings.current_user_id) if settings.current_user_id else None
    )
    return LedgerService(store, identity, tz=settings.tz)


def format_money(amount: Money, use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: ($85.02)
    Positive amounts have spaces:      $85.02
    """
    abs_amount = abs(amount).to_decimal()
    if amount.is_negative():
        if use_color:
            return f"($[red]{abs_amount:,.2f}[/red])"
        return f"(${abs_amount:,.2f})"
    if use_color:
        return f" [green]${abs_amount:,.2f}[/green] "
    return f" ${abs_amount:,.2f} "


def _balance_status(balance: Money) -> str:
    if balance.is_positive():
        return "owes you"
    if balance.is_negative():
        return "you owe"
    return "settled up"


class SplitKind(str, Enum):
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    EXACT = "exact"
    SHARES = "shares"
    ADJUSTMENT = "adjustment"


def parse_assignments(values: list[str], option: str) -> list[tuple[str, str]]:
    """Split repeated NAME=VALUE options into (name, value) pairs."""
    pairs = []
    for value in values:
        name, sep, amount = value.rpartition("=")
        if not sep or not name.strip() or not amount.strip():
            raise typer.BadParameter(f"Expected NAME=VALUE, got {value!r}", param_hint=option)
        pairs.append((name.strip(), amount.strip()))
    return pairs


def build_split_method(kind: SplitKind, values: dict[UUID, str]) -> SplitMethod:
    """Turn --split and its --share values into a split method."""
    if kind is SplitKind.EQUAL:
        return EqualSplit()
    if kind is SplitKind.PERCENTAGE:
        return PercentageSplit(weights={pid: Decimal(v) for pid, v in values.items()})
    if kind is SplitKind.EXACT:
        return ExactSplit(amounts={pid: Money.of(v) for pid, v in values.items()})
    if kind is SplitKind.SHARES:
        return SharesSplit(shares={pid: Decimal(v) for pid, v in values.items()})
    return AdjustmentSplit(adjustments={pid: Money.of(v) for pid, v in values.items()})


def _fail(e: Exception, verbose: bool) -> None:
    if isinstance(e, SplitLedgerError):
        console.print(f"\n[bold red]Error:[/bold red] {e}")
    else:
        console.print(f"\n[bold red]Unexpected error:[/bold red] {e}")
        if verbose:
            raise e
    sys.exit(1)


# ============================================================================
# Setup commands
# ============================================================================


@app.command()
def init(
    name: str = typer.Argument(..., help="Your display name"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing ledger"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a new, empty ledger owned by you."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        if settings.ledger_path.exists() and not force:
            raise LedgerFileError(
                f"Ledger already exists at {settings.ledger_path} (use --force to replace it)"
            )
        store = LedgerStore(Person(display_name=name))
        save_ledger(store, settings.ledger_path)
        console.print(f"[green]✓ Created ledger at {settings.ledger_path}[/green]")
    except Exception as e:
        _fail(e, verbose)


@app.command("add-person")
def add_person(
    name: str = typer.Argument(..., help="Display name"),
    phone: str | None = typer.Option(None, "--phone", help="Phone number"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Add someone to share expenses with."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        service = open_service(settings)
        person = service.store.add_person(Person(display_name=name, phone_number=phone))
        save_ledger(service.store, settings.ledger_path)
        console.print(f"[green]✓ Added {person.display_name}[/green]")
    except Exception as e:
        _fail(e, verbose)


@app.command("add-group")
def add_group(
    name: str = typer.Argument(..., help="Group name"),
    members: list[str] = typer.Option(
        [], "--member", "-m", help="Member name (repeatable); you are always included"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create a group of people sharing expenses."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        service = open_service(settings)
        store = service.store
        created = store.add_group(
            Group(
                name=name,
                member_ids=frozenset(store.find_person(m).id for m in members),
                created_at=datetime.now(service.tz),
            )
        )
        save_ledger(store, settings.ledger_path)
        console.print(
            f"[green]✓ Created group {created.name} with {len(created.member_ids)} members[/green]"
        )
    except Exception as e:
        _fail(e, verbose)


@app.command()
def expense(
    title: str = typer.Argument(..., help="What the expense was for"),
    amount: str = typer.Argument(..., help="Total amount, e.g. 42.50"),
    with_people: list[str] = typer.Option(
        [], "--with", "-w", help="Person sharing the expense (repeatable)"
    ),
    paid_by: str | None = typer.Option(
        None, "--paid-by", "-p", help="Who paid (default: you)"
    ),
    paid: list[str] = typer.Option(
        [], "--paid", help="NAME=AMOUNT paid by one of several payers (repeatable)"
    ),
    split: SplitKind = typer.Option(
        SplitKind.EQUAL, "--split", "-s", help="How to split the expense"
    ),
    shares: list[str] = typer.Option(
        [],
        "--share",
        help="NAME=VALUE per participant: percent, amount, shares or adjustment (repeatable)",
    ),
    group_name: str | None = typer.Option(None, "--group", "-g", help="Group name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Record an expense shared between you and the others.

    Split equally by default. Use --split with --share to split by
    percentage, exact amount, shares or adjustment, and --paid when several
    people paid.
    """
    setup_logging(verbose)

    if paid and paid_by:
        raise typer.BadParameter("Use either --paid-by or --paid", param_hint="--paid")
    paid_pairs = parse_assignments(paid, "--paid")
    share_pairs = parse_assignments(shares, "--share")
    if split is not SplitKind.EQUAL and not share_pairs:
        raise typer.BadParameter(
            f"--split {split.value} needs at least one --share NAME=VALUE",
            param_hint="--share",
        )

    try:
        settings = load_settings()
        service = open_service(settings)
        store = service.store

        participants = [service.current_user_id]
        participants += [store.find_person(n).id for n in with_people]
        if paid_pairs:
            payer = {store.find_person(n).id: Money.of(v) for n, v in paid_pairs}
        else:
            payer = store.find_person(paid_by).id if paid_by else service.current_user_id
        method = build_split_method(
            split, {store.find_person(n).id: v for n, v in share_pairs}
        )
        group_id = store.find_group(group_name).id if group_name else None

        transaction = service.add_expense(
            title,
            Money.of(amount),
            payer,
            participants,
            split_method=method,
            group_id=group_id,
        ).unwrap()
        save_ledger(store, settings.ledger_path)
        console.print(
            f"[green]✓ Recorded '{transaction.title}' for "
            f"{format_money(transaction.amount, use_color=False).strip()}[/green]"
        )
    except Exception as e:
        _fail(e, verbose)


# ============================================================================
# Balances
# ============================================================================


@app.command()
def balances(
    include_archived: bool = typer.Option(
        False, "--include-archived", help="Also show archived people"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show your balance with everyone you share expenses with."""
    setup_logging(verbose)

    try:
        service = open_service(load_settings())
        rows = service.person_balances(include_archived).unwrap()

        if not rows:
            console.print("[yellow]No shared expenses yet.[/yellow]")
            return

        table = Table(title="Balances", show_header=True, header_style="bold magenta")
        table.add_column("Person", style="cyan")
        table.add_column("Balance", justify="right", width=14)
        table.add_column("Status", style="dim")
        for person, balance in rows:
            table.add_row(person.display_name, format_money(balance), _balance_status(balance))
        console.print(table)

        total = service.person_balance(service.current_user_id).unwrap()
        console.print(f"\n[bold]Overall:[/bold] {format_money(total)}")
    except Exception as e:
        _fail(e, verbose)


@app.command()
def group(
    name: str = typer.Argument(..., help="Group name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show your balance in a group and each member's balance with you."""
    setup_logging(verbose)

    try:
        service = open_service(load_settings())
        found = service.store.find_group(name)

        total = service.group_balance(found.id).unwrap()
        rows = service.member_balances(found.id).unwrap()

        console.print(f"\n[bold]{found.name}[/bold]")
        console.print(f"  Your balance: {format_money(total)}\n")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Member", style="cyan")
        table.add_column("Balance", justify="right", width=14)
        table.add_column("Status", style="dim")
        for person, balance in rows:
            table.add_row(person.display_name, format_money(balance), _balance_status(balance))
        console.print(table)

        if total.is_zero_within_epsilon() and any(not b.is_zero_within_epsilon() for _, b in rows):
            console.print(
                "\n[yellow]Group nets to zero, but individual members still have "
                "open balances.[/yellow]"
            )
    except Exception as e:
        _fail(e, verbose)


@app.command()
def feed(
    person_name: str | None = typer.Option(None, "--person", help="Thread with a person"),
    group_name: str | None = typer.Option(None, "--group", help="Thread of a group"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show the activity feed, grouped by day."""
    setup_logging(verbose)

    try:
        service = open_service(load_settings())
        store = service.store
        if person_name:
            scope = PersonScope(person_id=store.find_person(person_name).id)
        elif group_name:
            scope = GroupScope(group_id=store.find_group(group_name).id)
        else:
            scope = AllScope()

        result = service.build_feed(scope)
        if not result.item_count:
            console.print("[yellow]Nothing here yet.[/yellow]")
            return

        persons = service.snapshot().persons_by_id()
        today = datetime.now(service.tz).date()
        for feed_day in result.days:
            console.print(f"\n[bold]{day_label(feed_day.day, today)}[/bold]")
            for item in feed_day.items:
                time = local_time(item.timestamp, service.tz).strftime("%H:%M")
                console.print(
                    f"  [dim]{time}[/dim] "
                    f"{describe_item(item, persons, service.current_user_id)}"
                )
    except Exception as e:
        _fail(e, verbose)


# ============================================================================
# Settlements
# ============================================================================


@app.command()
def settle(
    person_name: str | None = typer.Argument(None, help="Who to settle with"),
    amount: str | None = typer.Option(
        None, "--amount", "-a", help="Partial amount (default: the whole balance)"
    ),
    group_name: str | None = typer.Option(
        None, "--group", "-g", help="Settle only the balance within this group"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Record a payment that settles (part of) a balance.

    Whoever owes pays; the direction is worked out from the current balance.
    """
    setup_logging(verbose)

    try:
        settings = load_settings()
        service = open_service(settings)
        store = service.store
        me = service.current_user_id

        if person_name:
            person = store.find_person(person_name)
        else:
            open_rows = [
                row
                for row in service.person_balances().unwrap()
                if not row[1].is_zero_within_epsilon()
            ]
            person = select_person_interactive(open_rows)
            if person is None:
                console.print("[yellow]No person selected.[/yellow]")
                return

        group_id = store.find_group(group_name).id if group_name else None
        balance = service.balance_with(person.id, group_id).unwrap()
        from_person, to_person = (person.id, me) if balance.is_positive() else (me, person.id)

        if amount is None:
            proposed_amount = abs(balance)
        else:
            proposed_amount = Money.of(amount)
        proposal = service.propose_settlement(
            from_person, to_person, proposed_amount, group_id=group_id
        ).unwrap()

        console.print(
            f"\n[bold]{'They pay you' if from_person == person.id else 'You pay them'}:[/bold] "
            f"{format_money(proposal.amount)}"
            + (" [dim](settles up)[/dim]" if proposal.is_full_settlement else "")
        )
        if not yes:
            confirm = input("Record this payment? [y/N] ").strip().lower()
            if confirm not in ("y", "yes"):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        settlement = service.record_settlement(
            from_person, to_person, proposal.amount, group_id=group_id
        ).unwrap()
        save_ledger(store, settings.ledger_path)

        remaining = service.pairwise_balance(me, person.id).unwrap()
        console.print(f"\n[bold green]✓ Payment recorded[/bold green] [dim]({settlement.id})[/dim]")
        console.print(f"  Balance with {person.display_name}: {format_money(remaining)}")
    except Exception as e:
        _fail(e, verbose)


@app.command()
def undo(
    settlement_id: str = typer.Argument(..., help="Id of the settlement to undo"),
    delete: bool = typer.Option(
        False, "--delete", help="Delete the payment instead of recording a reversal"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Undo a recorded payment."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        service = open_service(settings)
        target = UUID(settlement_id)

        if delete:
            settlement = service.undo_settlement(target).unwrap()
            console.print(f"[green]✓ Deleted payment of {settlement.amount}[/green]")
        else:
            reversal = service.reverse_settlement(target).unwrap()
            console.print(
                f"[green]✓ Reversed payment of {reversal.amount}[/green] "
                f"[dim]({reversal.id})[/dim]"
            )
        save_ledger(service.store, settings.ledger_path)
    except ValueError as e:
        console.print(f"\n[bold yellow]⚠️  {e}[/bold yellow]\n")
        sys.exit(1)
    except Exception as e:
        _fail(e, verbose)


@app.command()
def mcp():
    """Start the MCP server for assistant integration."""
    run_server()


if __name__ == "__main__":
    app()
