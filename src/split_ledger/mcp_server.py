"""MCP server for Split Ledger: exposes balances, feeds and settle-up as tools."""

import logging
from dataclasses import dataclass
from datetime import datetime

from mcp.server.fastmcp import FastMCP

from .config import Settings, load_settings
from .exceptions import SplitLedgerError
from .ledger.feed import day_label, describe_item
from .ledger.service import LedgerService, StaticIdentity
from .models import AllScope, GroupScope, PersonScope
from .money import Money
from .store import load_ledger, save_ledger

logger = logging.getLogger(__name__)

mcp_app = FastMCP("split-ledger")

# ---------------------------------------------------------------------------
# Session state: one MCP server process = one conversation
# ---------------------------------------------------------------------------

WORKFLOW_INSTRUCTIONS = """\
You are helping the user keep track of shared expenses. Follow this workflow:

1. OVERVIEW: Call list_people to see who owes whom, or list_groups for groups.

2. DETAIL: Call balance_with for one person, or group_summary for a group.
   Use show_feed to explain where a balance comes from.

3. SETTLE: When the user wants to settle up, state the amount and direction
   and ask for confirmation. Then call settle_up. Pass an amount only for a
   partial payment.

Always show amounts in accounting format. Positive = owed to the user, \
negative = the user owes.\
"""


@dataclass
class SessionState:
    """Holds state between MCP tool calls within a single conversation."""

    settings: Settings | None = None
    service: LedgerService | None = None


_state = SessionState()


def _ensure_service() -> LedgerService:
    """Lazily load the ledger (reads .env config)."""
    if _state.service is None:
        settings = load_settings()
        store = load_ledger(settings.ledger_path)
        identity = (
            StaticIdentity(settings.current_user_id) if settings.current_user_id else None
        )
        _state.settings = settings
        _state.service = LedgerService(store, identity, tz=settings.tz)
    return _state.service


def _save() -> None:
    if _state.service is not None and _state.settings is not None:
        save_ledger(_state.service.store, _state.settings.ledger_path)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _format_amount(amount: Money) -> str:
    """Format money as accounting-style dollar string."""
    value = abs(amount).to_decimal()
    if amount.is_negative():
        return f"(${value:,.2f})"
    return f"${value:,.2f}"


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------


@mcp_app.tool()
def list_people() -> str:
    """List everyone the user shares expenses with and the balance with each."""
    try:
        service = _ensure_service()
        rows = service.person_balances().unwrap()

        if not rows:
            return "No shared expenses yet."

        lines = ["Balances:"]
        for person, balance in rows:
            lines.append(f"  - {person.display_name}: {_format_amount(balance)}")
        total = service.person_balance(service.current_user_id).unwrap()
        lines.append("")
        lines.append(f"Overall: {_format_amount(total)}")
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to list people: {e}"


@mcp_app.tool()
def list_groups() -> str:
    """List groups and the user's balance in each."""
    try:
        service = _ensure_service()
        groups = sorted(service.snapshot().groups, key=lambda g: g.name.casefold())

        if not groups:
            return "No groups yet."

        lines = ["Groups:"]
        for g in groups:
            balance = service.group_balance(g.id).unwrap()
            lines.append(
                f"  - {g.name} ({len(g.member_ids)} members): {_format_amount(balance)}"
            )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to list groups: {e}"


@mcp_app.tool()
def balance_with(person_name: str) -> str:
    """Show the balance between the user and one person.

    Args:
        person_name: Display name of the person (case-insensitive).
    """
    try:
        service = _ensure_service()
        person = service.store.find_person(person_name)
        balance = service.pairwise_balance(service.current_user_id, person.id).unwrap()

        if balance.is_positive():
            return f"{person.display_name} owes you {_format_amount(balance)}."
        if balance.is_negative():
            return f"You owe {person.display_name} {_format_amount(-balance)}."
        return f"You and {person.display_name} are settled up."
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to get balance: {e}"


@mcp_app.tool()
def group_summary(group_name: str) -> str:
    """Show the user's balance in a group and each member's balance.

    Args:
        group_name: Name of the group (case-insensitive).
    """
    try:
        service = _ensure_service()
        group = service.store.find_group(group_name)
        total = service.group_balance(group.id).unwrap()
        rows = service.member_balances(group.id).unwrap()

        lines = [f"{group.name}: your balance {_format_amount(total)}", "", "Members:"]
        for person, balance in rows:
            lines.append(f"  - {person.display_name}: {_format_amount(balance)}")

        if total.is_zero_within_epsilon() and any(
            not b.is_zero_within_epsilon() for _, b in rows
        ):
            lines.append("")
            lines.append("Note: the group nets to zero but some members are not settled.")
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to summarize group: {e}"


@mcp_app.tool()
def show_feed(person_name: str | None = None, group_name: str | None = None) -> str:
    """Show the activity feed for a person, a group, or everything.

    Args:
        person_name: Show the thread with this person.
        group_name: Show the thread of this group (ignored if person_name is set).
    """
    try:
        service = _ensure_service()
        store = service.store
        if person_name:
            scope = PersonScope(person_id=store.find_person(person_name).id)
        elif group_name:
            scope = GroupScope(group_id=store.find_group(group_name).id)
        else:
            scope = AllScope()

        feed = service.build_feed(scope)
        if not feed.item_count:
            return "Nothing here yet."

        persons = service.snapshot().persons_by_id()
        today = datetime.now(service.tz).date()
        lines = []
        for feed_day in feed.days:
            lines.append(f"{day_label(feed_day.day, today)}:")
            for item in feed_day.items:
                lines.append(
                    f"  - {describe_item(item, persons, service.current_user_id)}"
                )
        return "\n".join(lines)
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to build feed: {e}"


@mcp_app.tool()
def settle_up(
    person_name: str, amount: str | None = None, group_name: str | None = None
) -> str:
    """Record a payment between the user and a person.

    Whoever owes pays. Without an amount the whole balance is settled.

    Args:
        person_name: Who to settle with.
        amount: Partial amount to pay, e.g. "20.00".
        group_name: Settle only the balance within this group.
    """
    try:
        service = _ensure_service()
        store = service.store
        person = store.find_person(person_name)
        group_id = store.find_group(group_name).id if group_name else None
        me = service.current_user_id

        if amount is None:
            settlement = service.settle_up(person.id, group_id=group_id).unwrap()
        else:
            balance = service.balance_with(person.id, group_id).unwrap()
            from_person, to_person = (
                (person.id, me) if balance.is_positive() else (me, person.id)
            )
            settlement = service.record_settlement(
                from_person, to_person, Money.of(amount), group_id=group_id
            ).unwrap()
        _save()

        remaining = service.pairwise_balance(me, person.id).unwrap()
        return (
            f"Payment recorded: {_format_amount(settlement.amount)}"
            + (" (settled up)" if settlement.is_full_settlement else "")
            + f"\nSettlement ID: {settlement.id}"
            + f"\nRemaining balance with {person.display_name}: {_format_amount(remaining)}"
        )
    except SplitLedgerError as e:
        return f"Error: {e}"
    except Exception as e:
        return f"Failed to settle up: {e}"


# ---------------------------------------------------------------------------
# MCP Prompt
# ---------------------------------------------------------------------------


@mcp_app.prompt()
def settle_workflow() -> str:
    """Orchestration instructions for reviewing and settling balances."""
    return WORKFLOW_INSTRUCTIONS


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_server():
    """Start the MCP server (stdio transport)."""
    mcp_app.run(transport="stdio")
