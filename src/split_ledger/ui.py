"""Interactive UI components for choosing who to settle with."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import Person
from .money import Money

logger = logging.getLogger(__name__)


class PersonCompleter(Completer):
    """Fuzzy search completer for people in the ledger."""

    def __init__(self, people: list[Person]):
        """Initialize the completer with the people to choose from."""
        self.people = people
        self.name_to_person = {p.display_name: p for p in people}

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions."""
        query = document.text.lower()

        for person in self.people:
            name = person.display_name
            if not query:
                yield Completion(text=name, start_position=0, display=name)
            elif fuzzy_match(query, name.lower()):
                yield Completion(
                    text=name, start_position=-len(document.text), display=name
                )


def fuzzy_match(query: str, text: str) -> bool:
    """
    Fuzzy match: all characters in query must appear in order in text.

    Example:
        query="mb" matches "mary beth"
    """
    query_idx = 0
    for char in text:
        if query_idx < len(query) and char == query[query_idx]:
            query_idx += 1
    return query_idx == len(query)


def select_person_interactive(
    balances: list[tuple[Person, Money]],
) -> Person | None:
    """
    Interactive person selection with fuzzy search.

    Args:
        balances: People with their balance against the current user

    Returns:
        Selected person, or None to cancel
    """
    if not balances:
        return None

    print("\n👥 Open balances:")
    for person, balance in balances:
        direction = "owes you" if balance.is_positive() else "you owe"
        print(f"   {person.display_name}: {direction} {abs(balance)}")
    print("   Type to search, press Enter to confirm, Ctrl+C to cancel\n")

    completer = PersonCompleter([person for person, _ in balances])
    session: PromptSession[str] = PromptSession(completer=completer)

    try:
        while True:
            result = session.prompt("Settle with: ", complete_while_typing=True)

            if not result:
                return None

            person = completer.name_to_person.get(result)
            if person is not None:
                logger.info(f"User selected person: {person.display_name}")
                return person

            print("❌ Unknown person. Please select from the list or press Tab to complete.")

    except KeyboardInterrupt:
        print("\n⏭️  Cancelled")
        return None
    except EOFError:
        return None
