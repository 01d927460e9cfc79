"""
ticket_ids.py

Sequential, human-readable ticket identifiers (SP-<n>) issued from the store's
atomic counter, and parsing of ticket references out of free text.
"""

import logging
import re
from typing import Optional

from standup.config import config

logger = logging.getLogger(__name__)

COUNTER_KEY = "ticket_counter"


def normalize_ticket_id(raw: Optional[str], prefix: str = "SP") -> Optional[str]:
    """
    Canonical form of a ticket reference: "sp 12", "SP12" and "SP-12" all
    become "SP-12". Values in other formats are returned stripped and uppercased.
    """
    if raw is None:
        return None
    value = re.sub(r"\s+", "", str(raw)).upper()
    if not value:
        return None
    return re.sub(rf"^({re.escape(prefix.upper())})(\d+)$", r"\1-\2", value)


def find_ticket_reference(text: Optional[str], prefix: str = "SP") -> Optional[str]:
    """Returns the first ticket-style token in text, normalized, or None."""
    if not text:
        return None
    pattern = rf"(?<![A-Za-z0-9]){re.escape(prefix)}\s*-?\s*(\d+)\b"
    match = re.search(pattern, text, flags=re.IGNORECASE)
    if not match:
        return None
    return f"{prefix.upper()}-{match.group(1)}"


def ticket_number(ticket_id: Optional[str]) -> Optional[int]:
    if not ticket_id:
        return None
    match = re.search(r"-(\d+)$", ticket_id)
    return int(match.group(1)) if match else None


class TicketAllocator:
    """
    Issues ticket IDs. Every allocation is a single atomic increment-and-read
    in the store, so concurrent runs never observe the same number.
    """

    def __init__(self, store, prefix: Optional[str] = None):
        self.store = store
        self.prefix = (prefix or config['ticket_prefix']).upper()

    def format(self, number: int) -> str:
        return f"{self.prefix}-{number}"

    def allocate(self) -> str:
        # A missing counter is created at 0 by the store before incrementing.
        number = self.store.increment_counter(COUNTER_KEY)
        ticket_id = self.format(number)
        logger.debug("[TicketIds] Allocated %s", ticket_id)
        return ticket_id

    def initialize(self, starting_number: int = 1) -> bool:
        """Creates the counter at starting_number - 1 if absent. Returns True if created."""
        created = self.store.init_counter(COUNTER_KEY, starting_number - 1)
        if created:
            logger.info("[TicketIds] Counter initialized; next ticket is %s", self.format(starting_number))
        else:
            logger.info("[TicketIds] Counter already exists at %d; left unchanged", self.peek())
        return created

    def reset(self, new_count: int = 0) -> None:
        previous = self.peek()
        logger.warning(
            "[TicketIds] PRIVILEGED: counter reset from %d to %d (next ticket %s)",
            previous, new_count, self.format(new_count + 1),
        )
        self.store.set_counter(COUNTER_KEY, new_count)

    def peek(self) -> int:
        return self.store.get_counter(COUNTER_KEY)
