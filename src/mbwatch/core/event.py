# =============================================================================
# Events
# =============================================================================
# Messages sent from the account monitors (and the full-update ticker) to the
# event aggregator over a single asyncio.Queue.
# =============================================================================

from dataclasses import dataclass
from enum import Enum, auto

from mbwatch.core.account import Account


class EventKind(Enum):
    """What happened to an account."""
    OFFLINE = auto()        # Session lost, account is reconnecting
    NEW_MAIL = auto()       # INBOX grew
    FULL_UPDATE = auto()    # Everything should be synchronized


@dataclass(frozen=True)
class Event:
    """
    An event for the aggregator.

    Attributes:
        kind: The event tag.
        account: Originating account, None for the global periodic tick.
        count: Change in the INBOX message count for NEW_MAIL events.
               Nonzero; negative after expunges seen under IDLE.
    """
    kind: EventKind
    account: Account | None = None
    count: int = 0

    def __str__(self) -> str:
        who = self.account.name if self.account else "-"
        return f"{self.kind.name}({who})"
