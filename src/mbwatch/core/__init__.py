# =============================================================================
# mbwatch Core Module
# =============================================================================
# Plain data types shared by every other module. No network or I/O here, so
# these can be imported anywhere without circular dependency issues.
#
#   - AccountConfig / Channel / Store / Account: parsed configuration
#   - Event / EventKind: messages to the event aggregator
#   - Timer: one-shot asyncio timer used for debounce and IDLE refresh
#   - ContractViolation: invariant failures that abort the process
# =============================================================================

from mbwatch.core.account import Account, AccountConfig, Channel, Store, TLSMode
from mbwatch.core.errors import ContractViolation
from mbwatch.core.event import Event, EventKind
from mbwatch.core.timer import Timer

__all__ = [
    "Account",
    "AccountConfig",
    "Channel",
    "Store",
    "TLSMode",
    "ContractViolation",
    "Event",
    "EventKind",
    "Timer",
]
