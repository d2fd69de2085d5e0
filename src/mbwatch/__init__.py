# =============================================================================
# mbwatch: IMAP IDLE Watcher for mbsync
# =============================================================================
#
# mbwatch keeps every IMAP store from your mbsyncrc under watch, using IMAP
# IDLE push notifications where the server supports them and polling where
# it doesn't, and runs an update script (usually wrapping mbsync) as soon
# as new mail arrives.
#
# Features:
#   - Reads accounts, stores and channels straight from ~/.mbsyncrc
#   - IMAP IDLE with automatic 29 minute refresh
#   - Polling fallback for servers without IDLE
#   - Bursts from many accounts merged into one update run
#   - Periodic full updates
#   - Passwords via Password, PassCmd or the system keyring
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "mbwatch"

# Main entry point - this is what gets called by the 'mbwatch' command
from mbwatch.app import main

__all__ = ["main", "__version__", "__app_name__"]
