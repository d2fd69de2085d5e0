# =============================================================================
# IMAP Module
# =============================================================================
# Handles the IMAP side of watching an account:
#   - Connecting to IMAP servers with SSL/STARTTLS and logging in
#   - Selecting INBOX and reading its message count
#   - IMAP IDLE (RFC 2177) for push notifications
#
# This module uses aioimaplib for async IMAP operations, so every account
# can wait on its server concurrently in one event loop.
# =============================================================================

from mbwatch.imap.client import (
    IMAPSession,
    IMAPError,
    IMAPConnectionError,
    IMAPAuthenticationError,
    ConnectionState,
    MailboxUpdate,
)
from mbwatch.imap.idle import (
    IdleCommand,
    IdleExchange,
    ContinuationRequest,
    DataResponse,
    StatusResponse,
    parse_response,
)

__all__ = [
    # Session
    "IMAPSession",
    "IMAPError",
    "IMAPConnectionError",
    "IMAPAuthenticationError",
    "ConnectionState",
    "MailboxUpdate",
    # IDLE
    "IdleCommand",
    "IdleExchange",
    "ContinuationRequest",
    "DataResponse",
    "StatusResponse",
    "parse_response",
]
