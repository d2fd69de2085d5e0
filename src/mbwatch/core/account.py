# =============================================================================
# Account Model
# =============================================================================
# Represents the mail accounts being watched. The structures here come out of
# the mbsyncrc parser and are never modified afterwards:
#
#   - AccountConfig: how to reach and log in to one IMAP server
#   - Channel: an mbsync channel, used only to name update targets
#   - Store: an IMAPStore section with the channels that sync against it
#   - Account: what a monitor watches (config + channels + update target)
#
# IMPORTANT: Live connection state (session, message count, IDLE exchange)
# is NOT stored here. It belongs to the AccountMonitor task that owns the
# account, so nothing in this module is ever mutated by more than one task.
# =============================================================================

from dataclasses import dataclass, field
from enum import Enum


class TLSMode(Enum):
    """How the TLS session is established."""
    IMAPS = "IMAPS"           # Direct TLS (usually port 993)
    STARTTLS = "STARTTLS"     # Plaintext, then upgrade (usually port 143)


@dataclass(frozen=True)
class AccountConfig:
    """
    Connection parameters for one IMAP account.

    Attributes:
        name: Account (or store) name from the mbsyncrc.
        host: Hostname of the IMAP server.
        port: Port for the IMAP connection.
        tls_mode: Direct TLS or STARTTLS upgrade.
        ssl_version: TLS protocol version string (e.g. "TLSv1.2").
        user: Login name.
        password: Literal password, empty if a command or keyring is used.
        pass_cmd: Shell command whose trimmed output is the password.
        poll_interval: Per-account poll interval override in seconds,
                       None to use the global setting.
    """

    name: str
    host: str
    port: int = 993
    tls_mode: TLSMode = TLSMode.IMAPS
    ssl_version: str = "TLSv1.2"
    user: str = ""
    password: str = field(default="", repr=False)
    pass_cmd: str = ""
    poll_interval: float | None = None

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

            keyring set mbwatch:work user@example.com
        """
        return f"mbwatch:{self.name}"

    def __str__(self) -> str:
        return f"{self.name} <{self.user}@{self.host}:{self.port}>"


@dataclass(frozen=True)
class Channel:
    """An mbsync channel and the far store it synchronizes against."""
    name: str
    far: str                  # Raw Far value, e.g. ":work-remote:"

    @property
    def far_store(self) -> str:
        """Store name referenced by the Far value (":store:" -> "store")."""
        return self.far[1:-1]


@dataclass
class Store:
    """
    An IMAPStore section.

    The account config is either inline or copied from the referenced
    IMAPAccount once the whole file has been read.
    """
    name: str
    account: str = ""                   # Referenced IMAPAccount, if any
    config: AccountConfig | None = None
    channels: list[Channel] = field(default_factory=list)


@dataclass(frozen=True)
class Account:
    """
    A watched account: connection config, its channels and the update target.

    Attributes:
        config: Connection parameters. config.name is the store name.
        channels: Channels targeting this store, in config order.
        update_name: Label passed to the update script for this account,
                     e.g. "work:INBOX".
    """

    config: AccountConfig
    channels: tuple[Channel, ...] = ()
    update_name: str = ""

    @property
    def name(self) -> str:
        return self.config.name

    def __str__(self) -> str:
        return f"ACCT: {self.name}"
