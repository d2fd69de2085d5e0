# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading and validating mbwatch configuration. Two files are read:
#
#   - ~/.mbsyncrc: the mbsync config. Accounts, IMAP stores and channels are
#     taken from it so mbwatch always watches what mbsync synchronizes.
#   - $XDG_CONFIG_HOME/mbwatch/config.toml: mbwatch's own settings
#     (update script, intervals, keyring, per-account poll intervals).
#     Optional: defaults are used when it does not exist.
#
# Every error in here is a ConfigError and is fatal at startup, before any
# account goes online.
# =============================================================================

import logging
import os
import re
import shlex
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)

from mbwatch.core import Account, AccountConfig, Channel, Store, TLSMode

logger = logging.getLogger(__name__)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in XDG paths
APP_NAME = "mbwatch"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mbwatch.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mbwatch/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


# =============================================================================
# Settings
# =============================================================================

DEFAULT_POLL_INTERVAL = 5 * 60      # Also the default full-update interval
DEFAULT_RECONNECT_DELAY = 5 * 60
IDLE_REFRESH = 29 * 60              # RFC 2177 recommends < 30 minutes
DEBOUNCE_DELAY = 1.0


@dataclass(frozen=True)
class WatchSettings:
    """
    Tunables for the monitors and the aggregator.

    Built once at startup and handed to every component; nothing changes
    it afterwards.

    Attributes:
        poll_interval: Seconds between INBOX checks without IDLE.
        reconnect_delay: Seconds to wait after a failed connection.
        idle_refresh: Seconds before an IDLE command is re-issued.
        debounce: Seconds to collect events before running the update script.
        full_interval: Seconds between forced full updates.
        use_keyring: Look up passwords in the system keyring when the
                     mbsyncrc has neither Password nor PassCmd.
        trace: Log protocol-level details.
    """
    poll_interval: float = DEFAULT_POLL_INTERVAL
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    idle_refresh: float = IDLE_REFRESH
    debounce: float = DEBOUNCE_DELAY
    full_interval: float = DEFAULT_POLL_INTERVAL
    use_keyring: bool = False
    trace: bool = False


@dataclass
class Config:
    """
    Main configuration container for mbwatch.

    Attributes:
        update_script: Script run with the update targets as arguments.
        mbsyncrc: Location of the mbsync config file.
        watch: Monitor and aggregator tunables.
        poll_intervals: Per-store poll interval overrides in seconds.

    Usage:
        >>> config = Config.load()
        >>> stores = parse_mbsyncrc(config.mbsyncrc)
    """
    update_script: str = "~/.mbwatch-update"
    mbsyncrc: str = "~/.mbsyncrc"
    watch: WatchSettings = field(default_factory=WatchSettings)
    poll_intervals: dict[str, float] = field(default_factory=dict)

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the settings file."""
        return get_xdg_config_home() / "config.toml"

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load settings from the config file.

        If the file doesn't exist, returns the default configuration.

        Raises:
            ConfigError: If the file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            if path is not None:
                raise ConfigError(f"Config file not found: {config_path}")
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read {config_path}: {e}") from e

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create a Config object from a parsed TOML dictionary."""
        config = cls()

        general = data.get("general", {})
        config.update_script = general.get("update_script", config.update_script)
        config.mbsyncrc = general.get("mbsyncrc", config.mbsyncrc)

        watch = data.get("watch", {})
        credentials = data.get("credentials", {})
        try:
            config.watch = WatchSettings(
                poll_interval=float(watch.get("poll_interval", DEFAULT_POLL_INTERVAL)),
                reconnect_delay=float(watch.get("reconnect_delay", DEFAULT_RECONNECT_DELAY)),
                idle_refresh=float(watch.get("idle_refresh", IDLE_REFRESH)),
                debounce=float(watch.get("debounce", DEBOUNCE_DELAY)),
                full_interval=float(watch.get("full_interval", DEFAULT_POLL_INTERVAL)),
                use_keyring=bool(credentials.get("use_keyring", False)),
            )

            # Per-account overrides live under [accounts.<store>]
            for name, acct_data in data.get("accounts", {}).items():
                if "poll_interval" in acct_data:
                    config.poll_intervals[name] = float(acct_data["poll_interval"])
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"Invalid value in config file: {e}") from e

        return config

    def to_dict(self, accounts: dict[str, Account] | None = None) -> dict[str, Any]:
        """
        Convert the effective configuration to a dictionary for TOML output.

        Args:
            accounts: Resolved accounts to include (passwords are omitted).
        """
        data: dict[str, Any] = {
            "general": {
                "update_script": self.update_script,
                "mbsyncrc": self.mbsyncrc,
            },
            "watch": {
                "poll_interval": self.watch.poll_interval,
                "reconnect_delay": self.watch.reconnect_delay,
                "idle_refresh": self.watch.idle_refresh,
                "debounce": self.watch.debounce,
                "full_interval": self.watch.full_interval,
            },
            "credentials": {
                "use_keyring": self.watch.use_keyring,
            },
        }

        data["accounts"] = {}
        for name, account in (accounts or {}).items():
            acct = account.config
            entry: dict[str, Any] = {
                "host": acct.host,
                "port": acct.port,
                "tls_mode": acct.tls_mode.value,
                "ssl_version": acct.ssl_version,
                "user": acct.user,
                "update_name": account.update_name,
                "channels": [ch.name for ch in account.channels],
            }
            if acct.poll_interval is not None:
                entry["poll_interval"] = acct.poll_interval
            data["accounts"][name] = entry

        return data

    def dumps(self, accounts: dict[str, Account] | None = None) -> str:
        """Effective configuration as TOML text."""
        return tomli_w.dumps(self.to_dict(accounts))


# =============================================================================
# mbsyncrc Parsing
# =============================================================================

def expand_path(path: str | Path) -> Path:
    """Expand a leading ~ like the shell does."""
    return Path(os.path.expanduser(str(path)))


def get_value(line: str, keyword: str) -> tuple[bool, str]:
    """
    Match a "Keyword value" line.

    A single (possibly quoted) value is unquoted; several values are
    returned as the raw remainder of the line.

    Returns:
        (matched, value). A bare keyword matches with an empty value.
    """
    text = line.strip()
    if not text.startswith(keyword):
        return False, ""
    rest = text[len(keyword):]

    if not rest:
        return True, ""
    # Make sure this isn't just a prefix of a longer keyword
    if rest[0] not in " \t":
        return False, ""
    rest = rest[1:].strip()

    try:
        tokens = shlex.split(rest)
    except ValueError as e:
        raise ConfigError(f"Bad value for {keyword}: {rest!r} ({e})") from e

    if len(tokens) == 1:
        return True, tokens[0]
    return True, rest


_ACCOUNT_KEYS = (
    "Host", "PassCmd", "Password", "Port",
    "SSLType", "TLSType", "SSLVersions", "SSLVersion", "User",
)


def _apply_account_key(fields: dict[str, Any], line: str) -> bool:
    """
    Apply an account keyword (allowed in IMAPAccount and IMAPStore).

    Returns:
        True if the line held an account keyword.
    """
    for key in _ACCOUNT_KEYS:
        matched, value = get_value(line, key)
        if matched:
            break
    else:
        return False

    if key == "Host":
        fields["host"] = value
    elif key == "User":
        fields["user"] = value
    elif key == "Password":
        fields["password"] = value
    elif key == "PassCmd":
        fields["pass_cmd"] = value
    elif key == "Port":
        try:
            fields["port"] = int(value)
        except ValueError as e:
            raise ConfigError(f"Bad Port {value!r}") from e
    elif key in ("SSLType", "TLSType"):
        if value == "STARTTLS":
            fields["tls_mode"] = TLSMode.STARTTLS
            fields.setdefault("port", 143)
        elif value == "IMAPS":
            fields["tls_mode"] = TLSMode.IMAPS
            fields.setdefault("port", 993)
        else:
            raise ConfigError(f"Unknown {key} {value}")
        fields.setdefault("ssl_version", "TLSv1.2")
    else:
        fields["ssl_version"] = value
        if value != "None":
            fields.setdefault("port", 993)

    return True


def _finish_account(name: str, fields: dict[str, Any], require_password: bool) -> AccountConfig:
    """Validate collected account keywords and apply defaults."""
    if not fields.get("host"):
        raise ConfigError(f"Host required for {name}")
    if not fields.get("user"):
        raise ConfigError(f"User required for {name}")
    if require_password and not fields.get("password") and not fields.get("pass_cmd"):
        raise ConfigError(f"Password or PassCmd required for {name}")

    if "port" not in fields:
        fields["port"] = 993
        fields.setdefault("ssl_version", "TLSv1.2")

    return AccountConfig(name=name, **fields)


@dataclass
class _Section:
    """The section being read: kind is "account", "store", "channel" or "other"."""
    kind: str
    name: str = ""
    fields: dict[str, Any] = field(default_factory=dict)
    store: Store | None = None
    far: str = ""


def parse_mbsyncrc(path: str | Path, require_password: bool = True) -> dict[str, Store]:
    """
    Parse an mbsyncrc file into IMAP stores with their channels.

    Args:
        path: File to read (~ is expanded).
        require_password: Reject accounts with neither Password nor PassCmd.
                          Turned off when the keyring is enabled.

    Returns:
        Stores keyed by name. Each store has its account config resolved
        and its channels in config order.

    Raises:
        ConfigError: On unreadable files and invalid or dangling entries.
    """
    file_path = expand_path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {file_path}: {e}") from e

    accounts: dict[str, AccountConfig] = {}
    stores: dict[str, Store] = {}
    channels: dict[str, Channel] = {}
    channel_list: list[Channel] = []

    def finish(section: _Section | None) -> None:
        if section is None or section.kind == "other":
            return
        if section.kind == "account":
            accounts[section.name] = _finish_account(section.name, section.fields, require_password)
        elif section.kind == "store":
            store = section.store
            if not store.account:
                store.config = _finish_account(store.name, section.fields, require_password)
            stores[store.name] = store
        else:
            if not section.far:
                raise ConfigError(f"No Far given for Channel {section.name}")
            channel = Channel(name=section.name, far=section.far)
            channels[channel.name] = channel
            channel_list.append(channel)

    section: _Section | None = None
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if line.startswith("#"):
            continue

        # Blank lines terminate a section
        if not line:
            finish(section)
            section = None
            continue

        # Not in any section, only look for section starts
        if section is None:
            section = _start_section(line, lineno, accounts, stores, channels)
            continue

        if section.kind == "channel":
            matched, value = get_value(line, "Far")
            if matched:
                if section.far:
                    raise ConfigError(f"Multiple Far specified for channel {section.name}")
                section.far = value
        elif section.kind in ("account", "store"):
            if _apply_account_key(section.fields, line):
                continue
            if section.kind == "store":
                matched, value = get_value(line, "Account")
                if matched:
                    section.store.account = value

    # EOF also finishes the section
    finish(section)

    # Copy account config into stores that reference an account
    for name, store in stores.items():
        if store.account:
            if store.account not in accounts:
                raise ConfigError(f"Store {name} specifies non-existent account {store.account}")
            store.config = replace(accounts[store.account], name=name)

    # Attach channels to their far store, keeping config order
    for channel in channel_list:
        store = stores.get(channel.far_store)
        if store is None:
            raise ConfigError(f"Channel specifies non-existent Far store {channel.far_store}")
        store.channels.append(channel)

    return stores


def _start_section(line, lineno, accounts, stores, channels) -> _Section:
    matched, value = get_value(line, "IMAPAccount")
    if matched:
        if value in accounts:
            raise ConfigError(f"Duplicate Account {value}")
        logger.debug(f"Adding account {value}")
        return _Section("account", name=value)

    matched, value = get_value(line, "IMAPStore")
    if matched:
        if value in stores:
            raise ConfigError(f"Duplicate IMAPStore {value}")
        logger.debug(f"Adding IMAPStore {value}")
        return _Section("store", name=value, store=Store(name=value))

    matched, value = get_value(line, "Channel")
    if matched:
        if value in channels:
            raise ConfigError(f"Duplicate Channel {value}")
        logger.debug(f"Adding Channel {value}")
        return _Section("channel", name=value)

    logger.debug(f"{lineno}: Skipping past section: {line!r}")
    return _Section("other")


# =============================================================================
# Accounts and Update Targets
# =============================================================================

def update_target(store: Store, override: str | None = None) -> str:
    """
    Build the label passed to the update script for a store.

    Args:
        store: The store, with at least one channel.
        override: Command-line selection for this store:
                  "store"                 -> "<first-channel>:INBOX"
                  "store:mailbox"         -> "store:mailbox"
                  "store:channel:mailbox" -> "channel:mailbox"

    Raises:
        ConfigError: If the override has more than three parts.
    """
    parts = override.split(":") if override else [store.name]
    if len(parts) == 3:
        return ":".join(parts[1:])
    if len(parts) == 2:
        return ":".join(parts)
    if len(parts) == 1:
        return f"{store.channels[0].name}:INBOX"
    raise ConfigError(f"Bad store/channel name {override}")


def build_accounts(
    stores: dict[str, Store],
    restrict: list[str] | None = None,
    poll_intervals: dict[str, float] | None = None,
) -> dict[str, Account]:
    """
    Turn parsed stores into the accounts to watch.

    Args:
        stores: Output of parse_mbsyncrc().
        restrict: Command-line STORE[:...] arguments. When given, only the
                  named stores are watched.
        poll_intervals: Per-store poll interval overrides.

    Raises:
        ConfigError: On malformed restriction arguments.
    """
    selected: dict[str, str] = {}
    for arg in restrict or []:
        if len(arg.split(":")) > 3:
            raise ConfigError(f"Bad store/channel name {arg}")
        name = arg.split(":")[0]
        if name not in stores:
            logger.warning(f"No IMAPStore named {name}, ignoring {arg}")
        selected.setdefault(name, arg)

    poll_intervals = poll_intervals or {}
    accounts: dict[str, Account] = {}
    for name, store in stores.items():
        if not store.channels:
            logger.info(f"Skipping store {name} due to no channels")
            continue
        if restrict and name not in selected:
            continue

        config = store.config
        if name in poll_intervals:
            config = replace(config, poll_interval=poll_intervals[name])

        accounts[name] = Account(
            config=config,
            channels=tuple(store.channels),
            update_name=update_target(store, selected.get(name)),
        )

    return accounts


# =============================================================================
# Durations
# =============================================================================

_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


def parse_duration(text: str) -> float:
    """
    Parse a duration such as "5m", "90s", "1h30m" or "300" into seconds.

    Raises:
        ValueError: If the text is not a positive duration.
    """
    text = text.strip()
    try:
        seconds = float(text)
    except ValueError:
        if not text or _DURATION_PART.sub("", text):
            raise ValueError(f"invalid duration: {text!r}") from None
        seconds = sum(float(n) * _DURATION_UNITS[unit] for n, unit in _DURATION_PART.findall(text))

    if seconds <= 0:
        raise ValueError(f"duration must be positive: {text!r}")
    return seconds


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths(config: Config) -> None:
    """Print the files mbwatch reads."""
    print(f"Config file:    {Config.config_file_path()}")
    print(f"mbsyncrc:       {expand_path(config.mbsyncrc)}")
    print(f"Update script:  {expand_path(config.update_script)}")
