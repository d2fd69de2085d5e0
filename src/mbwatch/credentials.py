# =============================================================================
# Credential Resolution
# =============================================================================
# Turns an AccountConfig into a password, in this order:
#
#   1. Password "literal"       - straight from the mbsyncrc
#   2. PassCmd "shell command"  - run through bash, stdout trimmed
#   3. system keyring           - only when enabled in config.toml:
#                                 keyring set mbwatch:<store> <user>
#
# Failures raise CredentialError. The monitor treats that like any other
# failed connection attempt: log, pause, retry.
# =============================================================================

import asyncio
import logging
import shutil

import keyring

from mbwatch.core import AccountConfig

logger = logging.getLogger(__name__)


async def run_pass_cmd(cmd: str) -> str:
    """
    Run a password command with bash and return its trimmed output.

    Args:
        cmd: Shell command line, as written after PassCmd.

    Raises:
        CredentialError: If bash is missing or the command fails.
    """
    bash = shutil.which("bash")
    if bash is None:
        raise CredentialError("Cannot find bash in PATH to run PassCmd")

    proc = await asyncio.create_subprocess_exec(
        bash, "-c", cmd,
        stdout=asyncio.subprocess.PIPE,
    )
    stdout, _ = await proc.communicate()

    if proc.returncode != 0:
        raise CredentialError(f"PassCmd exited with status {proc.returncode}")

    return stdout.decode("utf-8", errors="replace").strip()


async def resolve_password(config: AccountConfig, use_keyring: bool = False) -> str:
    """
    Resolve the password for an account.

    Args:
        config: The account to resolve for.
        use_keyring: Fall back to the system keyring if the account has
                     neither Password nor PassCmd.

    Returns:
        The password.

    Raises:
        CredentialError: If no password can be obtained.
    """
    if config.password:
        return config.password

    if config.pass_cmd:
        logger.debug(f"{config.name}: running PassCmd")
        return await run_pass_cmd(config.pass_cmd)

    if use_keyring:
        password = keyring.get_password(config.keyring_service, config.user)
        if not password:
            raise CredentialError(
                f"No password found in keyring for {config.user}. "
                f"Set it with: keyring set {config.keyring_service} {config.user}"
            )
        return password

    raise CredentialError(f"No Password or PassCmd for {config.name}")


# =============================================================================
# Exceptions
# =============================================================================

class CredentialError(Exception):
    """Raised when a password cannot be resolved."""
    pass
