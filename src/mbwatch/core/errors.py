# =============================================================================
# Contract Violations
# =============================================================================
# Programming errors in the watch state machine. These are NOT network
# errors: nothing catches them, and the application aborts when one escapes
# an account task.
# =============================================================================


class ContractViolation(Exception):
    """Raised when an internal invariant of the state machine is broken."""
    pass
