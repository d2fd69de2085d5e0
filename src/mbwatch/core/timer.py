# =============================================================================
# One-shot Timer
# =============================================================================
# A restartable one-shot timer for the asyncio event loop.
#
# Design notes:
#   - arm() replaces any pending fire, cancel() removes a pending fire AND
#     a fire that happened but was not consumed yet
#   - All state changes happen on the event loop thread, so a stale fire
#     can never be observed after cancel() or arm()
#   - The owner consumes a fire with consume() after wait() returns
# =============================================================================

import asyncio


class Timer:
    """
    One-shot timer with atomic arm/cancel/fire.

    Usage:
        >>> timer = Timer()
        >>> timer.arm(1.0)
        >>> await timer.wait()
        >>> timer.consume()
        True
    """

    def __init__(self) -> None:
        self._handle: asyncio.TimerHandle | None = None
        self._fired = asyncio.Event()

    @property
    def armed(self) -> bool:
        """True while a fire is scheduled."""
        return self._handle is not None

    @property
    def fired(self) -> bool:
        """True if the timer fired and the fire was not consumed yet."""
        return self._fired.is_set()

    def arm(self, delay: float) -> None:
        """Schedule a fire after delay seconds, replacing any earlier one."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire)

    def cancel(self) -> bool:
        """
        Cancel the timer and drain an unconsumed fire.

        Returns:
            True if a scheduled fire was cancelled.
        """
        pending = self._handle is not None
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._fired.clear()
        return pending

    def consume(self) -> bool:
        """Take the fire, if any. Returns True if the timer had fired."""
        if not self._fired.is_set():
            return False
        self._fired.clear()
        return True

    async def wait(self) -> None:
        """Block until the timer fires."""
        await self._fired.wait()

    def _fire(self) -> None:
        self._handle = None
        self._fired.set()
