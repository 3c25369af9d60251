"""Connectivity tracking.

The monitor only reports reachability; a failed push never flips it offline.
Listeners are plain callables invoked on transitions only.
"""

import asyncio
import enum
from typing import Awaitable, Callable, List, Optional

from drms_sync.utils.logging import get_logger

logger = get_logger(__name__)


class NetworkEvent(str, enum.Enum):
    """Connectivity transitions."""

    ONLINE = "online"
    OFFLINE = "offline"


NetworkListener = Callable[[NetworkEvent], None]
Probe = Callable[[], Awaitable[bool]]


class NetworkMonitor:
    """Holds the online flag and notifies subscribers when it changes."""

    def __init__(
        self,
        probe: Optional[Probe] = None,
        check_interval_seconds: float = 30.0,
        initially_online: bool = False,
    ):
        """Initialize the monitor.

        Args:
            probe: Async reachability check, usually ``transport.check_health``
            check_interval_seconds: Delay between probes while started
            initially_online: Starting state before the first probe
        """
        self.probe = probe
        self.check_interval_seconds = check_interval_seconds
        self._is_online = initially_online
        self._listeners: List[NetworkListener] = []
        self._task: Optional["asyncio.Task[None]"] = None

    @property
    def is_online(self) -> bool:
        """Current connectivity state."""
        return self._is_online

    def subscribe(self, listener: NetworkListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> bool:
        """Report connectivity from a platform hook or probe.

        Returns:
            True if the state changed and listeners were notified
        """
        if online == self._is_online:
            return False

        self._is_online = online
        event = NetworkEvent.ONLINE if online else NetworkEvent.OFFLINE
        logger.info("network_state_changed", state=event.value)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "network_listener_failed", network_event=event.value, error=str(e)
                )
        return True

    async def check_now(self) -> bool:
        """Run the probe once and record the result."""
        if self.probe is None:
            return self._is_online

        try:
            reachable = bool(await self.probe())
        except Exception as e:
            logger.debug("network_probe_failed", error=str(e))
            reachable = False

        self.set_online(reachable)
        return reachable

    def start(self) -> None:
        """Start the periodic probe loop; a no-op without a probe."""
        if self.probe is None or self._task is not None:
            return
        self._task = asyncio.create_task(self._probe_loop())

    async def stop(self) -> None:
        """Cancel the probe loop."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _probe_loop(self) -> None:
        while True:
            await self.check_now()
            await asyncio.sleep(self.check_interval_seconds)
