"""Controllable clock for queue and engine timestamps."""

from datetime import datetime, timedelta


class FakeClock:
    """Callable returning a fixed naive UTC time until advanced."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 8, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        """Move time forward and return the new value."""
        self.now += timedelta(seconds=seconds)
        return self.now
