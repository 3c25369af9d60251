"""Tests for connectivity tracking."""

import asyncio

import pytest
from structlog.testing import capture_logs

from drms_sync.sync.network_monitor import NetworkEvent, NetworkMonitor


class TestTransitions:
    """Test listener notification."""

    def test_listeners_called_on_transitions_only(self):
        """Test repeated reports of the same state are ignored."""
        monitor = NetworkMonitor()
        events = []
        monitor.subscribe(events.append)

        assert monitor.set_online(True) is True
        assert monitor.set_online(True) is False
        assert monitor.set_online(False) is True

        assert events == [NetworkEvent.ONLINE, NetworkEvent.OFFLINE]
        assert monitor.is_online is False

    def test_unsubscribe(self):
        """Test removed listeners are not called."""
        monitor = NetworkMonitor(initially_online=True)
        events = []
        unsubscribe = monitor.subscribe(events.append)

        unsubscribe()
        unsubscribe()
        monitor.set_online(False)

        assert events == []

    def test_failing_listener_is_isolated(self):
        """Test one broken listener does not block the rest."""
        monitor = NetworkMonitor()
        events = []

        def broken(event):
            raise RuntimeError("listener bug")

        monitor.subscribe(broken)
        monitor.subscribe(events.append)

        with capture_logs() as logs:
            monitor.set_online(True)

        assert events == [NetworkEvent.ONLINE]
        failures = [log for log in logs if log["event"] == "network_listener_failed"]
        assert failures[0]["network_event"] == "online"
        assert failures[0]["error"] == "listener bug"


class TestProbe:
    """Test active reachability checks."""

    @pytest.mark.asyncio
    async def test_check_now_records_probe_result(self):
        """Test a successful probe brings the monitor online."""

        async def probe():
            return True

        monitor = NetworkMonitor(probe=probe)

        assert await monitor.check_now() is True
        assert monitor.is_online is True

    @pytest.mark.asyncio
    async def test_probe_exception_counts_as_offline(self):
        """Test a raising probe reports unreachable."""

        async def probe():
            raise OSError("network down")

        monitor = NetworkMonitor(probe=probe, initially_online=True)

        assert await monitor.check_now() is False
        assert monitor.is_online is False

    @pytest.mark.asyncio
    async def test_check_now_without_probe_keeps_state(self):
        """Test platform-driven monitors are left alone."""
        monitor = NetworkMonitor(initially_online=True)

        assert await monitor.check_now() is True

    @pytest.mark.asyncio
    async def test_probe_loop_start_and_stop(self):
        """Test the loop probes until stopped."""
        calls = []

        async def probe():
            calls.append(1)
            return True

        monitor = NetworkMonitor(probe=probe, check_interval_seconds=0.01)
        monitor.start()
        monitor.start()

        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)

        await monitor.stop()
        probed = len(calls)
        await asyncio.sleep(0.05)

        assert probed >= 2
        assert len(calls) == probed
        assert monitor.is_online is True

    @pytest.mark.asyncio
    async def test_start_without_probe_is_noop(self):
        """Test starting a probe-less monitor creates no task."""
        monitor = NetworkMonitor()

        monitor.start()
        await monitor.stop()

        assert monitor.is_online is False

    @pytest.mark.asyncio
    async def test_connectivity_loop_survives_failing_listener(self):
        """Test a raising listener neither stops the loop nor later listeners."""
        results = iter([True, False, True, False, True, False])
        calls = []

        async def probe():
            calls.append(1)
            return next(results, True)

        def broken(event):
            raise RuntimeError("listener bug")

        monitor = NetworkMonitor(probe=probe, check_interval_seconds=0.01)
        events = []
        monitor.subscribe(broken)
        monitor.subscribe(events.append)
        monitor.start()

        for _ in range(200):
            if len(events) >= 3:
                break
            await asyncio.sleep(0.01)

        loop_alive = not monitor._task.done()
        await monitor.stop()

        assert loop_alive is True
        assert len(calls) >= 3
        assert events[:3] == [NetworkEvent.ONLINE, NetworkEvent.OFFLINE, NetworkEvent.ONLINE]
