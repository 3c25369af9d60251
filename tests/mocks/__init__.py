"""Test doubles for the sync transport boundary and the clock."""

from .clock import FakeClock
from .fake_transport import MISSING, FakeSyncTransport
from .payloads import assessment_payload, response_payload

__all__ = [
    "FakeClock",
    "FakeSyncTransport",
    "MISSING",
    "assessment_payload",
    "response_payload",
]
