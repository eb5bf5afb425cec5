"""Test helpers for the AutoPerp test suite"""

from tests.helpers.venue_stubs import (
    T0,
    FrozenClock,
    RecordingExchange,
    StaticPositions,
    make_intent,
    make_position,
)

__all__ = [
    "T0",
    "FrozenClock",
    "RecordingExchange",
    "StaticPositions",
    "make_intent",
    "make_position",
]
