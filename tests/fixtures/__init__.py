"""
Test Fixtures

Shared test data, fakes and canned command output.
"""

from .factories import (
    ChannelFactory,
    FakeBackend,
    FakeNetworkProber,
    SampleFactory,
    ScriptedDetector,
    SnapshotFactory,
    mock_client_factory,
    no_sleep,
    ok_handler,
    settle,
)

__all__ = [
    "ChannelFactory",
    "FakeBackend",
    "FakeNetworkProber",
    "SampleFactory",
    "ScriptedDetector",
    "SnapshotFactory",
    "mock_client_factory",
    "no_sleep",
    "ok_handler",
    "settle",
]
