"""
Unit tests for the persisted state store.
"""

import json
from dataclasses import replace
from pathlib import Path

import pytest

from accelstream.config import StateConfig
from accelstream.streaming.proxy import ProxyConfig
from accelstream.utils.state_store import StateStore
from tests.fixtures import SnapshotFactory


@pytest.fixture
def store(temp_dir: Path) -> StateStore:
    return StateStore(StateConfig(path=str(temp_dir / "state" / "accelstream.json")))


@pytest.mark.unit
class TestStateStore:
    """Tests for StateStore."""

    def test_missing_file_is_empty(self, store):
        assert store.load() == {}
        assert store.load_proxy() is None
        assert store.load_snapshot() is None

    def test_proxy_saved_without_password(self, store):
        store.save_proxy(
            ProxyConfig(enabled=True, scheme="socks5", host="10.0.0.5", port=1080, username="alice", password="s3cret")
        )

        raw = store.path.read_text()
        restored = store.load_proxy()

        assert "s3cret" not in raw
        assert restored.host == "10.0.0.5"
        assert restored.scheme == "socks5"
        assert restored.username == "alice"
        assert restored.password is None

    def test_disabled_proxy_clears_entry(self, store):
        store.save_proxy(ProxyConfig(enabled=True, host="10.0.0.5", port=3128))

        store.save_proxy(ProxyConfig.disabled())

        assert store.load_proxy() is None

    def test_snapshot_round_trip(self, store):
        snapshot = SnapshotFactory.hardware()

        store.save_snapshot(snapshot)

        assert store.load_snapshot() == snapshot

    def test_cached_snapshots_are_not_rewritten(self, store):
        store.save_snapshot(replace(SnapshotFactory.software(), from_cache=True))

        assert store.load_snapshot() is None

    def test_entries_are_independent(self, store):
        store.save_snapshot(SnapshotFactory.hardware())
        store.save_proxy(ProxyConfig(enabled=True, host="10.0.0.5", port=3128))

        data = json.loads(store.path.read_text())

        assert set(data) == {"capabilities", "proxy"}
        assert not store.path.with_suffix(".json.tmp").exists()

    def test_corrupt_file_is_ignored(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")

        assert store.load() == {}

    def test_malformed_snapshot_is_ignored(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps({"capabilities": {"accel_method": "warp-drive"}}))

        assert store.load_snapshot() is None

    def test_disabled_store(self, temp_dir):
        store = StateStore(StateConfig(enabled=False, path=str(temp_dir / "state.json")))

        store.save_proxy(ProxyConfig(enabled=True, host="10.0.0.5", port=3128))

        assert not store.path.exists()
        assert store.load_proxy() is None
