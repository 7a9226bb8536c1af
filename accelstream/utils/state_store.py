"""Persisted state between runs (last proxy settings, last capability snapshot)."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from accelstream.config import StateConfig, get_config
from accelstream.ffmpeg.capabilities import CapabilitySnapshot
from accelstream.streaming.proxy import ProxyConfig

logger = logging.getLogger(__name__)


class StateStore:
    """
    JSON state file.

    Proxy settings are stored without the password; credentials come back
    from the credential store at restore time.
    """

    def __init__(self, settings: Optional[StateConfig] = None, path: Optional[Path] = None):
        self._settings = settings or get_config().state
        self.path = Path(path or self._settings.path)

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def load(self) -> dict[str, Any]:
        """Read the whole state file; a missing or unreadable file is empty state."""
        if not self.enabled or not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable state file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _update(self, key: str, value: Optional[dict[str, Any]]) -> None:
        if not self.enabled:
            return
        data = self.load()
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to write state file {self.path}: {e}")

    def save_proxy(self, config: Optional[ProxyConfig]) -> None:
        self._update("proxy", config.to_dict() if config and config.enabled else None)

    def load_proxy(self) -> Optional[ProxyConfig]:
        data = self.load().get("proxy")
        if not data:
            return None
        try:
            return ProxyConfig(
                enabled=bool(data.get("enabled", False)),
                scheme=data.get("scheme", "http"),
                host=data.get("host", ""),
                port=int(data.get("port", 8080)),
                username=data.get("username"),
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed cached proxy settings: {e}")
            return None

    def save_snapshot(self, snapshot: CapabilitySnapshot) -> None:
        if snapshot.from_cache:
            return
        self._update("capabilities", snapshot.to_dict())

    def load_snapshot(self) -> Optional[CapabilitySnapshot]:
        data = self.load().get("capabilities")
        if not data:
            return None
        try:
            return CapabilitySnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed cached capability snapshot: {e}")
            return None
