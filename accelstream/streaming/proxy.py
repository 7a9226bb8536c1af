"""
Proxy path resolution for outbound stream fetches.

A ProxyConfig is validated and connectivity-tested before it becomes the
active route. Changes are all-or-nothing: a rejected configuration leaves the
previously active route (or the direct path) untouched.
"""

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import quote

import httpx

from accelstream.config import ProxySettingsConfig, get_config
from accelstream.streaming.error_handler import ProxyError, ProxyErrorReason

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMES = ("http", "https", "socks5")


@dataclass(frozen=True)
class ProxyConfig:
    """Proxy settings as entered by the user."""

    enabled: bool = False
    scheme: str = "http"
    host: str = ""
    port: int = 8080
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)

    @classmethod
    def disabled(cls) -> "ProxyConfig":
        return cls()

    def to_dict(self, include_secrets: bool = False) -> dict[str, Any]:
        """Convert to dictionary; the password is omitted unless asked for."""
        data: dict[str, Any] = {
            "enabled": self.enabled,
            "scheme": self.scheme,
            "host": self.host,
            "port": self.port,
            "username": self.username,
        }
        if include_secrets:
            data["password"] = self.password
        else:
            data["has_password"] = self.password is not None
        return data


@dataclass(frozen=True)
class ResolvedRoute:
    """A validated, connectivity-tested proxy route."""

    config: ProxyConfig
    latency_ms: float = 0.0

    @property
    def url(self) -> str:
        """Proxy URL including credentials, for HTTP clients only."""
        auth = ""
        if self.config.username:
            auth = quote(self.config.username, safe="")
            if self.config.password is not None:
                auth += ":" + quote(self.config.password, safe="")
            auth += "@"
        return f"{self.config.scheme}://{auth}{self.config.host}:{self.config.port}"

    @property
    def redacted_url(self) -> str:
        """Proxy URL safe to log."""
        auth = f"{self.config.username}:***@" if self.config.username else ""
        return f"{self.config.scheme}://{auth}{self.config.host}:{self.config.port}"

    def __repr__(self) -> str:
        return f"ResolvedRoute({self.redacted_url}, latency_ms={self.latency_ms:.1f})"

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.redacted_url, "latency_ms": round(self.latency_ms, 1)}


def validate_proxy_config(config: ProxyConfig) -> None:
    """
    Static validation of a proxy configuration.

    Raises:
        ProxyError: invalid_config when a field is missing or out of range
    """
    if not config.enabled:
        return
    if config.scheme not in SUPPORTED_SCHEMES:
        raise ProxyError(
            ProxyErrorReason.INVALID_CONFIG,
            f"Unsupported proxy scheme '{config.scheme}' (expected one of {', '.join(SUPPORTED_SCHEMES)})",
        )
    if not config.host or not config.host.strip():
        raise ProxyError(ProxyErrorReason.INVALID_CONFIG, "Host is required when proxy is enabled")
    if not isinstance(config.port, int) or not 1 <= config.port <= 65535:
        raise ProxyError(ProxyErrorReason.INVALID_CONFIG, f"Invalid port number: {config.port}")
    if config.password is not None and not config.username:
        raise ProxyError(ProxyErrorReason.INVALID_CONFIG, "Password given without username")


ClientFactory = Callable[[ResolvedRoute, float], httpx.AsyncClient]


def _default_client_factory(route: ResolvedRoute, timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(proxy=route.url, timeout=timeout, follow_redirects=True)


class ProxyPathResolver:
    """
    Validates proxy configurations and holds the active route.

    The active route is an immutable value replaced by a single reference
    assignment, so readers never see a partially-applied proxy.

    Usage:
        resolver = ProxyPathResolver()
        route = await resolver.apply(ProxyConfig(enabled=True, host="10.0.0.1", port=3128))
        resolver.active_route  # -> ResolvedRoute
    """

    def __init__(
        self,
        settings: Optional[ProxySettingsConfig] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        """
        Initialize the resolver.

        Args:
            settings: Probe settings (global config when None)
            client_factory: Builds the HTTP client used for connectivity probes
        """
        self._settings = settings or get_config().proxy
        self._client_factory = client_factory or _default_client_factory
        self._active_config: ProxyConfig = ProxyConfig.disabled()
        self._active_route: Optional[ResolvedRoute] = None
        self._listeners: list[Callable[[Optional[ResolvedRoute]], Any]] = []
        self._changes = 0

    @property
    def active_config(self) -> ProxyConfig:
        return self._active_config

    @property
    def active_route(self) -> Optional[ResolvedRoute]:
        """Active route, or None for direct connections."""
        return self._active_route

    def subscribe(self, listener: Callable[[Optional[ResolvedRoute]], Any]) -> None:
        """Register a callback invoked after the active route changes."""
        self._listeners.append(listener)

    async def resolve(self, config: ProxyConfig) -> Optional[ResolvedRoute]:
        """
        Validate and connectivity-test a configuration.

        Args:
            config: Candidate configuration

        Returns:
            ResolvedRoute, or None when the config disables the proxy

        Raises:
            ProxyError: invalid_config, connection_refused or auth_failed
        """
        validate_proxy_config(config)
        if not config.enabled:
            return None

        candidate = ResolvedRoute(config=config)
        latency_ms = await self._probe(candidate)
        return ResolvedRoute(config=config, latency_ms=latency_ms)

    async def test(self, config: ProxyConfig) -> dict[str, Any]:
        """Probe a configuration without applying it."""
        try:
            route = await self.resolve(config)
        except ProxyError as e:
            return {"success": False, "error": e.message, "reason": e.reason.value}
        return {"success": True, "latency_ms": round(route.latency_ms, 1) if route else 0.0}

    async def apply(self, config: ProxyConfig) -> Optional[ResolvedRoute]:
        """
        Resolve a configuration and make it the active route.

        Raises:
            ProxyError: The configuration was rejected, or a later apply/clear
                superseded it while it was being probed; the active route is unchanged
        """
        self._changes += 1
        change = self._changes
        route = await self.resolve(config)
        if change != self._changes:
            logger.info(f"Proxy change to {config.host}:{config.port} superseded by a newer change")
            raise ProxyError(ProxyErrorReason.SUPERSEDED, "Superseded by a newer proxy change")

        self._active_config = config
        self._active_route = route

        if route:
            logger.info(f"Proxy route applied: {route.redacted_url} ({route.latency_ms:.0f}ms)")
        else:
            logger.info("Proxy disabled, using direct connections")

        for listener in list(self._listeners):
            try:
                listener(route)
            except Exception as e:
                logger.error(f"Proxy listener error: {e}")
        return route

    async def clear(self) -> None:
        """Return to direct connections."""
        await self.apply(ProxyConfig.disabled())

    async def _probe(self, route: ResolvedRoute) -> float:
        """Make a lightweight request through the candidate route."""
        started = time.monotonic()
        try:
            async with self._client_factory(route, self._settings.probe_timeout) as client:
                response = await client.get(self._settings.probe_url)
        except httpx.ProxyError as e:
            if "407" in str(e):
                raise ProxyError(ProxyErrorReason.AUTH_FAILED, "Proxy authentication required") from e
            raise ProxyError(ProxyErrorReason.CONNECTION_REFUSED, str(e) or "Proxy refused the tunnel") from e
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as e:
            raise ProxyError(
                ProxyErrorReason.CONNECTION_REFUSED,
                f"Cannot reach proxy {route.redacted_url}: {str(e) or type(e).__name__}",
            ) from e
        except httpx.HTTPError as e:
            raise ProxyError(ProxyErrorReason.CONNECTION_REFUSED, str(e) or type(e).__name__) from e

        if response.status_code == 407:
            raise ProxyError(ProxyErrorReason.AUTH_FAILED, "Proxy authentication failed (HTTP 407)")
        if response.status_code >= 500:
            raise ProxyError(
                ProxyErrorReason.CONNECTION_REFUSED,
                f"Proxy probe returned HTTP {response.status_code}",
            )
        return (time.monotonic() - started) * 1000


class EnvCredentialStore:
    """
    Proxy credential lookup backed by environment variables.

    Stands in for the external credential store: persisted proxy settings never
    contain the password, which is merged back in at restore time.
    """

    def __init__(self, settings: Optional[ProxySettingsConfig] = None):
        self._settings = settings or get_config().proxy

    def get(self, host: str, port: int) -> Optional[tuple[str, str]]:
        username = os.environ.get(self._settings.username_env)
        password = os.environ.get(self._settings.password_env)
        if username and password is not None:
            return username, password
        return None
