"""Crafty Controller REST client used to stop, start and inspect instances."""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

import httpx

from ..config import ControlPlaneConfig
from ..errors import ControlPlaneError, ControlPlaneTimeout
from ..models import Instance

LOGGER = logging.getLogger(__name__)

SERVERS_ENDPOINT = "api/v2/servers"


class ControlPlaneClient:
    """Talk to the panel over HTTP with a bearer token.

    ``stop`` and ``start`` are idempotent: when the instance already reports
    the target state no action is sent. Otherwise the action is posted and the
    stats endpoint is polled every ``poll_interval`` seconds until the target
    state is observed or the timeout elapses.
    """

    def __init__(
        self,
        config: ControlPlaneConfig,
        *,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not config.url or not config.token:
            raise ControlPlaneError("Control plane URL and token must be configured.")
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self._client = client or httpx.Client(
            base_url=config.url,
            timeout=config.request_timeout,
            verify=config.verify_tls,
        )
        self._headers = {
            "Authorization": f"Bearer {config.token}",
            "Accept": "application/json",
        }

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> ControlPlaneClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    def _request(self, method: str, endpoint: str) -> object:
        url = f"{self.config.url}/{endpoint.lstrip('/')}"
        LOGGER.debug("API call: %s %s", method, url)
        try:
            response = self._client.request(method, url, headers=self._headers)
        except httpx.HTTPError as exc:
            raise ControlPlaneError(f"{method} {endpoint} failed: {exc}") from exc
        if not response.is_success:
            raise ControlPlaneError(
                f"{method} {endpoint} failed: HTTP {response.status_code} {response.text[:200]}"
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ControlPlaneError(f"{method} {endpoint} returned invalid JSON.") from exc

    def _stats(self, instance: Instance) -> Mapping[str, object]:
        payload = self._request("GET", f"{SERVERS_ENDPOINT}/{instance.remote_id}/stats")
        data = payload.get("data") if isinstance(payload, Mapping) else None
        if not isinstance(data, Mapping):
            raise ControlPlaneError(f"Stats for {instance.name} did not include a data object.")
        return data

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list_servers(self) -> list[Mapping[str, object]]:
        """Return the panel's server list."""
        payload = self._request("GET", SERVERS_ENDPOINT)
        data = payload.get("data") if isinstance(payload, Mapping) else None
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, Mapping)]

    def test_connectivity(self) -> bool:
        """Return True when the server list endpoint answers successfully."""
        try:
            self._request("GET", SERVERS_ENDPOINT)
        except ControlPlaneError as exc:
            LOGGER.warning("Control plane connectivity test failed: %s", exc)
            return False
        return True

    def is_running(self, instance: Instance) -> bool | None:
        """Return the running flag, or None when it cannot be determined."""
        try:
            data = self._stats(instance)
        except ControlPlaneError as exc:
            LOGGER.debug("Could not determine state of %s: %s", instance.name, exc)
            return None
        running = data.get("running")
        if isinstance(running, bool):
            return running
        return None

    def reported_version(self, instance: Instance) -> str | None:
        """Return the version string the panel reports, if any."""
        try:
            data = self._stats(instance)
        except ControlPlaneError as exc:
            LOGGER.debug("No reported version for %s: %s", instance.name, exc)
            return None
        version = data.get("version")
        if isinstance(version, str) and version.strip():
            return version.strip()
        return None

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def stop(self, instance: Instance, timeout: float | None = None) -> None:
        """Stop *instance* and wait until it reports not running."""
        self._transition(instance, action="stop_server", running=False, timeout=timeout)

    def start(self, instance: Instance, timeout: float | None = None) -> None:
        """Start *instance* and wait until it reports running."""
        self._transition(instance, action="start_server", running=True, timeout=timeout)

    def _transition(
        self,
        instance: Instance,
        *,
        action: str,
        running: bool,
        timeout: float | None,
    ) -> None:
        verb = "start" if running else "stop"
        if self.is_running(instance) is running:
            LOGGER.info("Server already %s: %s", "running" if running else "stopped", instance.name)
            return

        self._request("POST", f"{SERVERS_ENDPOINT}/{instance.remote_id}/action/{action}")
        LOGGER.info("%s command sent for server: %s", verb.capitalize(), instance.name)

        limit = self.config.server_timeout if timeout is None else timeout
        deadline = self._clock() + limit
        while True:
            self._sleep(self.config.poll_interval)
            if self.is_running(instance) is running:
                LOGGER.info("Server %s: %s", "started" if running else "stopped", instance.name)
                return
            if self._clock() >= deadline:
                raise ControlPlaneTimeout(
                    f"Server {instance.name} did not {verb} within {limit:g} seconds."
                )
            LOGGER.debug("Waiting for %s to %s", instance.name, verb)


@dataclass
class OfflineControlPlane:
    """In-memory stand-in used when the panel is not reachable (offline mode)."""

    running: dict[str, bool] = field(default_factory=dict)
    versions: dict[str, str] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)

    def close(self) -> None:
        """Nothing to release."""

    def test_connectivity(self) -> bool:
        """Offline mode skips the connectivity probe."""
        return True

    def list_servers(self) -> list[Mapping[str, object]]:
        """Return the names known to the stand-in."""
        return [{"server_name": name, "running": state} for name, state in self.running.items()]

    def is_running(self, instance: Instance) -> bool | None:
        """Return the simulated running flag (instances start out running)."""
        return self.running.get(instance.name, True)

    def reported_version(self, instance: Instance) -> str | None:
        """Return a configured simulated version."""
        return self.versions.get(instance.name)

    def stop(self, instance: Instance, timeout: float | None = None) -> None:
        """Mark *instance* stopped."""
        self.calls.append(("stop", instance.name))
        self.running[instance.name] = False

    def start(self, instance: Instance, timeout: float | None = None) -> None:
        """Mark *instance* running."""
        self.calls.append(("start", instance.name))
        self.running[instance.name] = True


__all__ = ["ControlPlaneClient", "OfflineControlPlane"]
