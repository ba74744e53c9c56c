"""Keeps the node in sync with the bots assigned to it in the registry."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any

from .agent_pool import HealthReport, HealthStatus
from .models import AgentConfig, Subject

logger = logging.getLogger(__name__)


def _format_time(t: datetime | None) -> str:
    if t is None:
        return ""
    return t.strftime("%Y-%m-%dT%H:%M:%SZ")


class RegistryService:
    """Publishes the latest list of bots whenever the registry reports a change."""

    def __init__(self, scanner_address: str, msg_client: Any, registry_store: Any) -> None:
        self.scanner_address = scanner_address
        self.msg_client = msg_client
        self.registry_store = registry_store
        self.agent_configs: list[AgentConfig] = []
        self._running = threading.Lock()
        self._last_checked: datetime | None = None
        self._last_change_detected: datetime | None = None
        self._last_err: BaseException | None = None

    def name(self) -> str:
        return "registry"

    def publish_latest_agents(self) -> None:
        """Check the registry once and publish the bot list if it changed.

        Does nothing while another check is still running.
        """
        if not self._running.acquire(blocking=False):
            return
        try:
            self._last_checked = datetime.now(timezone.utc)
            try:
                agents, changed = self.registry_store.get_agents_if_changed(self.scanner_address)
            except Exception as exc:
                err = RuntimeError(f"failed to get the scanner list agents version: {exc}")
                self._last_err = err
                raise err from exc
            self._last_err = None
            if changed:
                self._last_change_detected = datetime.now(timezone.utc)
                logger.info("publishing list of agents: %d", len(agents))
                self.agent_configs = agents
                self.msg_client.publish(Subject.AGENTS_VERSIONS_LATEST, agents)
            else:
                logger.info("registry: no agent changes detected")
        finally:
            self._running.release()

    def health(self) -> list[HealthReport]:
        err = self._last_err
        return [
            HealthReport(
                "event.checked.error",
                HealthStatus.FAILING if err is not None else HealthStatus.OK,
                str(err) if err is not None else "",
            ),
            HealthReport("event.checked.time", HealthStatus.INFO, _format_time(self._last_checked)),
            HealthReport(
                "event.change-detected.time",
                HealthStatus.INFO,
                _format_time(self._last_change_detected),
            ),
        ]