"""Decisions on whether and how an alert batch is published."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .batch import BatchData

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = timedelta(seconds=15)
DEFAULT_BATCH_LIMIT = 500
DEFAULT_BATCH_BUFFER_SIZE = 100

FAST_REPORT_INTERVAL = timedelta(minutes=1)
SLOW_REPORT_INTERVAL = timedelta(minutes=15)

_NO_ALERTS = "because there are no alerts"


@dataclass
class LocalModeSettings:
    enable: bool = False
    include_metrics: bool = False


@dataclass
class PublishSettings:
    always_publish: bool = False
    skip_empty: bool = False
    local_mode: LocalModeSettings = field(default_factory=LocalModeSettings)


def _deadline_passed(last_send_attempt: datetime | None, now: datetime, interval: timedelta) -> bool:
    return last_send_attempt is None or now - last_send_attempt >= interval


def should_skip_publishing(
    batch: BatchData,
    settings: PublishSettings,
    last_send_attempt: datetime | None,
    runs_bots: bool,
    now: datetime,
) -> str | None:
    """Return the reason to skip publishing the batch, or None to publish it.

    A last_send_attempt of None means no batch was ever sent.
    """
    if settings.always_publish or batch.alert_count > 0:
        return None

    local = settings.local_mode
    if local.enable and local.include_metrics:
        if batch.metrics:
            return None
        return _NO_ALERTS + " or metrics in local mode"
    if local.enable:
        return _NO_ALERTS + " and metrics are skipped by default in local mode"
    if settings.skip_empty:
        return _NO_ALERTS + " and skipEmpty is enabled"
    if runs_bots:
        if batch.metrics:
            return None  # do not sacrifice metrics
        if _deadline_passed(last_send_attempt, now, FAST_REPORT_INTERVAL):
            return None
        return _NO_ALERTS + " and metrics and fast report deadline has not exceeded yet"
    if _deadline_passed(last_send_attempt, now, SLOW_REPORT_INTERVAL):
        return None
    return "because this node runs no bots and slow report deadline has not exceeded yet"


class BlockInputTracker:
    """Keeps the latest block number the scanner fed to the bots."""

    def __init__(self) -> None:
        self._latest = 0
        self._lock = threading.Lock()

    @property
    def latest(self) -> int:
        with self._lock:
            return self._latest

    def update(self, latest_block_input: int) -> bool:
        """Accept a newer block input; lower ones are ignored. Tell whether it was accepted."""
        with self._lock:
            if latest_block_input < self._latest:
                logger.warning(
                    "skipping scanner update (lower than previous): %d < %d",
                    latest_block_input,
                    self._latest,
                )
                return False
            logger.info("received scanner update: %d", latest_block_input)
            self._latest = latest_block_input
            return True

    def resolve(self, block_end: int) -> int:
        """The latest block input, falling back to the batch's last block."""
        with self._lock:
            return self._latest or block_end