"""The pool of bots that the scanner forwards evaluation requests to."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from .agent import Agent
from .models import (
    AgentConfig,
    AgentMetric,
    BlockResult,
    CombinationAlertResult,
    CombinerBotSubscription,
    EvaluateAlertRequest,
    EvaluateBlockRequest,
    EvaluateTxRequest,
    Subject,
    TxResult,
    decode_hex_uint64,
)

logger = logging.getLogger(__name__)

METRIC_TX_DROP = "agent.tx.drop"
METRIC_BLOCK_DROP = "agent.block.drop"
METRIC_COMBINER_DROP = "agent.combiner.drop"

_STATUS_LOG_INTERVAL = 30.0


class HealthStatus(str, Enum):
    """Status of a health report."""

    OK = "ok"
    FAILING = "failing"
    INFO = "info"
    DOWN = "down"
    UNKNOWN = "unknown"


@dataclass
class HealthReport:
    name: str
    status: HealthStatus
    details: str = ""


@dataclass
class ScannerPayload:
    """What the scanner tells other services about its progress."""

    latest_block_input: int = 0


class _CountdownLatch:
    def __init__(self, count: int) -> None:
        self._count = count
        self._cond = threading.Condition()

    def count_down(self, n: int) -> None:
        with self._cond:
            self._count = max(0, self._count - n)
            if self._count == 0:
                self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count <= 0)


def _drop_metric(agent_id: str, name: str) -> AgentMetric:
    return AgentMetric(
        agent_id=agent_id,
        timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        name=name,
        value=1.0,
    )


class AgentPool:
    """Keeps the bots the scanner interacts with and fans requests out to them."""

    def __init__(
        self,
        msg_client: Any,
        dialer: Callable[[AgentConfig], Any],
        wait_bots: int = 0,
    ) -> None:
        self.msg_client = msg_client
        self.tx_results: queue.Queue[TxResult] = queue.Queue()
        self.block_results: queue.Queue[BlockResult] = queue.Queue()
        self.combination_alert_results: queue.Queue[CombinationAlertResult] = queue.Queue()
        self._dialer = dialer
        self._agents: list[Agent] = []
        self._lock = threading.RLock()
        self._bot_wait: _CountdownLatch | None = None
        if wait_bots > 0:
            self._bot_wait = _CountdownLatch(wait_bots)
            threading.Thread(target=self._log_bot_wait, name="pool-bot-wait", daemon=True).start()

        self._register_message_handlers()
        threading.Thread(
            target=self._log_agent_statuses_loop, name="pool-status", daemon=True
        ).start()

    @property
    def agents(self) -> list[Agent]:
        """A snapshot of the agents in the pool."""
        with self._lock:
            return list(self._agents)

    def name(self) -> str:
        return "agent-pool"

    def health(self) -> list[HealthReport]:
        """Report how many agents there are and how many of them lag behind."""
        with self._lock:
            total = len(self._agents)
            lagging = sum(1 for agent in self._agents if agent.tx_buffer_is_full())
        status = HealthStatus.FAILING if total == 0 else HealthStatus.OK
        return [
            HealthReport("agents.total", status, str(total)),
            HealthReport("agents.lagging", HealthStatus.INFO, str(lagging)),
        ]

    def _log_bot_wait(self) -> None:
        if self._bot_wait is not None:
            self._bot_wait.wait()
            logger.info("started all bots")

    def _wait_for_bots(self) -> None:
        if self._bot_wait is not None:
            self._bot_wait.wait()

    def discard_agent(self, discarded: Agent) -> None:
        """Remove the agent from the pool."""
        with self._lock:
            kept = []
            for agent in self._agents:
                if agent is discarded:
                    logger.info("discarded agent %s", agent.config.container_name)
                else:
                    kept.append(agent)
            self._agents = kept

    def _offer(
        self, agent: Agent, requests: queue.Queue, request: Any, drop_metric: str,
        drops: list[AgentMetric],
    ) -> None:
        if agent.is_closed():
            self.discard_agent(agent)
            return
        try:
            requests.put_nowait(request)
        except queue.Full:
            logger.warning("agent %s request buffer is full - skipping", agent.config.id)
            drops.append(_drop_metric(agent.config.id, drop_metric))

    def _send_metrics(self, metrics: list[AgentMetric]) -> None:
        if metrics:
            self.msg_client.publish(Subject.METRIC_AGENT, metrics)

    def send_evaluate_tx_request(self, req: EvaluateTxRequest) -> None:
        """Queue the transaction for every ready agent that should process its block."""
        if req.event is None:
            raise ValueError("tx request without event")
        logger.debug("send evaluate tx request: %s", req.event.tx_hash)
        self._wait_for_bots()
        drops: list[AgentMetric] = []
        for agent in self.agents:
            if not agent.is_ready() or not agent.should_process_block(req.event.block_number):
                continue
            self._offer(agent, agent.tx_requests, req, METRIC_TX_DROP, drops)
        self._send_metrics(drops)

    def send_evaluate_block_request(self, req: EvaluateBlockRequest) -> None:
        """Queue the block for every ready agent that should process it."""
        if req.event is None:
            raise ValueError("block request without event")
        logger.debug("send evaluate block request: %s", req.event.block_number)
        self._wait_for_bots()
        drops: list[AgentMetric] = []
        for agent in self.agents:
            if not agent.is_ready() or not agent.should_process_block(req.event.block_number):
                continue
            self._offer(agent, agent.block_requests, req, METRIC_BLOCK_DROP, drops)

        try:
            block_number = decode_hex_uint64(req.event.block_number)
        except ValueError:
            block_number = 0
        self.msg_client.publish(
            Subject.SCANNER_BLOCK, ScannerPayload(latest_block_input=block_number)
        )
        self._send_metrics(drops)

    def send_evaluate_alert_request(self, req: EvaluateAlertRequest) -> None:
        """Queue the alert for every ready agent subscribed to it."""
        if req.event is None or req.event.source_bot_id is None:
            logger.warning("bad request")
            return
        self._wait_for_bots()
        drops: list[AgentMetric] = []
        for agent in self.agents:
            if not agent.is_ready() or not agent.should_process_alert(req.event):
                continue
            self._offer(agent, agent.combination_requests, req, METRIC_COMBINER_DROP, drops)
        self.msg_client.publish(Subject.SCANNER_ALERT, ScannerPayload())
        self._send_metrics(drops)

    def _log_agent_statuses_loop(self) -> None:
        stop = threading.Event()
        while not stop.wait(_STATUS_LOG_INTERVAL):
            for agent in self.agents:
                logger.debug(
                    "agent status: agent=%s blockBuffer=%d txBuffer=%d ready=%s closed=%s",
                    agent.config.id,
                    agent.block_requests.qsize(),
                    agent.tx_requests.qsize(),
                    agent.is_ready(),
                    agent.is_closed(),
                )

    def handle_agent_versions_update(self, payload: list[AgentConfig]) -> None:
        """Replace the agent list with the latest one, asking to run new and stop old bots."""
        with self._lock:
            new_agents: list[Agent] = []
            to_run: list[AgentConfig] = []
            for agent_cfg in payload:
                existing = next(
                    (a for a in self._agents
                     if a.config.container_name == agent_cfg.container_name),
                    None,
                )
                if existing is not None:
                    existing.set_shard_config(agent_cfg)
                    continue
                new_agents.append(
                    Agent(
                        agent_cfg,
                        self.msg_client,
                        self.tx_results,
                        self.block_results,
                        self.combination_alert_results,
                    )
                )
                to_run.append(agent_cfg)
                logger.info("will trigger start: %s", agent_cfg.id)

            latest_names = {cfg.container_name for cfg in payload}
            to_stop: list[AgentConfig] = []
            for agent in self._agents:
                if agent.config.container_name in latest_names:
                    new_agents.append(agent)
                    continue
                agent.close()
                to_stop.append(agent.config)
                logger.info("will trigger stop: %s (%s)", agent.config.id, agent.config.image)

            self._agents = new_agents
            if to_run:
                self.msg_client.publish(Subject.AGENTS_ACTION_RUN, to_run)
            if to_stop:
                self.msg_client.publish(Subject.AGENTS_ACTION_STOP, to_stop)

    def handle_status_running(self, payload: list[AgentConfig]) -> None:
        """Attach to the bots that started running and mark them ready."""
        with self._lock:
            to_stop: list[AgentConfig] = []
            ready: list[AgentConfig] = []
            subscribed: list[CombinerBotSubscription] = []
            unsubscribed: list[CombinerBotSubscription] = []

            for agent_cfg in payload:
                for agent in self._agents:
                    if agent.config.container_name != agent_cfg.container_name:
                        continue
                    if agent.is_ready():
                        continue
                    try:
                        client = self._dialer(agent.config)
                    except Exception as exc:
                        logger.error("error while dialing agent %s: %s", agent.config.id, exc)
                        to_stop.append(agent.config)
                        if agent.is_combiner_bot():
                            unsubscribed.extend(agent.config.alert_config.subscriptions)
                        continue

                    agent.set_client(client)
                    agent.set_ready()
                    agent.start_processing()
                    agent.wait_initialization()

                    if agent.is_combiner_bot():
                        subscribed.extend(agent.config.alert_config.subscriptions)
                    logger.info("attached agent %s (%s)", agent.config.id, agent.config.image)
                    ready.append(agent.config)

            if ready:
                self.msg_client.publish(Subject.AGENTS_STATUS_ATTACHED, ready)
                if self._bot_wait is not None:
                    self._bot_wait.count_down(len(ready))
            if to_stop:
                self.msg_client.publish(Subject.AGENTS_ACTION_STOP, to_stop)
            if subscribed:
                self.msg_client.publish(Subject.AGENTS_ALERT_SUBSCRIBE, subscribed)
            if unsubscribed:
                self.msg_client.publish(Subject.AGENTS_ALERT_UNSUBSCRIBE, unsubscribed)

    def handle_status_stopped(self, payload: list[AgentConfig]) -> None:
        """Close and remove the bots that stopped."""
        with self._lock:
            stopped_names = {cfg.container_name for cfg in payload}
            kept: list[Agent] = []
            for agent in self._agents:
                if agent.config.container_name in stopped_names:
                    agent.close()
                    logger.info("detached agent %s (%s)", agent.config.id, agent.config.image)
                else:
                    kept.append(agent)
            self._agents = kept

    def _register_message_handlers(self) -> None:
        self.msg_client.subscribe(Subject.AGENTS_VERSIONS_LATEST, self.handle_agent_versions_update)
        self.msg_client.subscribe(Subject.AGENTS_STATUS_RUNNING, self.handle_status_running)
        self.msg_client.subscribe(Subject.AGENTS_STATUS_STOPPED, self.handle_status_stopped)