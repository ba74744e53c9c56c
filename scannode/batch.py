"""Assembly of alert batches from agent notifications."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models import (
    AgentInfo,
    AgentMetrics,
    AlertEvent,
    NotifyRequest,
    SignedAlert,
    TransactionEvent,
    decode_hex_uint64,
    encode_hex_uint64,
)

logger = logging.getLogger(__name__)


@dataclass
class AgentAlerts:
    """Alerts produced by one agent."""

    agent_manifest: str = ""
    alerts: list[SignedAlert] = field(default_factory=list)


def _agent_alerts_in(results: list[AgentAlerts], agent: AgentInfo) -> AgentAlerts:
    for agent_alerts in results:
        if agent_alerts.agent_manifest == agent.manifest:
            return agent_alerts
    agent_alerts = AgentAlerts(agent_manifest=agent.manifest)
    results.append(agent_alerts)
    return agent_alerts


@dataclass
class BatchAgent:
    """An agent in the batch with the blocks, transactions and subscriptions it processed."""

    info: AgentInfo
    blocks: list[int] = field(default_factory=list)
    transactions: list[str] = field(default_factory=list)
    combinations: list[str] = field(default_factory=list)


@dataclass
class TransactionResults:
    """Alerts grouped under one transaction."""

    transaction: TransactionEvent
    results: list[AgentAlerts] = field(default_factory=list)

    def get_agent_alerts(self, agent: AgentInfo) -> AgentAlerts:
        """Return the existing or a new alert list for the agent."""
        return _agent_alerts_in(self.results, agent)


@dataclass
class BlockResults:
    """Alerts and transaction results grouped under one block."""

    block_hash: str = ""
    block_number: int = 0
    block_timestamp: str = ""
    transactions: list[TransactionResults] = field(default_factory=list)
    results: list[AgentAlerts] = field(default_factory=list)

    def get_transaction_results(self, tx: TransactionEvent) -> TransactionResults:
        """Return the existing or new results for the transaction."""
        for tx_results in self.transactions:
            if tx_results.transaction.tx_hash == tx.tx_hash:
                return tx_results
        tx_results = TransactionResults(transaction=tx)
        self.transactions.append(tx_results)
        return tx_results

    def get_agent_alerts(self, agent: AgentInfo) -> AgentAlerts:
        """Return the existing or a new alert list for the agent."""
        return _agent_alerts_in(self.results, agent)


@dataclass
class CombinationAlertResults:
    """Alerts grouped under one source alert of combiner bots."""

    alert_event: AlertEvent
    results: list[AgentAlerts] = field(default_factory=list)

    def get_agent_alerts(self, agent: AgentInfo) -> AgentAlerts:
        """Return the existing or a new alert list for the agent."""
        return _agent_alerts_in(self.results, agent)


def _is_private(notif: NotifyRequest) -> bool:
    signed = notif.signed_alert
    if signed is None or signed.alert is None or signed.alert.finding is None:
        return False
    if signed.alert.finding.private:
        return True
    # a public finding can still be made private by the response
    if notif.eval_block_response is not None:
        return notif.eval_block_response.private
    if notif.eval_tx_response is not None:
        return notif.eval_tx_response.private
    if notif.eval_alert_response is not None:
        return notif.eval_alert_response.private
    return False


def _event_of(request):
    if request.event is None:
        raise ValueError("evaluation request without event")
    return request.event


@dataclass
class BatchData:
    """An alert batch being collected."""

    chain_id: int = 0
    block_start: int = 0
    block_end: int = 0
    alert_count: int = 0
    max_severity: int = 0
    latest_block_input: int = 0
    parent: str = ""
    metrics: list[AgentMetrics] = field(default_factory=list)
    agents: list[BatchAgent] = field(default_factory=list)
    results: list[BlockResults] = field(default_factory=list)
    combination_alerts: list[CombinationAlertResults] = field(default_factory=list)
    private_alerts: list[AgentAlerts] = field(default_factory=list)

    def get_private_alerts(self, notif: NotifyRequest) -> AgentAlerts:
        """Return the existing or a new private alert list for the notifying agent."""
        return _agent_alerts_in(self.private_alerts, notif.agent_info)

    def append_alert(self, notif: NotifyRequest) -> None:
        """Record the notification and add its alert, if any, to the right list."""
        has_alert = notif.signed_alert is not None
        agent_alerts: AgentAlerts | None = None

        if _is_private(notif):
            if has_alert:
                agent_alerts = self.get_private_alerts(notif)
        elif notif.eval_block_request is not None:
            event = _event_of(notif.eval_block_request)
            block_num = decode_hex_uint64(event.block_number)
            self.add_batch_agent(notif.agent_info, block_num, "", "")
            block_res = self.get_block_results(event.block_hash, block_num, event.block_timestamp)
            if has_alert:
                agent_alerts = block_res.get_agent_alerts(notif.agent_info)
        elif notif.eval_tx_request is not None:
            event = _event_of(notif.eval_tx_request)
            block_num = decode_hex_uint64(event.block_number)
            self.add_batch_agent(notif.agent_info, block_num, event.tx_hash, "")
            block_res = self.get_block_results(event.block_hash, block_num, event.block_timestamp)
            if has_alert:
                tx_res = block_res.get_transaction_results(event)
                agent_alerts = tx_res.get_agent_alerts(notif.agent_info)
        elif notif.eval_alert_request is not None:
            event = _event_of(notif.eval_alert_request)
            self.add_batch_agent(notif.agent_info, 0, "", event.source_bot_id or "")
            combination_res = self.get_combination_alert_results(event)
            if has_alert:
                agent_alerts = combination_res.get_agent_alerts(notif.agent_info)

        if agent_alerts is None:
            return
        agent_alerts.alerts.append(notif.signed_alert)
        self.alert_count += 1

    def add_batch_agent(
        self, agent: AgentInfo, block_number: int, tx_hash: str, subscription: str
    ) -> None:
        """Note that the agent processed the block and transaction, or the subscription."""
        batch_agent = next((ba for ba in self.agents if ba.info.manifest == agent.manifest), None)
        if batch_agent is None:
            batch_agent = BatchAgent(info=agent)
            self.agents.append(batch_agent)

        if block_number != 0:
            if block_number not in batch_agent.blocks:
                batch_agent.blocks.append(block_number)
            if tx_hash:
                batch_agent.transactions.append(tx_hash)
            return

        if subscription:
            if subscription not in batch_agent.combinations:
                batch_agent.combinations.append(subscription)
            return

        logger.error("no block number or combination while adding batch agent")

    def get_block_results(
        self, block_hash: str, block_number: int, block_timestamp: str
    ) -> BlockResults:
        """Return the existing or new results for the block number."""
        for block_res in self.results:
            if block_res.block_number == block_number:
                return block_res
        block_res = BlockResults(
            block_hash=block_hash, block_number=block_number, block_timestamp=block_timestamp
        )
        self.results.append(block_res)
        return block_res

    def get_combination_alert_results(self, alert_event: AlertEvent) -> CombinationAlertResults:
        """Return the existing or new results for the source alert."""
        for res in self.combination_alerts:
            if res.alert_event.hash == alert_event.hash:
                return res
        res = CombinationAlertResults(alert_event=alert_event)
        self.combination_alerts.append(res)
        return res

    def add_notification(self, notif: NotifyRequest) -> None:
        """Widen the block range and severity for the notification and append it.

        Raises ValueError, leaving the batch untouched, if the block number is unusable.
        """
        if notif.eval_block_request is not None:
            block_hex = _event_of(notif.eval_block_request).block_number
        elif notif.eval_tx_request is not None:
            block_hex = _event_of(notif.eval_tx_request).block_number
        elif notif.eval_alert_request is not None:
            block_hex = encode_hex_uint64(_event_of(notif.eval_alert_request).source_block_number)
        else:
            block_hex = ""

        block_num = decode_hex_uint64(block_hex)
        if self.block_start == 0 or block_num < self.block_start:
            self.block_start = block_num
        if self.block_end == 0 or block_num > self.block_end:
            self.block_end = block_num

        signed = notif.signed_alert
        if signed is not None and signed.alert is not None and signed.alert.finding is not None:
            self.max_severity = max(self.max_severity, signed.alert.finding.severity)

        self.append_alert(notif)