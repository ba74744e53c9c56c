import threading
from datetime import datetime, timezone

import pytest

from scannode.agent import METHOD_EVALUATE_ALERT, METHOD_EVALUATE_BLOCK, METHOD_EVALUATE_TX
from scannode.agent_pool import (
    METRIC_TX_DROP,
    AgentPool,
    HealthStatus,
    ScannerPayload,
)
from scannode.models import (
    AgentConfig,
    AlertConfig,
    AlertEvent,
    BlockEvent,
    CombinerBotSubscription,
    EvaluateAlertRequest,
    EvaluateAlertResponse,
    EvaluateBlockRequest,
    EvaluateBlockResponse,
    EvaluateTxRequest,
    EvaluateTxResponse,
    Subject,
    TransactionEvent,
)

TEST_AGENT_ID = "test-agent"
TEST_COMBINER_SOURCE_BOT = "0x1d646c4045189991fdfd24a66b192a294158b839a6ec121d740474bdacb3as12"


class FakeMessageClient:
    def __init__(self):
        self.published = []
        self.handlers = {}
        self._lock = threading.Lock()

    def publish(self, subject, payload):
        with self._lock:
            self.published.append((subject, payload))

    def subscribe(self, subject, handler):
        self.handlers[subject] = handler

    def subjects(self):
        with self._lock:
            return [subject for subject, _ in self.published]

    def payloads(self, subject):
        with self._lock:
            return [payload for s, payload in self.published if s == subject]


class FakeAgentClient:
    def __init__(self):
        self.closed = 0
        self.invoked = []

    def initialize(self, agent_id, proxy_host):
        return None

    def invoke(self, method, request, timeout):
        self.invoked.append(method)
        return {
            METHOD_EVALUATE_TX: EvaluateTxResponse,
            METHOD_EVALUATE_BLOCK: EvaluateBlockResponse,
            METHOD_EVALUATE_ALERT: EvaluateAlertResponse,
        }[method]()

    def close(self):
        self.closed += 1


@pytest.fixture
def msg_client():
    return FakeMessageClient()


@pytest.fixture
def agent_client():
    return FakeAgentClient()


@pytest.fixture
def pool(msg_client, agent_client):
    return AgentPool(msg_client, lambda cfg: agent_client)


def combiner_config():
    return AgentConfig(
        id=TEST_AGENT_ID,
        alert_config=AlertConfig(
            subscriptions=[CombinerBotSubscription(bot_id=TEST_COMBINER_SOURCE_BOT)]
        ),
    )


def test_registers_message_handlers(pool, msg_client):
    assert msg_client.handlers[Subject.AGENTS_VERSIONS_LATEST] == pool.handle_agent_versions_update
    assert msg_client.handlers[Subject.AGENTS_STATUS_RUNNING] == pool.handle_status_running
    assert msg_client.handlers[Subject.AGENTS_STATUS_STOPPED] == pool.handle_status_stopped


def test_start_process_stop(pool, msg_client, agent_client):
    payload = [combiner_config()]

    pool.handle_agent_versions_update(payload)
    assert msg_client.subjects() == [Subject.AGENTS_ACTION_RUN]
    assert len(pool.agents) == 1
    assert not pool.agents[0].is_ready()

    pool.handle_status_running(payload)
    assert pool.agents[0].is_ready()
    assert Subject.AGENTS_STATUS_ATTACHED in msg_client.subjects()
    assert msg_client.payloads(Subject.AGENTS_ALERT_SUBSCRIBE) == [
        [CombinerBotSubscription(bot_id=TEST_COMBINER_SOURCE_BOT)]
    ]

    tx_req = EvaluateTxRequest(event=TransactionEvent(block_number="123123", tx_hash="0x0"))
    pool.send_evaluate_tx_request(tx_req)
    tx_result = pool.tx_results.get(timeout=5)

    block_req = EvaluateBlockRequest(event=BlockEvent(block_number="123123"))
    pool.send_evaluate_block_request(block_req)
    block_result = pool.block_results.get(timeout=5)
    assert msg_client.payloads(Subject.SCANNER_BLOCK) == [ScannerPayload(latest_block_input=0)]

    alert_req = EvaluateAlertRequest(
        event=AlertEvent(
            hash="123123",
            source_bot_id=TEST_COMBINER_SOURCE_BOT,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
    )
    pool.send_evaluate_alert_request(alert_req)
    alert_result = pool.combination_alert_results.get(timeout=5)
    assert msg_client.payloads(Subject.SCANNER_ALERT) == [ScannerPayload()]

    assert tx_result.request is tx_req
    assert tx_result.response.metadata == {"imageHash": ""}
    assert tx_result.response.findings == []
    assert block_result.request is block_req
    assert block_result.response.metadata == {"imageHash": ""}
    assert alert_result.request is alert_req
    assert alert_result.response.metadata == {"imageHash": ""}
    assert agent_client.invoked == [METHOD_EVALUATE_TX, METHOD_EVALUATE_BLOCK, METHOD_EVALUATE_ALERT]

    pool.handle_agent_versions_update([])
    assert msg_client.subjects()[-1] == Subject.AGENTS_ACTION_STOP
    assert agent_client.closed == 1
    assert pool.agents == []


def test_health_without_agents_is_failing(pool):
    reports = pool.health()
    assert reports[0].name == "agents.total"
    assert reports[0].status == HealthStatus.FAILING
    assert reports[0].details == "0"
    assert reports[1].details == "0"


def test_full_buffer_drops_request_and_reports(pool, msg_client):
    pool.handle_agent_versions_update([AgentConfig(id=TEST_AGENT_ID)])
    agent = pool.agents[0]
    agent.set_ready()
    for _ in range(2000):
        agent.tx_requests.put_nowait(object())

    health = pool.health()
    assert health[0].status == HealthStatus.OK
    assert health[1].details == "1"

    pool.send_evaluate_tx_request(
        EvaluateTxRequest(event=TransactionEvent(block_number="0x1", tx_hash="0x0"))
    )
    metrics = msg_client.payloads(Subject.METRIC_AGENT)
    assert len(metrics) == 1
    assert metrics[0][0].name == METRIC_TX_DROP
    assert metrics[0][0].agent_id == TEST_AGENT_ID


def test_closed_agent_is_discarded(pool, msg_client):
    pool.handle_agent_versions_update([AgentConfig(id=TEST_AGENT_ID)])
    agent = pool.agents[0]
    agent.set_ready()
    agent.close()

    pool.send_evaluate_block_request(EvaluateBlockRequest(event=BlockEvent(block_number="0x10")))
    assert pool.agents == []
    assert agent.block_requests.qsize() == 0
    assert msg_client.payloads(Subject.SCANNER_BLOCK) == [ScannerPayload(latest_block_input=16)]


def test_alert_request_without_source_is_ignored(pool, msg_client):
    pool.handle_agent_versions_update([combiner_config()])
    agent = pool.agents[0]
    agent.set_ready()

    pool.send_evaluate_alert_request(EvaluateAlertRequest(event=AlertEvent(hash="0x1")))

    assert agent.combination_requests.qsize() == 0
    assert pool.agents == [agent]
    assert msg_client.subjects() == [Subject.AGENTS_ACTION_RUN]


def test_dial_failure_stops_and_unsubscribes(msg_client):
    def dialer(cfg):
        raise ConnectionError("refused")

    pool = AgentPool(msg_client, dialer)
    payload = [combiner_config()]
    pool.handle_agent_versions_update(payload)
    pool.handle_status_running(payload)

    assert not pool.agents[0].is_ready()
    assert msg_client.subjects() == [
        Subject.AGENTS_ACTION_RUN,
        Subject.AGENTS_ACTION_STOP,
        Subject.AGENTS_ALERT_UNSUBSCRIBE,
    ]
    assert msg_client.payloads(Subject.AGENTS_ALERT_UNSUBSCRIBE) == [
        [CombinerBotSubscription(bot_id=TEST_COMBINER_SOURCE_BOT)]
    ]


def test_status_stopped_removes_agent(pool, agent_client):
    cfg = AgentConfig(id=TEST_AGENT_ID)
    other = AgentConfig(id="0xabcdef0123")
    pool.handle_agent_versions_update([cfg, other])
    pool.handle_status_running([cfg])
    pool.handle_status_stopped([cfg])

    assert [agent.config.id for agent in pool.agents] == ["0xabcdef0123"]
    assert agent_client.closed == 1


def test_existing_agent_gets_new_shard_config(pool, msg_client):
    from scannode.models import ShardConfig

    pool.handle_agent_versions_update([AgentConfig(id=TEST_AGENT_ID)])
    first = pool.agents[0]
    pool.handle_agent_versions_update(
        [AgentConfig(id=TEST_AGENT_ID, shard_config=ShardConfig(shards=2, shard_id=1))]
    )
    assert pool.agents == [first]
    assert first.config.shard_config == ShardConfig(shards=2, shard_id=1)
    assert msg_client.subjects() == [Subject.AGENTS_ACTION_RUN]


def test_requests_wait_for_bots(msg_client, agent_client):
    pool = AgentPool(msg_client, lambda cfg: agent_client, wait_bots=1)
    cfg = AgentConfig(id=TEST_AGENT_ID)
    pool.handle_agent_versions_update([cfg])

    sender = threading.Thread(
        target=pool.send_evaluate_block_request,
        args=(EvaluateBlockRequest(event=BlockEvent(block_number="0x2")),),
        daemon=True,
    )
    sender.start()
    sender.join(timeout=0.3)
    assert sender.is_alive()
    assert Subject.SCANNER_BLOCK not in msg_client.subjects()

    pool.handle_status_running([cfg])
    sender.join(timeout=5)
    assert not sender.is_alive()
    assert msg_client.payloads(Subject.SCANNER_BLOCK) == [ScannerPayload(latest_block_input=2)]


def test_tx_request_without_event_raises(pool):
    with pytest.raises(ValueError):
        pool.send_evaluate_tx_request(EvaluateTxRequest())