"""Data types shared by the scan node services."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

_UINT64_MAX = 2**64 - 1
_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")


def decode_hex_uint64(value: str) -> int:
    """Decode a 0x-prefixed hex quantity into an unsigned 64-bit integer."""
    if not value:
        raise ValueError("empty hex string")
    if not value.startswith(("0x", "0X")):
        raise ValueError(f"hex string without 0x prefix: {value!r}")
    digits = value[2:]
    if not digits:
        raise ValueError('hex string "0x"')
    if len(digits) > 1 and digits[0] == "0":
        raise ValueError(f"hex number with leading zero digits: {value!r}")
    if not _HEX_DIGITS.fullmatch(digits):
        raise ValueError(f"invalid hex string: {value!r}")
    if len(digits) > 16:
        raise ValueError(f"hex number > 64 bits: {value!r}")
    return int(digits, 16)


def encode_hex_uint64(value: int) -> str:
    """Encode an unsigned 64-bit integer as a 0x-prefixed hex quantity."""
    if not 0 <= value <= _UINT64_MAX:
        raise ValueError(f"value out of uint64 range: {value}")
    return f"0x{value:x}"


class Subject(str, Enum):
    """Message bus subjects used between the node services."""

    AGENTS_VERSIONS_LATEST = "agents.versions.latest"
    AGENTS_ACTION_RUN = "agents.action.run"
    AGENTS_ACTION_STOP = "agents.action.stop"
    AGENTS_STATUS_RUNNING = "agents.status.running"
    AGENTS_STATUS_STOPPED = "agents.status.stopped"
    AGENTS_STATUS_ATTACHED = "agents.status.attached"
    AGENTS_ALERT_SUBSCRIBE = "agents.alert.subscribe"
    AGENTS_ALERT_UNSUBSCRIBE = "agents.alert.unsubscribe"
    METRIC_AGENT = "metric.agent"
    SCANNER_BLOCK = "scanner.block"
    SCANNER_ALERT = "scanner.alert"
    INSPECTION_DONE = "inspection.done"


@dataclass
class ShardConfig:
    shards: int = 0
    shard_id: int = 0


@dataclass
class CombinerBotSubscription:
    bot_id: str = ""
    alert_id: str = ""
    chain_id: int = 0


@dataclass
class AlertConfig:
    subscriptions: list[CombinerBotSubscription] = field(default_factory=list)


@dataclass
class AgentInfo:
    id: str = ""
    image: str = ""
    image_hash: str = ""
    manifest: str = ""


@dataclass
class AgentConfig:
    id: str = ""
    image: str = ""
    manifest: str = ""
    start_block: int | None = None
    stop_block: int | None = None
    shard_config: ShardConfig | None = None
    alert_config: AlertConfig | None = None

    @property
    def image_hash(self) -> str:
        """The digest part of the image reference, or an empty string."""
        _, sep, digest = self.image.partition("@sha256:")
        return digest if sep else ""

    @property
    def container_name(self) -> str:
        """Name of the container that runs this agent."""
        short_id = self.id.removeprefix("0x")[:8]
        digest = self.image_hash[:4]
        if digest:
            return f"scannode-agent-{short_id}-{digest}"
        return f"scannode-agent-{short_id}"

    def to_agent_info(self) -> AgentInfo:
        return AgentInfo(
            id=self.id,
            image=self.image,
            image_hash=self.image_hash,
            manifest=self.manifest,
        )


@dataclass
class Finding:
    name: str = ""
    description: str = ""
    alert_id: str = ""
    severity: int = 0
    private: bool = False
    addresses: list[str] = field(default_factory=list)
    related_alerts: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class Alert:
    id: str = ""
    finding: Finding | None = None
    timestamp: str = ""
    type: str = ""
    agent: AgentInfo | None = None
    tags: dict[str, str] = field(default_factory=dict)
    truncated: bool = False
    address_bloom_filter: Any = None


@dataclass
class SignedAlert:
    alert: Alert | None = None
    signature: str = ""


@dataclass
class BlockEvent:
    block_number: str = ""
    block_hash: str = ""
    block_timestamp: str = ""
    chain_id: str = ""
    timestamps: dict[str, datetime] = field(default_factory=dict)


@dataclass
class TransactionEvent:
    block_number: str = ""
    block_hash: str = ""
    block_timestamp: str = ""
    tx_hash: str = ""
    chain_id: str = ""
    timestamps: dict[str, datetime] = field(default_factory=dict)


@dataclass
class AlertEvent:
    hash: str = ""
    alert_id: str = ""
    chain_id: int = 0
    created_at: str = ""
    source_bot_id: str | None = None
    source_block_number: int = 0
    source_chain_id: int = 0
    timestamps: dict[str, datetime] = field(default_factory=dict)


@dataclass
class EvaluateTxRequest:
    request_id: str = ""
    event: TransactionEvent | None = None


@dataclass
class EvaluateBlockRequest:
    request_id: str = ""
    event: BlockEvent | None = None


@dataclass
class EvaluateAlertRequest:
    request_id: str = ""
    event: AlertEvent | None = None


@dataclass
class EvaluateTxResponse:
    findings: list[Finding] = field(default_factory=list)
    private: bool = False
    metadata: dict[str, str] | None = None
    timestamp: str = ""
    latency_ms: int = 0


@dataclass
class EvaluateBlockResponse:
    findings: list[Finding] = field(default_factory=list)
    private: bool = False
    metadata: dict[str, str] | None = None
    timestamp: str = ""
    latency_ms: int = 0


@dataclass
class EvaluateAlertResponse:
    findings: list[Finding] = field(default_factory=list)
    private: bool = False
    metadata: dict[str, str] | None = None
    timestamp: str = ""
    latency_ms: int = 0


@dataclass
class NotifyRequest:
    signed_alert: SignedAlert | None = None
    eval_tx_request: EvaluateTxRequest | None = None
    eval_tx_response: EvaluateTxResponse | None = None
    eval_block_request: EvaluateBlockRequest | None = None
    eval_block_response: EvaluateBlockResponse | None = None
    eval_alert_request: EvaluateAlertRequest | None = None
    eval_alert_response: EvaluateAlertResponse | None = None
    agent_info: AgentInfo | None = None


@dataclass
class AgentMetric:
    agent_id: str = ""
    timestamp: str = ""
    name: str = ""
    value: float = 0.0


@dataclass
class MetricSummary:
    name: str = ""
    count: int = 0
    max: float = 0.0
    average: float = 0.0
    sum: float = 0.0
    p95: float = 0.0


@dataclass
class AgentMetrics:
    agent_id: str = ""
    timestamp: str = ""
    metrics: list[MetricSummary] = field(default_factory=list)


@dataclass
class TxResult:
    agent_config: AgentConfig
    request: EvaluateTxRequest
    response: EvaluateTxResponse
    timestamps: dict[str, datetime] = field(default_factory=dict)


@dataclass
class BlockResult:
    agent_config: AgentConfig
    request: EvaluateBlockRequest
    response: EvaluateBlockResponse
    timestamps: dict[str, datetime] = field(default_factory=dict)


@dataclass
class CombinationAlertResult:
    agent_config: AgentConfig
    request: EvaluateAlertRequest
    response: EvaluateAlertResponse
    timestamps: dict[str, datetime] = field(default_factory=dict)