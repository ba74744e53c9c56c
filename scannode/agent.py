"""A bot in the scanner pool: takes evaluation requests and produces results."""

from __future__ import annotations

import calendar
import dataclasses
import logging
import queue
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .error_counter import ErrorCounter
from .models import (
    AgentConfig,
    AgentMetric,
    AlertConfig,
    AlertEvent,
    BlockResult,
    CombinationAlertResult,
    EvaluateAlertRequest,
    EvaluateAlertResponse,
    EvaluateBlockRequest,
    EvaluateTxRequest,
    Finding,
    Subject,
    TxResult,
    decode_hex_uint64,
)

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 2000
AGENT_TIMEOUT = 30.0
MAX_FINDINGS = 10
DEFAULT_AGENT_INITIALIZE_TIMEOUT = 300.0

METHOD_EVALUATE_TX = "/network.forta.Agent/EvaluateTx"
METHOD_EVALUATE_BLOCK = "/network.forta.Agent/EvaluateBlock"
METHOD_EVALUATE_ALERT = "/network.forta.Agent/EvaluateAlert"

METRIC_FINDINGS_DROPPED = "agent.findings.dropped"
METRIC_STOP = "agent.stop"

JSON_RPC_PROXY_HOST = "scannode-json-rpc"

_POLL_INTERVAL = 0.2

_KECCAK256 = re.compile(r"0x[a-f0-9]{64}")
_BOT_ID = re.compile(r"0x[a-fA-F0-9]{64}")
_HEX_ADDRESS = re.compile(r"(?:0[xX])?[0-9a-fA-F]{40}")
_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)


def _is_critical_err(err: BaseException) -> bool:
    return False


def check_valid_keccak256(value: str) -> bool:
    """Tell whether the value is a lower-case 0x-prefixed 32-byte hash."""
    return _KECCAK256.fullmatch(value) is not None


def is_hex_address(value: str) -> bool:
    """Tell whether the value is a 20-byte hex address, with or without 0x."""
    return _HEX_ADDRESS.fullmatch(value) is not None


def _is_valid_bot_id(value: str) -> bool:
    return _BOT_ID.fullmatch(value) is not None


def validate_initialize_response(response: Any) -> None:
    """Raise ValueError if the initialization response subscribes to a bad bot id."""
    alert_config = getattr(response, "alert_config", None) if response is not None else None
    if alert_config is None:
        return
    for subscription in alert_config.subscriptions:
        if not _is_valid_bot_id(subscription.bot_id):
            raise ValueError(f"invalid bot id :{subscription.bot_id}")


def validate_finding(finding: Finding | None) -> None:
    """Raise ValueError if the finding has bad related alerts or addresses."""
    if finding is None:
        raise ValueError("nil finding")
    for alert in finding.related_alerts:
        if not check_valid_keccak256(alert):
            raise ValueError(f"bad related alert string: {alert}")
    for address in finding.addresses:
        if not is_hex_address(address):
            raise ValueError(f"bad address string: {address}")


def validate_evaluate_alert_response(response: EvaluateAlertResponse | None) -> None:
    """Raise ValueError if the combiner response or any of its findings is invalid."""
    if response is None:
        raise ValueError("nil response")
    for finding in response.findings:
        validate_finding(finding)


def _unix_seconds(value: str) -> int:
    match = _RFC3339.fullmatch(value)
    if match is None:
        raise ValueError(f"not an RFC 3339 time: {value!r}")
    year, month, day, hour, minute, second, _, zone = match.groups()
    parsed = datetime(int(year), int(month), int(day), int(hour), int(minute), int(second))
    offset = timedelta(0)
    if zone not in ("Z", "z"):
        sign = -1 if zone[0] == "-" else 1
        offset = sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
    return calendar.timegm((parsed - offset).timetuple())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_rfc3339(t: datetime) -> str:
    return t.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Agent:
    """Receives blocks, transactions and alerts for one bot and produces results."""

    def __init__(
        self,
        config: AgentConfig,
        msg_client: Any,
        tx_results: Any,
        block_results: Any,
        combination_results: Any,
    ) -> None:
        self.config = dataclasses.replace(config)
        self.msg_client = msg_client
        self.tx_requests: queue.Queue[EvaluateTxRequest] = queue.Queue(DEFAULT_BUFFER_SIZE)
        self.block_requests: queue.Queue[EvaluateBlockRequest] = queue.Queue(DEFAULT_BUFFER_SIZE)
        self.combination_requests: queue.Queue[EvaluateAlertRequest] = queue.Queue(
            DEFAULT_BUFFER_SIZE
        )
        self._tx_results = tx_results
        self._block_results = block_results
        self._combination_results = combination_results
        self._err_counter = ErrorCounter(3, _is_critical_err)
        self._client: Any = None
        self._ready = threading.Event()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._initialized = threading.Event()
        self._initialized.set()
        self._lock = threading.RLock()

    def set_alert_config(self, cfg: AlertConfig | None) -> None:
        with self._lock:
            self.config.alert_config = cfg

    def is_combiner_bot(self) -> bool:
        """Tell whether the bot subscribes to alerts of other bots."""
        with self._lock:
            alert_config = self.config.alert_config
            return alert_config is not None and len(alert_config.subscriptions) > 0

    def tx_buffer_is_full(self) -> bool:
        return self.tx_requests.qsize() >= DEFAULT_BUFFER_SIZE

    def close(self) -> None:
        """Mark the agent closed and close its client; later calls do nothing."""
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            if self._client is not None:
                self._client.close()

    def set_ready(self) -> None:
        self._ready.set()

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def set_client(self, client: Any) -> None:
        self._client = client

    def start_processing(self) -> None:
        """Initialize the bot and start processing the request queues in the background."""
        self._initialized.clear()
        workers: list[tuple[Callable[[], None], str]] = [
            (self._initialize, "initialize"),
            (lambda: self._process_loop(self.tx_requests, self.process_transaction), "tx"),
            (lambda: self._process_loop(self.block_requests, self.process_block), "block"),
            (
                lambda: self._process_loop(
                    self.combination_requests, self.process_combination_alert
                ),
                "combination",
            ),
        ]
        for target, name in workers:
            threading.Thread(
                target=target, name=f"agent-{self.config.id}-{name}", daemon=True
            ).start()

    def wait_initialization(self) -> None:
        self._initialized.wait()

    def _initialize(self) -> None:
        try:
            try:
                response = self._client.initialize(
                    agent_id=self.config.id, proxy_host=JSON_RPC_PROXY_HOST
                )
            except NotImplementedError as exc:
                logger.info(
                    "initialize() method not implemented in bot - safe to ignore: %s", exc
                )
                return
            except Exception as exc:
                logger.warning("bot initialization failed: %s", exc)
                return
            try:
                validate_initialize_response(response)
            except ValueError as exc:
                logger.warning("bot initialization validation failed: %s", exc)
                return
            alert_config = getattr(response, "alert_config", None) if response else None
            if alert_config is not None:
                self.set_alert_config(alert_config)
            logger.info("bot initialization succeeded: %s", self.config.id)
        finally:
            self._initialized.set()

    def _process_loop(self, requests: queue.Queue, handler: Callable[[Any], bool]) -> None:
        self._initialized.wait()
        while True:
            try:
                request = requests.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self.is_closed():
                    return
                continue
            if handler(request):
                return

    def _publish_metric(self, name: str, value: float) -> None:
        metric = AgentMetric(
            agent_id=self.config.id,
            timestamp=_format_rfc3339(_utc_now()),
            name=name,
            value=value,
        )
        self.msg_client.publish(Subject.METRIC_AGENT, [metric])

    def _finish_response(self, response: Any, start: float) -> None:
        if len(response.findings) > MAX_FINDINGS:
            dropped = len(response.findings) - MAX_FINDINGS
            self._publish_metric(METRIC_FINDINGS_DROPPED, float(dropped))
            response.findings = response.findings[:MAX_FINDINGS]
        duration = time.monotonic() - start
        response.timestamp = _format_rfc3339(_utc_now())
        response.latency_ms = int(duration * 1000)
        logger.debug("request successful in %.3fs", duration)
        if response.metadata is None:
            response.metadata = {}
        response.metadata["imageHash"] = self.config.image_hash

    @staticmethod
    def _timestamps(request: Any, request_time: datetime, response_time: datetime) -> dict:
        event = request.event
        timestamps = dict(event.timestamps) if event is not None else {}
        timestamps["bot_request"] = request_time
        timestamps["bot_response"] = response_time
        return timestamps

    def _invoke(self, method: str, request: Any) -> tuple[Any, BaseException | None, datetime, datetime]:
        request_time = _utc_now()
        try:
            response = self._client.invoke(method, request, AGENT_TIMEOUT)
            err = None
        except Exception as exc:
            response, err = None, exc
        return response, err, request_time, _utc_now()

    def _stop_after_error(self, err: BaseException, publish_stop_metric: bool) -> bool:
        logger.error("error invoking agent %s: %s", self.config.id, err)
        if not self._err_counter.too_many_errs(err):
            return False
        logger.error("too many errors - shutting down agent %s", self.config.id)
        self.close()
        self.msg_client.publish(Subject.AGENTS_ACTION_STOP, [self.config])
        if publish_stop_metric:
            self._publish_metric(METRIC_STOP, 1.0)
        return True

    def process_transaction(self, request: EvaluateTxRequest) -> bool:
        """Evaluate one transaction request; tell whether processing should stop."""
        with self._lock:
            start = time.monotonic()
            if self.is_closed():
                return True
            response, err, request_time, response_time = self._invoke(METHOD_EVALUATE_TX, request)
            if err is not None:
                return self._stop_after_error(err, publish_stop_metric=True)
            self._finish_response(response, start)
            result = TxResult(
                agent_config=self.config,
                request=request,
                response=response,
                timestamps=self._timestamps(request, request_time, response_time),
            )
        self._tx_results.put(result)
        return False

    def process_block(self, request: EvaluateBlockRequest) -> bool:
        """Evaluate one block request; tell whether processing should stop."""
        with self._lock:
            start = time.monotonic()
            if self.is_closed():
                return True
            response, err, request_time, response_time = self._invoke(
                METHOD_EVALUATE_BLOCK, request
            )
            if err is not None:
                return self._stop_after_error(err, publish_stop_metric=False)
            self._finish_response(response, start)
            result = BlockResult(
                agent_config=self.config,
                request=request,
                response=response,
                timestamps=self._timestamps(request, request_time, response_time),
            )
        self._block_results.put(result)
        return False

    def process_combination_alert(self, request: EvaluateAlertRequest) -> bool:
        """Evaluate one alert request; tell whether processing should stop.

        A failed call that is not fatal still yields a result with an empty response.
        """
        with self._lock:
            start = time.monotonic()
            if self.is_closed():
                return True
            response, err, request_time, response_time = self._invoke(
                METHOD_EVALUATE_ALERT, request
            )
            if err is not None:
                if self._stop_after_error(err, publish_stop_metric=False):
                    return True
                response = EvaluateAlertResponse()
            try:
                validate_evaluate_alert_response(response)
            except ValueError as exc:
                logger.error(
                    "evaluate combination response validation failed for request %s: %s",
                    request.request_id,
                    exc,
                )
                return False
            self._finish_response(response, start)
            result = CombinationAlertResult(
                agent_config=self.config,
                request=request,
                response=response,
                timestamps=self._timestamps(request, request_time, response_time),
            )
        self._combination_results.put(result)
        return False

    def should_process_block(self, block_number_hex: str) -> bool:
        """Tell whether the block is in the bot's range and on its shard."""
        with self._lock:
            try:
                block_number = decode_hex_uint64(block_number_hex)
            except ValueError:
                block_number = 0
            cfg = self.config
            if cfg.start_block is not None and block_number < cfg.start_block:
                return False
            if cfg.stop_block is not None and block_number > cfg.stop_block:
                return False
            if self.is_sharded():
                shard = cfg.shard_config
                return block_number % shard.shards == shard.shard_id
            return True

    def should_process_alert(self, event: AlertEvent) -> bool:
        """Tell whether the alert matches one of the bot's subscriptions and its shard."""
        with self._lock:
            alert_config = self.config.alert_config
            if alert_config is None:
                return False
            for subscription in alert_config.subscriptions:
                subscribed_to_bot = subscription.bot_id in ("", event.source_bot_id)
                subscribed_to_alert = subscription.alert_id in ("", event.alert_id)
                correct_chain = subscription.chain_id in (0, event.chain_id)
                try:
                    created_at = _unix_seconds(event.created_at)
                except ValueError:
                    logger.warning(
                        "failed to parse created at for sharding calculation: "
                        "alert=%s createdAt=%s bot=%s",
                        event.hash,
                        event.created_at,
                        self.config.id,
                    )
                    return False
                if self.is_sharded():
                    shard = self.config.shard_config
                    on_shard = (created_at % 2**64) % shard.shards == shard.shard_id
                else:
                    on_shard = True
                if subscribed_to_bot and subscribed_to_alert and correct_chain and on_shard:
                    return True
            return False

    def set_shard_config(self, cfg: AgentConfig) -> None:
        with self._lock:
            self.config.shard_config = cfg.shard_config

    def is_sharded(self) -> bool:
        shard = self.config.shard_config
        return shard is not None and shard.shards > 1