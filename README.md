# scannode

This package is the core of a scan node. A scan node feeds blocks, transactions and alerts to detection bots. It collects what the bots find and groups the findings into alert batches. It also limits the rate of requests, aggregates bot metrics and decides when a batch is worth publishing.

It uses only the Python standard library and needs Python 3.10 or later.

## Modules

- `scannode.models` holds the dataclasses shared across the package:
  - `AgentConfig`, with its `container_name` and `image_hash` properties;
  - `ShardConfig`, `AlertConfig` and `CombinerBotSubscription`;
  - the events, the evaluation requests and responses, `Finding`, `Alert`, `SignedAlert` and `NotifyRequest`;
  - `AgentMetric`, `MetricSummary` and `AgentMetrics`;
  - the result types `TxResult`, `BlockResult` and `CombinationAlertResult`.

  It also has the `Subject` enum of message subjects, and `decode_hex_uint64` and `encode_hex_uint64` for `0x`-prefixed hex quantities.
- `scannode.rate_limiter.RateLimiter(rate, burst, clock=time.monotonic)` gives each client its own token bucket.
  - `exceeds_limit(client_id)` takes one token and returns `True` when the client is over its limit.
  - `cleanup(max_idle)` drops idle clients and returns how many it dropped.
  - A non-positive rate raises `ValueError`.
- `scannode.rpc_errors.too_many_requests_response(body)` returns `(429, body_bytes)`. The body is a JSON-RPC error with code `-32000` that echoes the request `id`. The body is empty when the request cannot be decoded.
- `scannode.checks.check_proxy_against_scan(scan, proxy)` raises `BadProxyAPIError` when the scan URL is `ws`/`wss` and the proxy URL is missing or is not `http`/`https`.
- `scannode.error_counter.ErrorCounter(max_errors, err_check)` counts consecutive errors that `err_check` accepts. `too_many_errs(err)` returns `True` once the count reaches the maximum. `None`, or an error that `err_check` does not accept, resets the count.
- `scannode.metrics.AgentMetricsAggregator(bucket_interval, clock=...)` puts metrics into time buckets, one set per agent.
  - `force_flush()` returns the summaries (count, average, max, p95, sum) sorted by bucket time.
  - `try_flush()` returns `None` until a bucket interval has passed since the last flush.
  - The helpers `average`, `maximum` and `p95` are also available.
- `scannode.batch.BatchData` builds an alert batch from notifications.
  - `add_notification(notif)` widens the block range and the maximum severity, then appends the alert.
  - Alerts are grouped under `BlockResults`, `TransactionResults` or `CombinationAlertResults`, with `AgentAlerts` for each agent.
  - Private alerts go into their own list.
- `scannode.publishing` provides two things:
  - `should_skip_publishing(batch, settings, last_send_attempt, runs_bots, now)` returns a reason for skipping the batch, or `None` when it should be published. The settings are `PublishSettings` and `LocalModeSettings`.
  - `BlockInputTracker` keeps the highest block input it has seen.
- `scannode.agent.Agent` is one bot in the pool. It has:
  - request queues and the ready and closed states;
  - sharding and the checks for block range and subscriptions (`should_process_block`, `should_process_alert`);
  - processing of tx, block and combination requests, with findings truncated to 10;
  - the validators `validate_finding`, `validate_evaluate_alert_response`, `validate_initialize_response`, `check_valid_keccak256` and `is_hex_address`.
- `scannode.agent_pool.AgentPool(msg_client, dialer, wait_bots=0)` keeps the list of agents.
  - It follows the latest agent list and the running/stopped status messages.
  - It sends evaluation requests to ready agents. When an agent's buffer is full, the request is dropped and a drop metric is published.
  - `health()` reports the total number of agents and how many are lagging.
- `scannode.registry.RegistryService(scanner_address, msg_client, registry_store)` publishes the agent list on `Subject.AGENTS_VERSIONS_LATEST` when the store reports a change. Only one check runs at a time.
- `scannode.findings`:
  - `truncate_finding(finding)` sorts the addresses of a finding and builds a `BloomFilter` over them (false-positive rate 0.001).
  - Address lists longer than 50 are cut to 50.
  - It returns the filter description (hex `k` and `m`, base64 bitset, item count) and a truncation flag.
- `scannode.scanner_api.ScannerAPI(feed).start_blocks(query)` reads `start`, `end` and `rate` from the query and starts the feed over that range. It returns `(status, json_body)`.

## Collaborators you supply

Several classes work with objects that you pass in:

- **Message client** — has `publish(subject, payload)` and `subscribe(subject, handler)`.
- **Bot client** — returned by the pool's `dialer`. It has `initialize(agent_id=..., proxy_host=...)`, `invoke(method, request, timeout)` and `close()`.
- **Registry store** — has `get_agents_if_changed(address)`, which returns `(agents, changed)`.
- **Block feed** — has `is_started()` and `start_range(start, end, rate)`.

## Example

```python
from datetime import timedelta

from scannode.checks import BadProxyAPIError, check_proxy_against_scan
from scannode.metrics import AgentMetricsAggregator
from scannode.models import AgentMetric
from scannode.rate_limiter import RateLimiter

limiter = RateLimiter(rate=0.5, burst=1)
assert not limiter.exceeds_limit("bot-1")
assert limiter.exceeds_limit("bot-1")

try:
    check_proxy_against_scan("wss://node.example.com", "")
except BadProxyAPIError as err:
    print(err)

aggregator = AgentMetricsAggregator(timedelta(minutes=1))
aggregator.add_agent_metrics(
    AgentMetric(agent_id="bot", timestamp="2023-01-01T15:15:15Z", name="latency", value=v)
    for v in (1, 2, 3, 4, 5)
)
[bucket] = aggregator.force_flush()
print(bucket.timestamp, bucket.metrics[0])  # 2023-01-01T15:15:00Z, count=5, p95=4.0
```

## What it does not do

The package makes decisions and builds data, but it does not do any I/O to other systems.

- It runs no HTTP or gRPC servers: the rate limiter, the JSON-RPC error and the scanner API only return values.
- It has no message bus client and no container management.
- It does not sign, upload or store batches.
- It installs no command.

## Tests

```
pip install -e .[test]
pytest
```