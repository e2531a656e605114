# helixchain

Components for a blockchain node:

- `helixchain.proposals`: the governance data model. It covers proposals,
  votes, delegations, parameters and treasury balances. Proposal types are
  `ParameterChange`, `ContractUpgrade`, `EmergencyAction`,
  `ValidatorSetChange` and `TreasurySpend`. It also holds the rules for
  deposits and thresholds: `tally_votes`, `required_deposit` and
  `dynamic_requirements`.
- `helixchain.governance`: `GovernanceManager`. It creates proposals and
  casts votes, including delegated votes. It handles delegation and
  revocation, settles proposals once the voting period ends, and executes
  passed proposals. Proposals and votes are saved to a key/value store.
  Hashes and ids are Keccak-256.
- `helixchain.messages`: `NetworkMessage`, the JSON wire messages
  (`MessageKind`), together with `PeerInfo`, `NodeInfo` and `NetworkStats`.
- `helixchain.connection`: `ConnectionManager`. It opens TCP connections to
  peers, keeps traffic counters and moves idle connections to a retry pool.
- `helixchain.node_logging`: `Logger`. It writes to a file that rotates
  daily (UTC midnight), keeps a history of the last 1000 entries that can be
  filtered with `LogFilter`, and counts metrics in `MetricRecorder`.
- `helixchain.metrics`: `MetricsManager`. It holds metric history with a
  retention period and exports metrics in the Prometheus text format. It
  fires threshold alerts and scores system health.

Errors are raised as exceptions:

- `GovernanceError`, which carries a `GovernanceErrorKind` in `.kind`
- `NetworkError`
- `LoggingError`
- `MetricsError`

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Governance

`GovernanceManager` works from two inputs:

- a mapping of addresses to balances;
- a list of validator addresses.

A validator's voting power is its balance. The treasury balance is read from
`helixchain.governance.TREASURY_ADDRESS`. Pass a `clock` to control time.

```python
from datetime import timedelta
from helixchain.governance import GovernanceManager, TREASURY_ADDRESS
from helixchain.proposals import ParameterChange, VoteType

now = [1_700_000_000.0]
gm = GovernanceManager(
    balances={"0xaaa": 50_000, TREASURY_ADDRESS: 1_000_000},
    validators=["0xaaa"],
    clock=lambda: now[0],
)
gm.initialize()                      # default parameters, voting power, treasury

proposal = gm.create_proposal(
    "Raise gas limit", "More room per block", "0xaaa",
    ParameterChange("gas_limit", "30000000", "40000000"),
    timedelta(hours=2),
)
gm.cast_vote(proposal.id, "0xaaa", VoteType.YES)

now[0] += 3 * 3600                   # voting period is over
gm.execute_proposal(proposal.id, "0xaaa")
print(gm.parameter("gas_limit").value)   # 40000000
```

How the manager decides:

- **Quorum and majority.** They default to 40% and 50% of the total voting
  power.
- **Deposit.** The proposer's balance must cover the `proposal_deposit`
  parameter, which is 10000 by default.
- **Advanced proposals.** `create_advanced_proposal` scales the deposit and
  thresholds by proposal type and `VotingStrategy`.
- **Delegation.** `delegate_voting_power(delegator, delegate, percentage)`
  lends 1 to 100 percent of one address's power to another.
- **Storage.** Proposals and votes are written as JSON to `MemoryStore`
  unless you pass another object with `put(key, value)` and `get(key)`.

## Metrics and alerts

```python
import asyncio
from helixchain.metrics import (
    Alert, AlertSeverity, ConsoleAlertHandler, MetricConfig, MetricType,
    MetricsManager, ThresholdCondition, ThresholdOperator,
)

async def main():
    mm = MetricsManager()
    mm.register_metric(MetricConfig("block_time_ms", "Block production time", MetricType.GAUGE))
    mm.register_alert(Alert(
        "slow_blocks", "Blocks are slow",
        ThresholdCondition("block_time_ms", ThresholdOperator.GREATER_THAN, 15000.0),
        AlertSeverity.WARNING,
    ))
    mm.add_alert_handler(ConsoleAlertHandler())
    await mm.record_metric("block_time_ms", 20000.0)   # prints an [ALERT] line
    print(mm.alert_status("slow_blocks").status)       # AlertStatus.FIRING
    print(mm.export_metrics().decode())
    print(mm.system_health().issues)

asyncio.run(main())
```

`start_monitoring(interval)` samples CPU and memory usage in the background
and `stop_monitoring()` ends it.

- Samples are read with `read_cpu_usage` and `read_memory_usage`. These run
  `top` and `free` through `sh`.
- They are recorded as `system_cpu_usage` and `system_memory_usage`, but
  only if metrics with those names have been registered.

## Logging

```python
from helixchain.node_logging import Logger, LoggingConfig, LogFilter

logger = Logger(LoggingConfig(level="DEBUG", file="node.log"), log_dir="logs")
logger.info("node started")
logger.error("peer dropped")
print([e.message for e in logger.filtered_logs(LogFilter(min_level="ERROR"))])
print(logger.metrics.snapshot()["counters"])   # {'error_count': 1}
logger.shutdown()
```

## Wire messages and connections

```python
from helixchain.messages import MessageKind, NetworkMessage

ping = NetworkMessage(MessageKind.PING, {"timestamp": 1, "nonce": 1})
data = ping.to_json()                 # b'{"Ping":{"timestamp":1,"nonce":1}}'
assert NetworkMessage.from_json(data) == ping
```

`await ConnectionManager().connect("127.0.0.1", 8001)` checks that a peer
accepts TCP connections and records it as active. The socket is closed right
after the connection is made. `check_connections()` moves connections that
have been idle longer than `connection_timeout` to the retry pool, and drops
them once `reconnect_attempts` is used up.

## What this package does not do

- **No genesis block.** It has no tools to build, hash or validate a
  genesis block or the initial chain state.
- **No network layer.** It does not listen for peers, keep a peer table, or
  send or receive messages over open connections. `NetworkMessage` only
  encodes and decodes. `ConnectionManager` only opens a connection to check
  it and then tracks it.
- **No command, server or API.** Everything is used as a library.
- **No chain data.** Balances and validators come from whatever mapping you
  pass to `GovernanceManager`. Governance records go to an in-memory store
  unless you supply your own.