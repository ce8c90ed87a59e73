"""Container statistics computed from raw Engine counter snapshots."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from stackyard.models.container import ContainerStats
from stackyard.models.engine import RawCpuStats, RawStats


@dataclass(frozen=True)
class BlockIOEntry:
    """One block device counter, tagged with its operation (read, write, ...)."""

    op: str
    value: int


@dataclass(frozen=True)
class StatsSample:
    """One point-in-time counter reading.

    Only the CPU counters are compared between two samples; memory,
    network and block I/O are taken from the current sample.
    """

    cpu_total: int = 0
    system_cpu_total: int = 0
    online_cpus: Optional[int] = None
    memory_usage: Optional[int] = None
    memory_limit: Optional[int] = None
    # interface name -> (rx_bytes, tx_bytes)
    networks: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    block_io: List[BlockIOEntry] = field(default_factory=list)


def compute_stats(current: StatsSample, previous: StatsSample) -> ContainerStats:
    """Derive percentages and totals from a pair of samples.

    CPU usage is ``cpu_delta / system_delta * cpus * 100``; a non-positive
    system delta (first reading, counter reset after restart) yields 0.
    """
    cpu_delta = current.cpu_total - previous.cpu_total
    system_delta = current.system_cpu_total - previous.system_cpu_total
    cpu_count = current.online_cpus or 1
    if system_delta <= 0:
        cpu_percent = 0.0
    else:
        cpu_percent = (cpu_delta / system_delta) * cpu_count * 100

    memory_usage = current.memory_usage or 0
    memory_limit = current.memory_limit or 1
    memory_percent = memory_usage / memory_limit * 100

    network_rx = sum(rx for rx, _ in current.networks.values())
    network_tx = sum(tx for _, tx in current.networks.values())

    block_read = 0
    block_write = 0
    for entry in current.block_io:
        op = entry.op.lower()
        if op == "read":
            block_read += entry.value
        elif op == "write":
            block_write += entry.value

    return ContainerStats(
        cpu_percent=cpu_percent,
        memory_usage=memory_usage,
        memory_limit=memory_limit,
        memory_percent=memory_percent,
        network_rx=network_rx,
        network_tx=network_tx,
        block_read=block_read,
        block_write=block_write,
    )


def _cpu_sample(cpu: RawCpuStats, **extra) -> StatsSample:
    return StatsSample(
        cpu_total=cpu.cpu_usage.total_usage,
        system_cpu_total=cpu.system_cpu_usage,
        online_cpus=cpu.online_cpus or len(cpu.cpu_usage.percpu_usage or []) or None,
        **extra,
    )


def samples_from_snapshot(raw: RawStats) -> Tuple[StatsSample, StatsSample]:
    """Split one Engine stats document into (current, previous) samples."""
    networks = {
        name: (counters.rx_bytes, counters.tx_bytes)
        for name, counters in (raw.networks or {}).items()
    }
    block_io = [
        BlockIOEntry(op=entry.op, value=entry.value)
        for entry in raw.blkio_stats.io_service_bytes_recursive or []
    ]
    current = _cpu_sample(
        raw.cpu_stats,
        memory_usage=raw.memory_stats.usage,
        memory_limit=raw.memory_stats.limit,
        networks=networks,
        block_io=block_io,
    )
    previous = _cpu_sample(raw.precpu_stats)
    return current, previous


def stats_from_snapshot(raw: RawStats) -> ContainerStats:
    """Compute container stats from a single non-streaming stats response."""
    current, previous = samples_from_snapshot(raw)
    return compute_stats(current, previous)
