import logging
import time
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field

from .memory_pool import DevicePool
from .scheduler import BlockScheduler, LaunchStats

logger = logging.getLogger(__name__)


@dataclass
class ProfileRecord:
    kernel_id: str
    launch_timestamp: float
    duration_ms: float
    divergence_ratio: float
    h2d_bytes: int = 0
    d2h_bytes: int = 0
    launches: int = 0
    num_warps: int = 0
    diverged_warps: int = 0
    branch_cost: int = 0
    baseline_cost: int = 0
    max_arms: int = 0
    serialized_lanes: int = 0
    blocks_total: int = 0
    blocks_executed: int = 0
    cancelled: bool = False
    global_transactions: int = 0
    ideal_transactions: int = 0
    bank_conflicts: int = 0
    simulated_cycles: int = 0
    block_order: list = field(default_factory=list)

    @property
    def transfer_bytes(self) -> int:
        return self.h2d_bytes + self.d2h_bytes

    @property
    def serialization(self) -> float:
        if self.baseline_cost == 0:
            return 1.0
        return self.branch_cost / self.baseline_cost

    @property
    def coalescing_efficiency(self) -> float:
        if self.global_transactions == 0:
            return 1.0
        return self.ideal_transactions / self.global_transactions

    def to_dict(self) -> dict:
        data = asdict(self)
        data["block_order"] = [tuple(b) for b in self.block_order]
        data["transfer_bytes"] = self.transfer_bytes
        data["serialization"] = self.serialization
        data["coalescing_efficiency"] = self.coalescing_efficiency
        return data


class ProfileScope:
    def __init__(self, name: str):
        self.name = name
        self.launch_timestamp = time.time()
        self.launches: list[LaunchStats] = []
        self.h2d_bytes = 0
        self.d2h_bytes = 0
        self.record: ProfileRecord | None = None
        self._start = time.perf_counter()

    def on_transfer(self, direction: str, nbytes: int) -> None:
        if direction == "h2d":
            self.h2d_bytes += nbytes
        else:
            self.d2h_bytes += nbytes

    def on_launch(self, stats: LaunchStats) -> None:
        self.launches.append(stats)

    def finish(self) -> ProfileRecord:
        launches = self.launches
        num_warps = sum(s.num_warps for s in launches)
        diverged = sum(s.diverged_warps for s in launches)

        return ProfileRecord(
            kernel_id=self.name,
            launch_timestamp=self.launch_timestamp,
            duration_ms=(time.perf_counter() - self._start) * 1000,
            divergence_ratio=diverged / num_warps if num_warps else 0.0,
            h2d_bytes=self.h2d_bytes,
            d2h_bytes=self.d2h_bytes,
            launches=len(launches),
            num_warps=num_warps,
            diverged_warps=diverged,
            branch_cost=sum(s.branch_cost for s in launches),
            baseline_cost=sum(s.baseline_cost for s in launches),
            max_arms=max((s.max_arms for s in launches), default=0),
            serialized_lanes=sum(s.serialized_lanes for s in launches),
            blocks_total=sum(s.blocks_total for s in launches),
            blocks_executed=sum(s.blocks_executed for s in launches),
            cancelled=any(s.cancelled for s in launches),
            global_transactions=sum(s.global_transactions for s in launches),
            ideal_transactions=sum(s.ideal_transactions for s in launches),
            bank_conflicts=sum(s.bank_conflicts for s in launches),
            simulated_cycles=sum(s.simulated_cycles for s in launches),
            block_order=[b for s in launches for b in s.block_order],
        )


class Profiler:
    """Collects a ProfileRecord per measured region.

    A scope subscribes to the pool's transfer events and the scheduler's
    launch events for exactly as long as it is open. It only listens, so a
    profiled launch makes the same scheduling decisions as an unprofiled one.
    """

    def __init__(self, pool: DevicePool, scheduler: BlockScheduler):
        self._pool = pool
        self._scheduler = scheduler
        self._records: list[ProfileRecord] = []

    @property
    def records(self) -> tuple[ProfileRecord, ...]:
        return tuple(self._records)

    @contextmanager
    def scope(self, name: str = "scope"):
        scope = ProfileScope(name)
        self._pool.transfer_listeners.append(scope.on_transfer)
        self._scheduler.launch_listeners.append(scope.on_launch)
        try:
            yield scope
        finally:
            self._pool.transfer_listeners.remove(scope.on_transfer)
            self._scheduler.launch_listeners.remove(scope.on_launch)

        scope.record = scope.finish()
        self._records.append(scope.record)
        logger.debug("Profiled %s: %.3f ms", name, scope.record.duration_ms)

    def profile(self, fn: Callable, *args, name: str | None = None, **kwargs) -> ProfileRecord:
        with self.scope(name or getattr(fn, "__name__", "scope")) as scope:
            fn(*args, **kwargs)
        return scope.record

    def reset(self) -> None:
        self._records.clear()

    def summary(self) -> dict[str, dict]:
        summary: dict[str, dict] = {}
        for record in self._records:
            entry = summary.setdefault(record.kernel_id, {
                "count": 0,
                "total_ms": 0.0,
                "divergence_ratio_sum": 0.0,
                "transfer_bytes": 0,
                "simulated_cycles": 0,
            })
            entry["count"] += 1
            entry["total_ms"] += record.duration_ms
            entry["divergence_ratio_sum"] += record.divergence_ratio
            entry["transfer_bytes"] += record.transfer_bytes
            entry["simulated_cycles"] += record.simulated_cycles

        for entry in summary.values():
            entry["mean_ms"] = entry["total_ms"] / entry["count"]
            entry["mean_divergence_ratio"] = entry.pop("divergence_ratio_sum") / entry["count"]
        return summary

    def format_table(self) -> str:
        lines = [
            f"{'Kernel':<24} {'Calls':>6} {'Mean (ms)':>10} {'Diverg.':>8} {'Bytes':>10} {'Cycles':>10}",
            "-" * 72,
        ]
        for kernel_id, entry in self.summary().items():
            lines.append(
                f"{kernel_id:<24} {entry['count']:>6} {entry['mean_ms']:>10.3f} "
                f"{entry['mean_divergence_ratio']:>8.1%} {entry['transfer_bytes']:>10} "
                f"{entry['simulated_cycles']:>10}"
            )
        return "\n".join(lines)
