import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .config import SimulatorConfig
from .context import running
from .dims import Dim3, to_dim3
from .errors import DeadlockTimeout, IllegalKernelOperation, InvalidLaunchConfig, SimulatorError
from .gpu_architecture import GPUSpec, theoretical_occupancy, warps_for_block
from .kernel import BarrierToken, BlockState, KernelDescriptor, ThreadContext
from .shared_memory import SharedMemory
from .warp import Warp, WarpStats

logger = logging.getLogger(__name__)


@dataclass
class BlockStats:
    block_idx: Dim3
    unit: int
    warps: list[WarpStats]
    barriers: int

    @property
    def cycles(self) -> int:
        return sum(w.issue_cycles for w in self.warps) + self.barriers


@dataclass
class LaunchStats:
    kernel_name: str
    grid: Dim3
    block: Dim3
    shared_bytes: int
    seed: int
    num_units: int
    block_order: list[Dim3]
    occupancy: float
    blocks: list[BlockStats] = field(default_factory=list)
    unit_cycles: list[int] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: float = 0.0

    @property
    def blocks_total(self) -> int:
        return len(self.block_order)

    @property
    def blocks_executed(self) -> int:
        return len(self.blocks)

    @property
    def warps(self) -> list[WarpStats]:
        return [w for b in self.blocks for w in b.warps]

    @property
    def num_warps(self) -> int:
        return sum(len(b.warps) for b in self.blocks)

    @property
    def diverged_warps(self) -> int:
        return sum(1 for w in self.warps if w.diverged)

    @property
    def divergence_ratio(self) -> float:
        if self.num_warps == 0:
            return 0.0
        return self.diverged_warps / self.num_warps

    @property
    def branch_cost(self) -> int:
        return sum(w.branch_cost for w in self.warps)

    @property
    def baseline_cost(self) -> int:
        return sum(w.branch_sites for w in self.warps)

    @property
    def max_arms(self) -> int:
        return max((w.max_arms for w in self.warps), default=0)

    @property
    def serialized_lanes(self) -> int:
        return sum(w.serialized_lanes for w in self.warps)

    @property
    def global_transactions(self) -> int:
        return sum(w.global_transactions for w in self.warps)

    @property
    def ideal_transactions(self) -> int:
        return sum(w.ideal_transactions for w in self.warps)

    @property
    def coalescing_efficiency(self) -> float:
        if self.global_transactions == 0:
            return 1.0
        return self.ideal_transactions / self.global_transactions

    @property
    def bank_conflicts(self) -> int:
        return sum(w.bank_conflicts for w in self.warps)

    @property
    def lane_utilization(self) -> float:
        warps = self.warps
        if not warps:
            return 0.0
        return sum(w.active_lanes for w in warps) / sum(w.width for w in warps)

    @property
    def simulated_cycles(self) -> int:
        return max(self.unit_cycles, default=0)


class BlockScheduler:
    """Runs kernel launches block by block on simulated execution units.

    Blocks go out in a shuffled order drawn from a per-launch seed, so code
    that depends on block order breaks under different seeds. Inside a block
    the lanes run in thread order up to their next barrier; a new barrier
    epoch starts once every lane is waiting on it.
    """

    def __init__(self, spec: GPUSpec, config: SimulatorConfig | None = None):
        self.spec = spec
        self.config = config or SimulatorConfig()
        self.num_units = self.config.num_execution_units or spec.num_sms
        self.launch_listeners: list[Callable[[LaunchStats], None]] = []
        self.launches = 0
        self._rng = random.Random(self.config.seed)

    def dispatch_order(self, grid: Dim3, seed: int) -> list[Dim3]:
        order = [
            Dim3(x, y, z)
            for z in range(grid.z)
            for y in range(grid.y)
            for x in range(grid.x)
        ]
        random.Random(seed).shuffle(order)
        return order

    def validate(
        self,
        descriptor: KernelDescriptor,
        block: Dim3,
        shared_bytes: int,
    ) -> None:
        if block.volume > self.spec.max_threads_per_block:
            raise InvalidLaunchConfig(
                f"{block.volume} threads per block exceeds the limit of "
                f"{self.spec.max_threads_per_block} on {self.spec.name}"
            )
        if not isinstance(shared_bytes, int) or shared_bytes < 0:
            raise InvalidLaunchConfig(f"shared_bytes must be a non-negative int, got {shared_bytes!r}")

        total_shared = descriptor.static_shared_bytes + shared_bytes
        if total_shared > self.spec.shared_memory_per_block:
            raise InvalidLaunchConfig(
                f"{total_shared} bytes of shared memory per block exceeds the limit of "
                f"{self.spec.shared_memory_per_block} on {self.spec.name}"
            )

    def launch(
        self,
        descriptor: KernelDescriptor,
        grid=None,
        block=None,
        shared_bytes: int = 0,
        args: tuple = (),
        cancel: threading.Event | None = None,
    ) -> LaunchStats:
        grid = to_dim3(descriptor.grid_dim if grid is None else grid, "grid")
        block = to_dim3(descriptor.block_dim if block is None else block, "block")
        self.validate(descriptor, block, shared_bytes)

        seed = self._rng.randrange(2**32)
        stats = LaunchStats(
            kernel_name=descriptor.name,
            grid=grid,
            block=block,
            shared_bytes=shared_bytes,
            seed=seed,
            num_units=self.num_units,
            block_order=self.dispatch_order(grid, seed),
            occupancy=theoretical_occupancy(
                threads_per_block=block.volume,
                registers_per_thread=self.config.registers_per_thread,
                shared_memory_per_block=descriptor.static_shared_bytes + shared_bytes,
                spec=self.spec,
            ),
            unit_cycles=[0] * self.num_units,
        )

        logger.info(
            "Launching %s: grid=%s block=%s shared=%d seed=%d",
            descriptor.name, tuple(grid), tuple(block), shared_bytes, seed,
        )

        start = time.perf_counter()
        for position, block_idx in enumerate(stats.block_order):
            if cancel is not None and cancel.is_set():
                stats.cancelled = True
                logger.warning(
                    "Launch of %s cancelled after %d of %d blocks",
                    descriptor.name, stats.blocks_executed, stats.blocks_total,
                )
                break

            unit = position % self.num_units
            block_stats = self._run_block(descriptor, block_idx, grid, block, shared_bytes, args, unit)
            stats.blocks.append(block_stats)
            stats.unit_cycles[unit] += block_stats.cycles
        stats.duration_ms = (time.perf_counter() - start) * 1000

        self.launches += 1
        logger.debug(
            "%s finished: %d blocks, divergence %.2f, %d cycles",
            descriptor.name, stats.blocks_executed, stats.divergence_ratio, stats.simulated_cycles,
        )

        for listener in list(self.launch_listeners):
            listener(stats)
        return stats

    def _run_block(
        self,
        descriptor: KernelDescriptor,
        block_idx: Dim3,
        grid: Dim3,
        block: Dim3,
        shared_bytes: int,
        args: tuple,
        unit: int,
    ) -> BlockStats:
        spec = self.spec
        threads = block.volume
        warps = [
            Warp(
                warp_id=w,
                active_lanes=min(spec.warp_size, threads - w * spec.warp_size),
                width=spec.warp_size,
                sector_bytes=spec.sector_bytes,
                banks=spec.shared_memory_banks,
                bank_width=spec.bank_width_bytes,
            )
            for w in range(warps_for_block(threads, spec.warp_size))
        ]
        shared = SharedMemory(descriptor.static_shared_bytes, shared_bytes, debug=self.config.debug)
        state = BlockState(block_idx, block, grid, shared, warps, self.config.barrier_timeout_s)

        cooperative = descriptor.cooperative
        lanes = [ThreadContext(state, tid, cooperative, spec.warp_size) for tid in range(threads)]
        bodies = {}

        try:
            pending = lanes
            while pending:
                waiting = [t for t in pending if self._advance(descriptor, t, args, bodies)]
                if not waiting:
                    break
                if len(waiting) < len(pending):
                    raise DeadlockTimeout(
                        f"Block {tuple(block_idx)} of {descriptor.name}: "
                        f"{len(waiting)} thread(s) wait at barrier {state.barriers} but "
                        f"{len(pending) - len(waiting)} exited without reaching it"
                    )
                state.barriers += 1
                shared.advance_epoch()
                pending = waiting
        finally:
            for body in bodies.values():
                body.close()

        return BlockStats(
            block_idx=block_idx,
            unit=unit,
            warps=[w.summarize() for w in warps],
            barriers=state.barriers,
        )

    def _advance(self, descriptor: KernelDescriptor, thread: ThreadContext, args: tuple, bodies: dict) -> bool:
        # The deadline bounds one lane step, not the whole block.
        thread.block.reset_deadline()

        with running(thread):
            try:
                if not descriptor.cooperative:
                    if descriptor.fn(thread, *args) is not None:
                        raise IllegalKernelOperation(
                            f"Kernel {descriptor.name} returned a value; kernels write results to device arrays"
                        )
                    return False

                if thread.tid not in bodies:
                    bodies[thread.tid] = descriptor.fn(thread, *args)
                try:
                    token = next(bodies[thread.tid])
                except StopIteration as stop:
                    if stop.value is not None:
                        raise IllegalKernelOperation(
                            f"Kernel {descriptor.name} returned a value; kernels write results to device arrays"
                        ) from None
                    if thread._pending is not None:
                        raise IllegalKernelOperation(
                            f"Thread {thread.tid} called syncthreads() without yielding the barrier"
                        ) from None
                    return False
            except SimulatorError:
                raise
            except Exception as exc:
                raise IllegalKernelOperation(
                    f"Kernel {descriptor.name} raised {type(exc).__name__} in block "
                    f"{tuple(thread.blockIdx)}, thread {tuple(thread.threadIdx)}: {exc}"
                ) from exc

        if not isinstance(token, BarrierToken) or token is not thread._pending:
            raise IllegalKernelOperation(
                f"Kernel {descriptor.name} yielded {token!r}; kernel bodies may only "
                f"yield t.syncthreads()"
            )
        thread._pending = None
        return True
