import logging
import threading

import torch

from .config import SimulatorConfig
from .device_array import DeviceArray
from .gpu_architecture import DEFAULT_SPEC, GPUSpec, get_gpu_spec
from .kernel import KernelDescriptor
from .memory_pool import DevicePool
from .profiler import Profiler, ProfileRecord
from .scheduler import BlockScheduler

logger = logging.getLogger(__name__)


class Device:
    def __init__(self, spec: GPUSpec | None = None, config: SimulatorConfig | None = None):
        self.spec = spec or DEFAULT_SPEC
        self.config = config or SimulatorConfig()

        arena_bytes = self.config.pool.arena_bytes or self.spec.memory_bytes
        self.pool = DevicePool(arena_bytes, self.config.pool)
        self.scheduler = BlockScheduler(self.spec, self.config)
        self.profiler = Profiler(self.pool, self.scheduler)

        logger.info(
            "Simulated device %s: %d execution units, %d byte arena, seed=%s",
            self.spec.name, self.scheduler.num_units, arena_bytes, self.config.seed,
        )

    @classmethod
    def from_local_gpu(cls, config: SimulatorConfig | None = None) -> "Device | None":
        spec = get_gpu_spec()
        if spec is None:
            return None
        return cls(spec, config)

    def allocate(self, size: int) -> DeviceArray:
        return self.pool.allocate(size)

    def empty(self, shape, dtype: torch.dtype = torch.float32) -> DeviceArray:
        return self.pool.empty(shape, dtype)

    def zeros(self, shape, dtype: torch.dtype = torch.float32) -> DeviceArray:
        return self.pool.zeros(shape, dtype)

    def to_device(self, tensor: torch.Tensor) -> DeviceArray:
        return self.pool.to_device(tensor)

    def launch(
        self,
        descriptor: KernelDescriptor,
        grid=None,
        block=None,
        shared_bytes: int = 0,
        *,
        args: tuple = (),
        cancel: threading.Event | None = None,
    ) -> ProfileRecord:
        with self.profiler.scope(descriptor.name) as scope:
            self.scheduler.launch(descriptor, grid, block, shared_bytes, args=args, cancel=cancel)
        return scope.record


_default_lock = threading.Lock()
_default_device: Device | None = None


def get_device() -> Device:
    global _default_device
    with _default_lock:
        if _default_device is None:
            _default_device = Device()
        return _default_device


def set_device(device: Device) -> None:
    global _default_device
    with _default_lock:
        _default_device = device


def reset_device() -> None:
    global _default_device
    with _default_lock:
        _default_device = None


def run_kernel(
    descriptor: KernelDescriptor,
    grid=None,
    block=None,
    shared_bytes: int = 0,
    *,
    args: tuple = (),
    device: Device | None = None,
    cancel: threading.Event | None = None,
) -> ProfileRecord:
    device = device or get_device()
    return device.launch(descriptor, grid, block, shared_bytes, args=args, cancel=cancel)


if __name__ == "__main__":
    from .gpu_architecture import threads_to_grid_block
    from .kernel import kernel

    @kernel
    def vector_add(t, a, b, out, n):
        i = t.grid(1)
        if t.branch(i < n):
            out[i] = a[i] + b[i]

    @kernel(static_shared_bytes=64 * 4)
    def block_sum(t, data, out, n):
        partial = t.shared_array(64, torch.float32)
        tid = t.threadIdx.x
        i = t.grid(1)
        partial[tid] = data[i] if i < n else 0.0
        yield t.syncthreads()

        stride = t.blockDim.x // 2
        while stride > 0:
            if t.branch(tid < stride, site="reduce"):
                partial[tid] = partial[tid] + partial[tid + stride]
            yield t.syncthreads()
            stride //= 2

        if tid == 0:
            out[t.blockIdx.x] = partial[0]

    device = Device(config=SimulatorConfig(seed=0))
    n = 1000
    grid, block = threads_to_grid_block(n, 64)

    a = device.to_device(torch.arange(n, dtype=torch.float32))
    b = device.to_device(torch.ones(n, dtype=torch.float32))
    out = device.empty(n, torch.float32)

    record = run_kernel(vector_add, grid, block, args=(a, b, out, n), device=device)
    print("vector_add")
    print(f"  correct: {torch.equal(out.to_host(), torch.arange(n) + 1.0)}")
    print(f"  warps: {record.num_warps}, diverged: {record.diverged_warps}")
    print(f"  coalescing efficiency: {record.coalescing_efficiency:.1%}")

    partials = device.zeros(grid[0], torch.float32)
    record = run_kernel(block_sum, grid, block, args=(a, partials, n), device=device)
    print("block_sum")
    print(f"  total: {partials.to_host().sum().item():.0f} (expected {n * (n - 1) // 2})")
    print(f"  divergence ratio: {record.divergence_ratio:.1%}")
    print(f"  serialization: {record.serialization:.2f}x")
    print()
    print(device.profiler.format_table())
