import inspect
import time
from collections import Counter
from collections.abc import Callable, Hashable
from dataclasses import dataclass

import torch

from .dims import Dim3, to_dim3
from .errors import DeadlockTimeout, IllegalKernelOperation, InvalidLaunchConfig
from .shared_memory import SharedArray, SharedMemory
from .warp import Warp


@dataclass(frozen=True)
class KernelDescriptor:
    fn: Callable
    block_dim: Dim3 = Dim3()
    grid_dim: Dim3 = Dim3()
    static_shared_bytes: int = 0
    name: str = ""

    def __post_init__(self):
        if not callable(self.fn):
            raise TypeError(f"Kernel body must be callable, got {self.fn!r}")
        if self.static_shared_bytes < 0:
            raise InvalidLaunchConfig(
                f"static_shared_bytes must be non-negative, got {self.static_shared_bytes}"
            )
        object.__setattr__(self, "block_dim", to_dim3(self.block_dim, "block_dim"))
        object.__setattr__(self, "grid_dim", to_dim3(self.grid_dim, "grid_dim"))
        if not self.name:
            object.__setattr__(self, "name", getattr(self.fn, "__name__", "kernel"))

    @property
    def cooperative(self) -> bool:
        return inspect.isgeneratorfunction(self.fn)

    @property
    def threads_per_block(self) -> int:
        return self.block_dim.volume

    def __getitem__(self, config):
        if not isinstance(config, tuple) or len(config) not in (2, 3):
            raise InvalidLaunchConfig(
                "Launch configuration must be [grid, block] or [grid, block, shared_bytes]"
            )
        grid, block, *rest = config
        shared_bytes = rest[0] if rest else 0

        def launch(*args, device=None, cancel=None):
            from .runtime import run_kernel

            return run_kernel(
                self, grid, block, shared_bytes,
                args=args, device=device, cancel=cancel,
            )

        return launch


def kernel(
    fn: Callable | None = None,
    *,
    grid=1,
    block=1,
    static_shared_bytes: int = 0,
    name: str = "",
):
    def wrap(body: Callable) -> KernelDescriptor:
        return KernelDescriptor(
            fn=body,
            block_dim=block,
            grid_dim=grid,
            static_shared_bytes=static_shared_bytes,
            name=name,
        )

    if fn is not None:
        return wrap(fn)
    return wrap


@dataclass(frozen=True)
class BarrierToken:
    tid: int
    epoch: int


class BlockState:
    def __init__(
        self,
        block_idx: Dim3,
        block_dim: Dim3,
        grid_dim: Dim3,
        shared: SharedMemory,
        warps: list[Warp],
        timeout_s: float,
    ):
        self.block_idx = block_idx
        self.block_dim = block_dim
        self.grid_dim = grid_dim
        self.shared = shared
        self.warps = warps
        self.timeout_s = timeout_s
        self.barriers = 0
        self.reset_deadline()

    def reset_deadline(self) -> None:
        self.deadline = time.monotonic() + self.timeout_s

    def check_deadline(self, tid: int) -> None:
        if time.monotonic() > self.deadline:
            raise DeadlockTimeout(
                f"Block {tuple(self.block_idx)}: thread {tid} made no progress towards "
                f"barrier {self.barriers} within {self.timeout_s}s"
            )


class ThreadContext:
    """What a kernel body sees as ``t``: its indices and its device intrinsics."""

    def __init__(self, block: BlockState, tid: int, cooperative: bool, warp_size: int = 32):
        bx, by = block.block_dim.x, block.block_dim.y

        self.block = block
        self.tid = tid
        self.threadIdx = Dim3(tid % bx, (tid // bx) % by, tid // (bx * by))
        self.blockIdx = block.block_idx
        self.blockDim = block.block_dim
        self.gridDim = block.grid_dim
        self.warp_id, self.lane_id = divmod(tid, warp_size)

        self._warp = block.warps[self.warp_id]
        self._cooperative = cooperative
        self._pending: BarrierToken | None = None
        self._shared_declared = 0
        self._epoch = -1

    @property
    def shared_memory(self) -> SharedMemory:
        return self.block.shared

    def grid(self, ndim: int = 1):
        x = self.blockIdx.x * self.blockDim.x + self.threadIdx.x
        y = self.blockIdx.y * self.blockDim.y + self.threadIdx.y
        z = self.blockIdx.z * self.blockDim.z + self.threadIdx.z
        return self._pick(ndim, x, y, z)

    def gridsize(self, ndim: int = 1):
        x = self.gridDim.x * self.blockDim.x
        y = self.gridDim.y * self.blockDim.y
        z = self.gridDim.z * self.blockDim.z
        return self._pick(ndim, x, y, z)

    @staticmethod
    def _pick(ndim: int, x: int, y: int, z: int):
        if ndim == 1:
            return x
        if ndim == 2:
            return x, y
        if ndim == 3:
            return x, y, z
        raise ValueError(f"ndim must be 1, 2 or 3, got {ndim}")

    def _enter_op(self) -> None:
        if self._pending is not None:
            raise IllegalKernelOperation(
                f"Thread {self.tid} called syncthreads() without yielding the barrier"
            )
        self.block.check_deadline(self.tid)

        epoch = self.block.shared.epoch
        if epoch != self._epoch:
            self._epoch = epoch
            self._branch_seq = 0
            self._labels: Counter = Counter()
            self._global_seq = 0
            self._shared_seq = 0

    def branch(self, tag: Hashable, site: Hashable | None = None):
        self._enter_op()
        if site is None:
            key = (self._epoch, None, self._branch_seq)
            self._branch_seq += 1
        else:
            key = (self._epoch, site, self._labels[site])
            self._labels[site] += 1
        self._warp.record_branch(self.lane_id, key, tag)
        return tag

    def syncthreads(self) -> BarrierToken:
        if not self._cooperative:
            raise IllegalKernelOperation(
                "syncthreads() needs a generator kernel body: write `yield t.syncthreads()`"
            )
        self._enter_op()
        self._pending = BarrierToken(self.tid, self._epoch)
        return self._pending

    def shared_array(self, shape, dtype: torch.dtype = torch.float32) -> SharedArray:
        self._enter_op()
        array = self.block.shared.declare(self._shared_declared, shape, dtype)
        self._shared_declared += 1
        return array

    def dynamic_shared(self, dtype: torch.dtype = torch.float32) -> SharedArray:
        self._enter_op()
        return self.block.shared.dynamic(dtype)

    def record_global(self, address: int, nbytes: int) -> None:
        self._enter_op()
        self._warp.record_global((self._epoch, self._global_seq), address, nbytes)
        self._global_seq += 1

    def record_shared(self, address: int) -> None:
        self._enter_op()
        self._warp.record_shared((self._epoch, self._shared_seq), address)
        self._shared_seq += 1

    def __repr__(self) -> str:
        return (
            f"ThreadContext(blockIdx={tuple(self.blockIdx)}, "
            f"threadIdx={tuple(self.threadIdx)}, warp={self.warp_id}, lane={self.lane_id})"
        )
