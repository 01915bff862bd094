import dataclasses
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

import torch

from .config import PoolConfig
from .context import in_kernel
from .device_array import DeviceArray
from .dims import dtype_itemsize, normalize_shape, numel
from .errors import IllegalKernelOperation, OutOfMemory

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class MemoryBlock:
    offset: int
    size: int
    free: bool = True
    generation: int = 0

    @property
    def end(self) -> int:
        return self.offset + self.size


class DevicePool:
    """Best-fit allocator over one simulated device arena.

    Released extents are remembered per size and handed out again before any
    new space is carved, the way a caching device allocator avoids going back
    to the driver. Every release bumps the block's generation so handles
    issued before it stop working.
    """

    def __init__(self, arena_bytes: int, config: PoolConfig | None = None):
        if arena_bytes < 1:
            raise ValueError(f"arena_bytes must be positive, got {arena_bytes}")

        self.config = config or PoolConfig()
        self._lock = threading.Lock()
        self._arena = torch.zeros(arena_bytes, dtype=torch.uint8)
        self._blocks: list[MemoryBlock] = [MemoryBlock(offset=0, size=arena_bytes)]
        self._recycled: dict[int, list[int]] = {}

        self.transfer_listeners: list[Callable[[str, int], None]] = []
        self.allocations = 0
        self.recycle_hits = 0

    @property
    def arena_bytes(self) -> int:
        return self._arena.numel()

    def allocate(self, size: int) -> DeviceArray:
        return self._allocate(size, torch.uint8, (size,))

    def empty(self, shape, dtype: torch.dtype = torch.float32) -> DeviceArray:
        shape = normalize_shape(shape)
        return self._allocate(numel(shape) * dtype_itemsize(dtype), dtype, shape)

    def zeros(self, shape, dtype: torch.dtype = torch.float32) -> DeviceArray:
        array = self.empty(shape, dtype)
        self._arena[array.offset:array.offset + array.nbytes].zero_()
        return array

    def to_device(self, tensor: torch.Tensor) -> DeviceArray:
        array = self.empty(tuple(tensor.shape) or (1,), tensor.dtype)
        array.from_host(tensor)
        return array

    def _allocate(self, size: int, dtype: torch.dtype, shape: tuple) -> DeviceArray:
        if in_kernel():
            raise IllegalKernelOperation(
                "Device memory cannot be allocated inside a kernel body; "
                "use shared_array() or dynamic_shared()"
            )
        if size < 1:
            raise ValueError(f"Allocation size must be positive, got {size}")

        with self._lock:
            block = self._take_recycled(size) or self._take_best_fit(size)
            if block is None and self._grow(size):
                block = self._take_best_fit(size)

            if block is None:
                status = self._status()
                logger.warning(
                    "Allocation of %d bytes failed: %d free, largest block %d",
                    size, status["free"], status["largest_free"],
                )
                raise OutOfMemory(size, status["largest_free"], status["free"])

            self.allocations += 1
            array = DeviceArray(self, block, dtype, shape)

        logger.debug("Allocated %d bytes at offset %d", size, block.offset)
        return array

    def release(self, array: DeviceArray) -> None:
        if in_kernel():
            raise IllegalKernelOperation("Device memory cannot be released inside a kernel body")
        if array.pool is not self:
            raise ValueError("Array was allocated from a different pool")

        with self._lock:
            block = array._resolve()
            block.free = True
            block.generation += 1

            depth = self.config.recycle_depth
            if depth > 0:
                recent = self._recycled.setdefault(block.size, [])
                recent.append(block.offset)
                del recent[:max(len(recent) - depth, 0)]

            offset, size = block.offset, block.size
            self._coalesce(block)

        logger.debug("Released %d bytes at offset %d", size, offset)

    def status(self) -> dict:
        with self._lock:
            return self._status()

    def blocks(self) -> tuple[MemoryBlock, ...]:
        with self._lock:
            return tuple(dataclasses.replace(b) for b in self._blocks)

    def _status(self) -> dict:
        free_sizes = [b.size for b in self._blocks if b.free]
        free = sum(free_sizes)
        largest_free = max(free_sizes, default=0)
        return {
            "used": sum(b.size for b in self._blocks if not b.free),
            "free": free,
            "largest_free": largest_free,
            "arena_bytes": self.arena_bytes,
            "blocks": len(self._blocks),
            "free_blocks": len(free_sizes),
            "fragmentation": 1.0 - largest_free / free if free > 0 else 0.0,
            "allocations": self.allocations,
            "recycle_hits": self.recycle_hits,
        }

    def _take_recycled(self, size: int) -> MemoryBlock | None:
        offsets = self._recycled.get(size)
        block = None
        while offsets and block is None:
            offset = offsets.pop()
            host = self._free_block_containing(offset, size)
            if host is not None:
                self.recycle_hits += 1
                block = self._carve(host, offset, size)
        if offsets == []:
            del self._recycled[size]
        return block

    def _take_best_fit(self, size: int) -> MemoryBlock | None:
        best = None
        for b in self._blocks:
            if b.free and b.size >= size and (best is None or b.size < best.size):
                best = b
        if best is None:
            return None
        return self._carve(best, best.offset, size)

    def _free_block_containing(self, offset: int, size: int) -> MemoryBlock | None:
        for b in self._blocks:
            if b.free and b.offset <= offset and offset + size <= b.end:
                return b
        return None

    def _carve(self, host: MemoryBlock, offset: int, size: int) -> MemoryBlock:
        i = self._blocks.index(host)
        end = host.end

        if offset == host.offset:
            block = host
            replacement = [block]
        else:
            block = MemoryBlock(offset=offset, size=size)
            host.size = offset - host.offset
            replacement = [host, block]

        block.size = size
        block.free = False

        if offset + size < end:
            replacement.append(MemoryBlock(offset=offset + size, size=end - offset - size))

        self._blocks[i:i + 1] = replacement
        return block

    def _coalesce(self, block: MemoryBlock) -> None:
        i = self._blocks.index(block)

        if i + 1 < len(self._blocks) and self._blocks[i + 1].free:
            block.size += self._blocks[i + 1].size
            del self._blocks[i + 1]

        if i > 0 and self._blocks[i - 1].free:
            self._blocks[i - 1].size += block.size
            del self._blocks[i]

    def _grow(self, size: int) -> bool:
        limit = self.config.max_arena_bytes
        if limit is None:
            return False

        current = self.arena_bytes
        tail = self._blocks[-1]
        needed = size - (tail.size if tail.free else 0)
        extra = min(max(needed, self.config.growth_bytes), limit - current)
        if extra < needed:
            return False

        self._arena = torch.cat([self._arena, torch.zeros(extra, dtype=torch.uint8)])
        if tail.free:
            tail.size += extra
        else:
            self._blocks.append(MemoryBlock(offset=current, size=extra))

        logger.info("Grew device arena from %d to %d bytes", current, current + extra)
        return True

    def _read(self, offset: int, nbytes: int) -> torch.Tensor:
        return self._arena[offset:offset + nbytes].clone()

    def _write(self, offset: int, data: torch.Tensor) -> None:
        self._arena[offset:offset + data.numel()].copy_(data)

    def _notify_transfer(self, direction: str, nbytes: int) -> None:
        for listener in list(self.transfer_listeners):
            listener(direction, nbytes)

    def __repr__(self) -> str:
        status = self.status()
        return (
            f"DevicePool(arena={status['arena_bytes']}, used={status['used']}, "
            f"free={status['free']}, largest_free={status['largest_free']})"
        )


def explain_memory_pool() -> str:
    return """
Device Memory Pool

Problem: device allocation is slow
  - cudaMalloc synchronizes the device and can take milliseconds
  - Training and inference loops allocate the same shapes every step

Solution: a caching allocator
  - Allocate one large arena up front
  - Carve requests out of it with best fit
  - On release, keep the block and hand it back to the next
    request of the same size instead of returning it to the driver

Bookkeeping:
  - The arena is partitioned into blocks: {offset, size, free}
  - Adjacent free blocks are merged to fight fragmentation
  - A generation counter per block invalidates stale handles,
    turning use-after-free into an error instead of silent corruption

Out of memory:
  - Allocation is all-or-nothing
  - Free memory can be sufficient in total yet too fragmented
    to satisfy one request (largest_free < requested)
"""


if __name__ == "__main__":
    print(explain_memory_pool())

    print("=" * 60)
    print("Pool Walkthrough (1024-byte arena)")
    print("-" * 60)

    pool = DevicePool(arena_bytes=1024)

    a = pool.allocate(600)
    b = pool.allocate(300)
    print(f"After 600 + 300: {pool.status()}")

    try:
        pool.allocate(200)
    except OutOfMemory as exc:
        print(f"Allocate 200: {exc}")

    pool.release(a)
    c = pool.allocate(200)
    print(f"After release(600) + allocate(200): offset={c.offset}")
    print(f"  {pool.status()}")

    for block in pool.blocks():
        state = "free" if block.free else "used"
        print(f"  [{block.offset:5d}, {block.end:5d}) {state} gen={block.generation}")
