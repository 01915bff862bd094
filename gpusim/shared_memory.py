import torch

from .context import current_thread
from .dims import contiguous_strides, dtype_itemsize, flat_index, normalize_shape, numel
from .errors import DeviceOnlyAccess, IllegalKernelOperation, UnsynchronizedSharedAccess

SHARED_ALIGNMENT = 16


def _align(nbytes: int) -> int:
    return (nbytes + SHARED_ALIGNMENT - 1) // SHARED_ALIGNMENT * SHARED_ALIGNMENT


def shared_memory_requirements(
    threads_per_block: int,
    elements_per_thread: int,
    dtype: torch.dtype = torch.float32,
) -> int:
    return threads_per_block * elements_per_thread * dtype_itemsize(dtype)


class SharedArray:
    def __init__(self, memory: "SharedMemory", offset: int, shape: tuple[int, ...], dtype: torch.dtype):
        self.shape = shape
        self.dtype = dtype
        self.offset = offset
        self.strides = contiguous_strides(shape)
        self.itemsize = dtype_itemsize(dtype)
        self._memory = memory
        self._data = memory.arena[offset:offset + numel(shape) * self.itemsize].view(dtype)

    def _locate(self, index):
        thread = current_thread()
        if thread is None or thread.shared_memory is not self._memory:
            raise DeviceOnlyAccess("Shared memory is only visible to the lanes of its own block")
        flat = flat_index(index, self.shape, self.strides)
        address = self.offset + flat * self.itemsize
        thread.record_shared(address)
        return thread, flat, address

    def __getitem__(self, index):
        thread, flat, address = self._locate(index)
        self._memory.on_read(thread.tid, address)
        return self._data[flat].item()

    def __setitem__(self, index, value) -> None:
        thread, flat, address = self._locate(index)
        self._memory.on_write(thread.tid, address)
        self._data[flat] = value

    def __len__(self) -> int:
        return self.shape[0]

    def __repr__(self) -> str:
        return f"SharedArray(shape={self.shape}, dtype={self.dtype}, offset={self.offset})"


class SharedMemory:
    """Per-block shared memory: a static region followed by a dynamic one.

    In debug mode every element access is checked against the accesses of
    other lanes in the current barrier epoch. A value written by one lane and
    read by another before a barrier separates them is a race, whichever of
    the two ran first in the simulation.
    """

    def __init__(self, static_bytes: int = 0, dynamic_bytes: int = 0, debug: bool = True):
        self.static_bytes = static_bytes
        self.dynamic_bytes = dynamic_bytes
        self.dynamic_offset = _align(static_bytes)
        self.arena = torch.zeros(self.dynamic_offset + dynamic_bytes, dtype=torch.uint8)
        self.debug = debug
        self.epoch = 0

        self._static_arrays: list[SharedArray] = []
        self._static_used = 0
        self._dynamic_arrays: dict[torch.dtype, SharedArray] = {}
        self._writes: dict[int, tuple[int, int]] = {}
        self._reads: dict[int, tuple[int, set[int]]] = {}

    @property
    def total_bytes(self) -> int:
        return self.arena.numel()

    def declare(self, index: int, shape, dtype: torch.dtype) -> SharedArray:
        shape = normalize_shape(shape)

        if index < len(self._static_arrays):
            array = self._static_arrays[index]
            if array.shape != shape or array.dtype != dtype:
                raise IllegalKernelOperation(
                    f"Shared array #{index} declared as {shape} {dtype}, "
                    f"but another lane declared it as {array.shape} {array.dtype}"
                )
            return array

        nbytes = numel(shape) * dtype_itemsize(dtype)
        offset = _align(self._static_used)
        if offset + nbytes > self.static_bytes:
            raise IllegalKernelOperation(
                f"Static shared memory exhausted: array of {nbytes} bytes does not fit in "
                f"the {self.static_bytes} bytes declared by the kernel"
            )

        array = SharedArray(self, offset, shape, dtype)
        self._static_arrays.append(array)
        self._static_used = offset + nbytes
        return array

    def dynamic(self, dtype: torch.dtype) -> SharedArray:
        if dtype in self._dynamic_arrays:
            return self._dynamic_arrays[dtype]

        count = self.dynamic_bytes // dtype_itemsize(dtype)
        if count == 0:
            raise IllegalKernelOperation(
                f"No dynamic shared memory for {dtype}: {self.dynamic_bytes} bytes "
                f"requested at launch"
            )

        array = SharedArray(self, self.dynamic_offset, (count,), dtype)
        self._dynamic_arrays[dtype] = array
        return array

    def on_read(self, lane: int, address: int) -> None:
        if not self.debug:
            return

        write = self._writes.get(address)
        if write is not None and write[1] == self.epoch and write[0] != lane:
            raise UnsynchronizedSharedAccess(
                f"Thread {lane} read shared address {address} written by thread "
                f"{write[0]} without a barrier in between (epoch {self.epoch})"
            )

        epoch, readers = self._reads.get(address, (None, None))
        if epoch != self.epoch:
            readers = set()
            self._reads[address] = (self.epoch, readers)
        readers.add(lane)

    def on_write(self, lane: int, address: int) -> None:
        if not self.debug:
            return

        epoch, readers = self._reads.get(address, (None, ()))
        if epoch == self.epoch:
            others = sorted(r for r in readers if r != lane)
            if others:
                raise UnsynchronizedSharedAccess(
                    f"Thread {lane} wrote shared address {address} already read by "
                    f"thread(s) {others} without a barrier in between (epoch {self.epoch})"
                )

        self._writes[address] = (lane, self.epoch)

    def advance_epoch(self) -> None:
        self.epoch += 1


def explain_shared_memory() -> str:
    return """
Shared Memory

Shared memory is a small on-chip scratchpad visible to every thread of
a block, with far lower latency than global memory.

Declaring it:
  - Static: fixed size known when the kernel is built
  - Dynamic: one untyped region whose size is passed at launch

Usage pattern:
  1. Each thread loads part of a tile from global memory
  2. Barrier (syncthreads) so every load is visible
  3. Threads read each other's elements
  4. Barrier again before the tile is overwritten

Races:
  - Reading a value another thread wrote without a barrier in
    between returns stale or torn data on real hardware
  - The simulator reports it as UnsynchronizedSharedAccess

Bank conflicts:
  - 32 banks, 4 bytes wide: bank = (address / 4) % 32
  - Lanes hitting different words in the same bank are serialized
  - Lanes reading the same word get a broadcast (no conflict)
"""
