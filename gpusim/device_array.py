import logging
import weakref

import torch

from .context import current_thread, in_kernel
from .dims import contiguous_strides, dtype_itemsize, flat_index, numel
from .errors import DeviceOnlyAccess, IllegalKernelOperation, ShapeMismatch, UseAfterFree

logger = logging.getLogger(__name__)


def _host_bytes(buffer) -> torch.Tensor:
    if isinstance(buffer, torch.Tensor):
        return buffer.detach().cpu().contiguous().reshape(-1).view(torch.uint8)
    try:
        data = bytearray(memoryview(buffer).cast("B"))
    except TypeError:
        raise TypeError(
            f"Host buffer must be a tensor or a bytes-like object, got {type(buffer).__name__}"
        ) from None
    if not data:
        return torch.empty(0, dtype=torch.uint8)
    return torch.frombuffer(data, dtype=torch.uint8)


class DeviceArray:
    """Handle to pool-owned device memory.

    The handle keeps only a weak reference to its block plus the block's
    generation at allocation time. Host code moves data with ``to_host`` and
    ``from_host``; element indexing works only inside a kernel body.
    """

    def __init__(self, pool, block, dtype: torch.dtype, shape: tuple[int, ...]):
        self.pool = pool
        self.dtype = dtype
        self.shape = shape
        self.strides = contiguous_strides(shape)
        self.itemsize = dtype_itemsize(dtype)
        self.offset = block.offset
        self.nbytes = numel(shape) * self.itemsize
        self._block_ref = weakref.ref(block)
        self._generation = block.generation

    @property
    def size(self) -> int:
        return numel(self.shape)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def is_live(self) -> bool:
        block = self._block_ref()
        return block is not None and not block.free and block.generation == self._generation

    def _resolve(self):
        block = self._block_ref()
        if block is None or block.free or block.generation != self._generation:
            raise UseAfterFree(
                f"Device array at offset {self.offset} ({self.nbytes} bytes) "
                f"was released"
            )
        return block

    def to_host(self) -> torch.Tensor:
        if in_kernel():
            raise IllegalKernelOperation("Host transfers are not allowed inside a kernel body")
        self._resolve()

        data = self.pool._read(self.offset, self.nbytes)
        self.pool._notify_transfer("d2h", self.nbytes)
        return data.view(self.dtype).reshape(self.shape)

    def from_host(self, buffer) -> None:
        if in_kernel():
            raise IllegalKernelOperation("Host transfers are not allowed inside a kernel body")
        self._resolve()

        data = _host_bytes(buffer)
        if data.numel() != self.nbytes:
            raise ShapeMismatch(
                f"Host buffer has {data.numel()} bytes, device array has {self.nbytes} "
                f"(shape {self.shape}, {self.dtype})"
            )

        self.pool._write(self.offset, data)
        self.pool._notify_transfer("h2d", self.nbytes)

    def release(self) -> None:
        self.pool.release(self)

    def __enter__(self) -> "DeviceArray":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.is_live:
            self.release()

    def _element_address(self, index) -> int:
        thread = current_thread()
        if thread is None:
            raise DeviceOnlyAccess(
                "Device memory cannot be indexed from the host; copy it with to_host()"
            )
        self._resolve()
        address = self.offset + flat_index(index, self.shape, self.strides) * self.itemsize
        thread.record_global(address, self.itemsize)
        return address

    def __getitem__(self, index):
        address = self._element_address(index)
        raw = self.pool._read(address, self.itemsize)
        return raw.view(self.dtype)[0].item()

    def __setitem__(self, index, value) -> None:
        address = self._element_address(index)
        self.pool._write(address, torch.tensor([value], dtype=self.dtype).view(torch.uint8))

    def __iter__(self):
        raise DeviceOnlyAccess("Device arrays cannot be iterated from the host; use to_host()")

    def __array__(self, *args, **kwargs):
        raise DeviceOnlyAccess("Device arrays cannot be converted implicitly; use to_host()")

    def __len__(self) -> int:
        return self.shape[0]

    def __repr__(self) -> str:
        state = "live" if self.is_live else "released"
        return (
            f"DeviceArray(shape={self.shape}, dtype={self.dtype}, "
            f"offset={self.offset}, {state})"
        )
