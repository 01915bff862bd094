"""
gpusim: a GPU kernel execution and device-memory simulator

This package covers:
- Grid / block / warp / lane decomposition of a kernel launch
- Warp divergence cost accounting
- Shared memory, barriers and race detection
- Memory coalescing and shared-memory bank conflicts
- A best-fit, recycling device memory pool
- Launch profiling
"""

from .config import (
    PoolConfig,
    SimulatorConfig,
)
from .device_array import DeviceArray
from .dims import Dim3
from .errors import (
    DeadlockTimeout,
    DeviceOnlyAccess,
    IllegalKernelOperation,
    InvalidLaunchConfig,
    OutOfMemory,
    ShapeMismatch,
    SimulatorError,
    UnsynchronizedSharedAccess,
    UseAfterFree,
)
from .gpu_architecture import (
    DEFAULT_SPEC,
    SIMULATED_SPECS,
    GPUSpec,
    get_gpu_spec,
    theoretical_occupancy,
    threads_to_grid_block,
    warp_efficiency,
)
from .kernel import (
    KernelDescriptor,
    ThreadContext,
    kernel,
)
from .memory_pool import (
    DevicePool,
    MemoryBlock,
)
from .profiler import (
    ProfileRecord,
    Profiler,
)
from .runtime import (
    Device,
    get_device,
    reset_device,
    run_kernel,
    set_device,
)
from .scheduler import (
    BlockScheduler,
    LaunchStats,
)
from .warp import (
    Warp,
    WarpStats,
)

__all__ = [
    "PoolConfig",
    "SimulatorConfig",
    "DeviceArray",
    "Dim3",
    "SimulatorError",
    "OutOfMemory",
    "UseAfterFree",
    "ShapeMismatch",
    "DeviceOnlyAccess",
    "UnsynchronizedSharedAccess",
    "IllegalKernelOperation",
    "DeadlockTimeout",
    "InvalidLaunchConfig",
    "GPUSpec",
    "DEFAULT_SPEC",
    "SIMULATED_SPECS",
    "get_gpu_spec",
    "theoretical_occupancy",
    "threads_to_grid_block",
    "warp_efficiency",
    "KernelDescriptor",
    "ThreadContext",
    "kernel",
    "DevicePool",
    "MemoryBlock",
    "ProfileRecord",
    "Profiler",
    "Device",
    "get_device",
    "set_device",
    "reset_device",
    "run_kernel",
    "BlockScheduler",
    "LaunchStats",
    "Warp",
    "WarpStats",
]
