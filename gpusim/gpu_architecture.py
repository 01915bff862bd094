from dataclasses import dataclass

import torch


@dataclass(frozen=True)
class GPUSpec:
    name: str
    compute_capability: tuple
    num_sms: int
    max_threads_per_sm: int
    max_threads_per_block: int
    warp_size: int
    shared_memory_per_sm_kb: int
    shared_memory_per_block_kb: int
    registers_per_sm: int
    memory_bytes: int
    sector_bytes: int = 32
    shared_memory_banks: int = 32
    bank_width_bytes: int = 4

    @property
    def max_warps_per_sm(self) -> int:
        return self.max_threads_per_sm // self.warp_size

    @property
    def shared_memory_per_block(self) -> int:
        return self.shared_memory_per_block_kb * 1024


# Simulated devices keep the real SM layout but a small memory arena, since
# every simulated byte lives in a host tensor.
SIMULATED_SPECS = {
    "Sim Tiny": GPUSpec(
        name="Sim Tiny",
        compute_capability=(8, 6),
        num_sms=4,
        max_threads_per_sm=1536,
        max_threads_per_block=1024,
        warp_size=32,
        shared_memory_per_sm_kb=100,
        shared_memory_per_block_kb=48,
        registers_per_sm=65536,
        memory_bytes=1 << 20,
    ),
    "Sim RTX 3090": GPUSpec(
        name="Sim RTX 3090",
        compute_capability=(8, 6),
        num_sms=82,
        max_threads_per_sm=1536,
        max_threads_per_block=1024,
        warp_size=32,
        shared_memory_per_sm_kb=100,
        shared_memory_per_block_kb=48,
        registers_per_sm=65536,
        memory_bytes=16 << 20,
    ),
    "Sim A100": GPUSpec(
        name="Sim A100",
        compute_capability=(8, 0),
        num_sms=108,
        max_threads_per_sm=2048,
        max_threads_per_block=1024,
        warp_size=32,
        shared_memory_per_sm_kb=164,
        shared_memory_per_block_kb=48,
        registers_per_sm=65536,
        memory_bytes=16 << 20,
    ),
    "Sim H100": GPUSpec(
        name="Sim H100",
        compute_capability=(9, 0),
        num_sms=132,
        max_threads_per_sm=2048,
        max_threads_per_block=1024,
        warp_size=32,
        shared_memory_per_sm_kb=228,
        shared_memory_per_block_kb=48,
        registers_per_sm=65536,
        memory_bytes=16 << 20,
    ),
}

DEFAULT_SPEC = SIMULATED_SPECS["Sim Tiny"]


def get_gpu_spec(
    device: torch.device | None = None,
    memory_bytes: int = 16 << 20,
) -> GPUSpec | None:
    """Mirror the local GPU's SM layout in a simulated spec.

    The memory arena is not the real device memory: ``memory_bytes`` sizes the
    host-side arena the simulator uses.
    """
    if not torch.cuda.is_available():
        return None

    if device is None:
        device = torch.device("cuda:0")

    props = torch.cuda.get_device_properties(device)
    return GPUSpec(
        name=props.name,
        compute_capability=(props.major, props.minor),
        num_sms=props.multi_processor_count,
        max_threads_per_sm=props.max_threads_per_multi_processor,
        max_threads_per_block=getattr(props, "max_threads_per_block", 1024),
        warp_size=getattr(props, "warp_size", 32),
        shared_memory_per_sm_kb=getattr(props, "max_shared_memory_per_multiprocessor", 0) // 1024,
        shared_memory_per_block_kb=getattr(props, "max_shared_memory_per_block", 48 * 1024) // 1024,
        registers_per_sm=getattr(props, "regs_per_multiprocessor", 65536),
        memory_bytes=memory_bytes,
    )


def theoretical_occupancy(
    threads_per_block: int,
    registers_per_thread: int,
    shared_memory_per_block: int,
    spec: GPUSpec,
) -> float:
    warps_per_block = (threads_per_block + spec.warp_size - 1) // spec.warp_size

    max_blocks_by_warps = spec.max_warps_per_sm // warps_per_block

    registers_per_block = registers_per_thread * warps_per_block * spec.warp_size
    max_blocks_by_registers = spec.registers_per_sm // registers_per_block if registers_per_block > 0 else float('inf')

    shared_mem_per_sm = spec.shared_memory_per_sm_kb * 1024
    max_blocks_by_shared = shared_mem_per_sm // shared_memory_per_block if shared_memory_per_block > 0 else float('inf')

    max_blocks = int(min(max_blocks_by_warps, max_blocks_by_registers, max_blocks_by_shared))

    active_warps = warps_per_block * max_blocks
    return active_warps / spec.max_warps_per_sm


def warp_efficiency(active_threads: int, warp_size: int = 32) -> float:
    return active_threads / warp_size


def warps_for_block(threads_per_block: int, warp_size: int = 32) -> int:
    return (threads_per_block + warp_size - 1) // warp_size


def threads_to_grid_block(
    total_threads: int,
    threads_per_block: int = 256,
) -> tuple:
    num_blocks = (total_threads + threads_per_block - 1) // threads_per_block
    return (num_blocks,), (threads_per_block,)


def explain_execution_model() -> str:
    return """
Execution Model

A kernel launch is a grid of blocks; each block is a group of threads.

Grid -> blocks:
  - Blocks are independent and run in any order
  - A block is dispatched to one SM and stays there until it finishes
  - Code must never depend on which block runs first

Block -> warps:
  - Threads are grouped into warps of 32 lanes
  - A block of 40 threads occupies 2 warps; the second has 24 idle lanes
  - Pick block sizes that are multiples of 32

Warp -> lanes:
  - Lanes execute in lockstep
  - When lanes disagree at a branch, each arm runs in turn with the
    other lanes masked off (divergence)

Occupancy:
  - Active warps per SM / maximum warps per SM
  - Limited by threads, registers and shared memory per block
"""


if __name__ == "__main__":
    print(explain_execution_model())

    spec = get_gpu_spec() or DEFAULT_SPEC
    print(f"GPU: {spec.name}")
    print(f"Compute Capability: {spec.compute_capability}")
    print(f"SMs: {spec.num_sms}")
    print(f"Max threads/SM: {spec.max_threads_per_sm}")
    print(f"Shared memory/SM: {spec.shared_memory_per_sm_kb} KB")
    print(f"Registers/SM: {spec.registers_per_sm}")
    print()

    for threads in (32, 64, 128, 256, 512, 1024):
        occ = theoretical_occupancy(
            threads_per_block=threads,
            registers_per_thread=32,
            shared_memory_per_block=0,
            spec=spec,
        )
        print(f"Theoretical occupancy ({threads:4d} threads, 32 regs): {occ:.1%}")
