from dataclasses import dataclass, field


@dataclass
class PoolConfig:
    arena_bytes: int | None = None
    max_arena_bytes: int | None = None
    growth_bytes: int = 64 * 1024
    recycle_depth: int = 8

    def __post_init__(self):
        if self.arena_bytes is not None and self.arena_bytes < 1:
            raise ValueError(f"arena_bytes must be positive, got {self.arena_bytes}")
        if self.max_arena_bytes is not None and self.arena_bytes is not None:
            if self.max_arena_bytes < self.arena_bytes:
                raise ValueError("max_arena_bytes must be at least arena_bytes")
        if self.growth_bytes < 1:
            raise ValueError(f"growth_bytes must be positive, got {self.growth_bytes}")
        if self.recycle_depth < 0:
            raise ValueError(f"recycle_depth must be non-negative, got {self.recycle_depth}")


@dataclass
class SimulatorConfig:
    seed: int | None = None
    num_execution_units: int | None = None
    debug: bool = True
    barrier_timeout_s: float = 5.0
    registers_per_thread: int = 32
    pool: PoolConfig = field(default_factory=PoolConfig)

    def __post_init__(self):
        if self.num_execution_units is not None and self.num_execution_units < 1:
            raise ValueError(
                f"num_execution_units must be positive, got {self.num_execution_units}"
            )
        if self.barrier_timeout_s <= 0:
            raise ValueError(
                f"barrier_timeout_s must be positive, got {self.barrier_timeout_s}"
            )
