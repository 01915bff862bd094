import threading
import time

import pytest
import torch

from .config import SimulatorConfig
from .dims import Dim3
from .errors import (
    DeadlockTimeout,
    IllegalKernelOperation,
    InvalidLaunchConfig,
    UnsynchronizedSharedAccess,
    UseAfterFree,
)
from .kernel import kernel
from .runtime import Device, run_kernel


def make_device(**kwargs) -> Device:
    kwargs.setdefault("seed", 0)
    return Device(config=SimulatorConfig(**kwargs))


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


class TestIndexing:
    def test_vector_add(self):
        device = make_device()
        n = 100
        a = device.to_device(torch.arange(n, dtype=torch.float32))
        b = device.to_device(torch.full((n,), 2.0))
        out = device.zeros(n, torch.float32)

        record = run_kernel(vector_add, 4, 32, args=(a, b, out, n), device=device)

        assert torch.equal(out.to_host(), torch.arange(n) + 2.0)
        assert record.num_warps == 4
        assert record.diverged_warps == 1
        assert record.divergence_ratio == pytest.approx(0.25)

    def test_thread_index_decomposition(self):
        device = make_device()
        out = device.zeros(16, torch.int32)

        @kernel
        def where_am_i(t, out):
            out[t.tid] = t.threadIdx.x + 10 * t.threadIdx.y + 100 * t.threadIdx.z

        run_kernel(where_am_i, 1, (4, 2, 2), args=(out,), device=device)

        expected = torch.tensor(
            [x + 10 * y + 100 * z for z in range(2) for y in range(2) for x in range(4)],
            dtype=torch.int32,
        )
        assert torch.equal(out.to_host(), expected)

    def test_two_dimensional_grid(self):
        device = make_device()
        out = device.zeros((8, 8), torch.float32)

        @kernel
        def fill(t, out):
            x, y = t.grid(2)
            out[y, x] = float(x + 100 * y)

        run_kernel(fill, (2, 2), (4, 4), args=(out,), device=device)

        ys, xs = torch.meshgrid(torch.arange(8), torch.arange(8), indexing="ij")
        assert torch.equal(out.to_host(), (xs + 100 * ys).float())

    def test_grid_stride_loop(self):
        device = make_device()
        n = 1000
        out = device.zeros(n, torch.int32)

        @kernel
        def iota(t, out, n):
            i = t.grid(1)
            while i < n:
                out[i] = i
                i += t.gridsize(1)

        run_kernel(iota, 2, 64, args=(out, n), device=device)

        assert torch.equal(out.to_host(), torch.arange(n, dtype=torch.int32))

    def test_descriptor_dims_are_defaults(self):
        device = make_device()
        out = device.zeros(64, torch.int32)

        @kernel(grid=2, block=32)
        def mark(t, out):
            out[t.grid(1)] = 1

        record = run_kernel(mark, args=(out,), device=device)

        assert record.blocks_total == 2
        assert out.to_host().sum().item() == 64

    def test_subscript_launch(self):
        device = make_device()
        n = 64
        a = device.to_device(torch.ones(n))
        b = device.to_device(torch.ones(n))
        out = device.zeros(n, torch.float32)

        record = vector_add[2, 32](a, b, out, n, device=device)

        assert torch.equal(out.to_host(), torch.full((n,), 2.0))
        assert record.kernel_id == "vector_add"


class TestDivergence:
    def test_uniform_branch_costs_nothing(self):
        device = make_device()

        @kernel
        def uniform(t):
            t.branch(t.blockIdx.x % 2 == 0)

        record = run_kernel(uniform, 4, 64, device=device)

        assert record.divergence_ratio == 0.0
        assert record.branch_cost == record.baseline_cost
        assert record.serialization == 1.0

    def test_quarter_of_lanes_take_other_arm(self):
        device = make_device()

        @kernel
        def split(t):
            t.branch("A" if t.tid % 4 == 0 else "B")

        record = run_kernel(split, 1, 64, device=device)

        assert record.divergence_ratio == 1.0
        assert record.max_arms == 2
        assert record.serialization == 2.0
        assert record.serialized_lanes == 16

    def test_every_lane_on_its_own_arm(self):
        device = make_device()

        @kernel
        def scatter(t):
            t.branch(t.lane_id)

        record = run_kernel(scatter, 1, 64, device=device)

        assert record.max_arms == 32
        assert record.branch_cost == 64
        assert record.baseline_cost == 2

    def test_labelled_sites_in_loops(self):
        device = make_device()

        @kernel
        def loop(t):
            for step in range(4):
                t.branch(t.lane_id < 8 * step, site="loop")

        stats = device.scheduler.launch(loop, 1, 32)

        assert stats.baseline_cost == 4
        assert stats.branch_cost == 1 + 2 + 2 + 2

    def test_partial_warp_utilization(self):
        device = make_device()

        @kernel
        def noop(t):
            pass

        stats = device.scheduler.launch(noop, 1, 40)

        assert stats.num_warps == 2
        assert [w.active_lanes for w in stats.warps] == [32, 8]
        assert stats.lane_utilization == pytest.approx(0.625)


class TestSharedMemoryKernels:
    def test_block_reduction(self):
        device = make_device()
        n = 200
        data = device.to_device(torch.arange(n, dtype=torch.float32))
        partials = device.zeros(4, torch.float32)

        stats = device.scheduler.launch(block_sum, 4, 64, args=(data, partials, n))

        assert partials.to_host().sum().item() == n * (n - 1) / 2
        assert all(b.barriers == 7 for b in stats.blocks)
        assert stats.divergence_ratio == pytest.approx(0.5)

    def test_dynamic_shared_memory(self):
        device = make_device()
        out = device.zeros(1, torch.float32)

        @kernel
        def total(t, out):
            scratch = t.dynamic_shared(torch.float32)
            scratch[t.tid] = float(t.tid)
            yield t.syncthreads()
            if t.tid == 0:
                out[0] = sum(scratch[i] for i in range(t.blockDim.x))

        run_kernel(total, 1, 32, 32 * 4, args=(out,), device=device)

        assert out.to_host()[0].item() == sum(range(32))

    def test_missing_barrier_is_a_race(self):
        device = make_device()
        out = device.zeros(32, torch.float32)

        @kernel(static_shared_bytes=33 * 4)
        def shift(t, out):
            tile = t.shared_array(33, torch.float32)
            tile[t.tid] = float(t.tid)
            out[t.tid] = tile[t.tid + 1]

        with pytest.raises(UnsynchronizedSharedAccess):
            run_kernel(shift, 1, 32, args=(out,), device=device)

    def test_read_of_other_lane_write_is_a_race(self):
        device = make_device()

        @kernel(static_shared_bytes=128)
        def peek(t):
            tile = t.shared_array(32, torch.float32)
            tile[t.tid] = 1.0
            tile[0]

        with pytest.raises(UnsynchronizedSharedAccess):
            run_kernel(peek, 1, 32, device=device)

    def test_race_detection_can_be_disabled(self):
        device = make_device(debug=False)
        out = device.zeros(32, torch.float32)

        @kernel(static_shared_bytes=33 * 4)
        def shift(t, out):
            tile = t.shared_array(33, torch.float32)
            tile[t.tid] = float(t.tid)
            out[t.tid] = tile[t.tid + 1]

        run_kernel(shift, 1, 32, args=(out,), device=device)

    def test_static_shared_overflow(self):
        device = make_device()

        @kernel(static_shared_bytes=64)
        def greedy(t):
            t.shared_array(32, torch.float32)

        with pytest.raises(IllegalKernelOperation):
            run_kernel(greedy, 1, 32, device=device)

    @pytest.mark.parametrize("stride,conflicts", [(1, 0), (2, 1), (32, 31)])
    def test_bank_conflicts(self, stride, conflicts):
        device = make_device()

        @kernel(static_shared_bytes=32 * 32 * 4)
        def strided(t, stride):
            tile = t.shared_array(32 * 32, torch.float32)
            tile[t.tid * stride] = 1.0

        record = run_kernel(strided, 1, 32, args=(stride,), device=device)

        assert record.bank_conflicts == conflicts


class TestCoalescing:
    @pytest.mark.parametrize("stride,efficiency", [(1, 1.0), (32, 0.125)])
    def test_global_access_patterns(self, stride, efficiency):
        device = make_device()
        src = device.to_device(torch.zeros(32 * 32))

        @kernel
        def touch(t, src, stride):
            src[t.tid * stride]

        record = run_kernel(touch, 1, 32, args=(src, stride), device=device)

        assert src.offset == 0
        assert record.coalescing_efficiency == pytest.approx(efficiency)


class TestBarriers:
    def test_divergent_barrier_deadlocks(self):
        device = make_device()

        @kernel
        def half_sync(t):
            if t.tid < 16:
                yield t.syncthreads()

        with pytest.raises(DeadlockTimeout):
            run_kernel(half_sync, 1, 32, device=device)

    def test_spin_wait_times_out(self):
        device = make_device(barrier_timeout_s=0.05)

        @kernel(static_shared_bytes=16)
        def spin(t):
            flag = t.shared_array(1, torch.int32)
            if t.tid == 1:
                flag[0] = 1
            while flag[0] == 0:
                pass

        with pytest.raises(DeadlockTimeout):
            run_kernel(spin, 1, 2, device=device)

    def test_timeout_applies_per_lane(self):
        device = make_device(barrier_timeout_s=0.05)
        out = device.zeros(256, torch.float32)

        @kernel
        def slow(t, out):
            time.sleep(0.001)
            out[t.tid] = 1.0

        run_kernel(slow, 1, 256, args=(out,), device=device)

        assert out.to_host().sum().item() == 256

    def test_timeout_resets_after_each_barrier_step(self):
        device = make_device(barrier_timeout_s=0.05)
        out = device.zeros(128, torch.float32)

        @kernel
        def slow_phases(t, out):
            time.sleep(0.001)
            yield t.syncthreads()
            time.sleep(0.001)
            out[t.tid] = 1.0

        run_kernel(slow_phases, 1, 128, args=(out,), device=device)

        assert out.to_host().sum().item() == 128

    def test_syncthreads_needs_generator_body(self):
        device = make_device()

        @kernel
        def plain(t):
            t.syncthreads()

        with pytest.raises(IllegalKernelOperation):
            run_kernel(plain, 1, 32, device=device)

    def test_barrier_must_be_yielded(self):
        device = make_device()

        @kernel
        def forgetful(t):
            t.syncthreads()
            yield t.syncthreads()

        with pytest.raises(IllegalKernelOperation):
            run_kernel(forgetful, 1, 32, device=device)

    def test_only_barriers_may_be_yielded(self):
        device = make_device()

        @kernel
        def chatty(t):
            yield "hello"

        with pytest.raises(IllegalKernelOperation):
            run_kernel(chatty, 1, 32, device=device)


class TestKernelErrors:
    def test_stop_iteration_in_plain_body(self):
        device = make_device()
        out = device.zeros(32, torch.float32)

        @kernel
        def exhausted(t, out):
            next(iter(()))
            out[t.tid] = 1.0

        with pytest.raises(IllegalKernelOperation) as info:
            run_kernel(exhausted, 1, 32, args=(out,), device=device)
        assert isinstance(info.value.__cause__, StopIteration)

    def test_stop_iteration_in_generator_body(self):
        device = make_device()

        @kernel
        def exhausted(t):
            yield t.syncthreads()
            next(iter(()))

        with pytest.raises(IllegalKernelOperation):
            run_kernel(exhausted, 1, 32, device=device)

    def test_released_array_read_in_kernel(self):
        device = make_device()
        data = device.zeros(32, torch.float32)
        data.release()

        @kernel
        def read(t, data):
            data[t.tid]

        with pytest.raises(UseAfterFree):
            run_kernel(read, 1, 32, args=(data,), device=device)

    def test_released_array_written_in_kernel(self):
        device = make_device()
        data = device.zeros(32, torch.float32)
        data.release()
        device.zeros(32, torch.float32)

        @kernel
        def write(t, data):
            data[t.tid] = 1.0

        with pytest.raises(UseAfterFree):
            run_kernel(write, 1, 32, args=(data,), device=device)

    def test_exception_is_wrapped(self):
        device = make_device()

        @kernel
        def boom(t):
            raise KeyError("missing")

        with pytest.raises(IllegalKernelOperation) as info:
            run_kernel(boom, 1, 32, device=device)
        assert isinstance(info.value.__cause__, KeyError)

    def test_out_of_range_index(self):
        device = make_device()
        data = device.zeros(10, torch.float32)

        @kernel
        def overrun(t, data):
            data[t.tid]

        with pytest.raises(IllegalKernelOperation) as info:
            run_kernel(overrun, 1, 32, args=(data,), device=device)
        assert isinstance(info.value.__cause__, IndexError)

    def test_return_value(self):
        device = make_device()

        @kernel
        def answer(t):
            return 42

        with pytest.raises(IllegalKernelOperation):
            run_kernel(answer, 1, 32, device=device)

    def test_generator_return_value(self):
        device = make_device()

        @kernel
        def answer(t):
            yield t.syncthreads()
            return 42

        with pytest.raises(IllegalKernelOperation):
            run_kernel(answer, 1, 32, device=device)

    def test_allocation_inside_kernel(self):
        device = make_device()

        @kernel
        def allocating(t, device):
            device.allocate(16)

        with pytest.raises(IllegalKernelOperation):
            run_kernel(allocating, 1, 1, args=(device,), device=device)

    def test_host_transfer_inside_kernel(self):
        device = make_device()
        data = device.zeros(4, torch.float32)

        @kernel
        def copying(t, data):
            data.to_host()

        with pytest.raises(IllegalKernelOperation):
            run_kernel(copying, 1, 1, args=(data,), device=device)

    def test_failed_launch_leaves_pool_usable(self):
        device = make_device()
        before = device.pool.status()

        @kernel
        def boom(t):
            raise RuntimeError("fail")

        with pytest.raises(IllegalKernelOperation):
            run_kernel(boom, 1, 1, device=device)

        assert device.pool.status() == before
        assert device.profiler.records == ()


class TestLaunchConfig:
    @pytest.mark.parametrize("grid,block,shared", [
        (1, 2048, 0),
        (1, (32, 32, 2), 0),
        (0, 32, 0),
        (1, 32, 64 * 1024),
        (1, 32, -1),
    ])
    def test_rejected(self, grid, block, shared):
        device = make_device()

        @kernel
        def noop(t):
            pass

        with pytest.raises(InvalidLaunchConfig):
            run_kernel(noop, grid, block, shared, device=device)

    def test_occupancy(self):
        device = make_device()

        @kernel
        def noop(t):
            pass

        assert device.scheduler.launch(noop, 1, 256).occupancy == pytest.approx(1.0)
        assert device.scheduler.launch(noop, 1, 1024).occupancy == pytest.approx(32 / 48)


class TestDispatch:
    def test_order_is_a_permutation(self):
        device = make_device()
        order = device.scheduler.dispatch_order(Dim3(4, 2, 3), seed=11)

        assert len(order) == 24
        assert set(order) == {Dim3(x, y, z) for x in range(4) for y in range(2) for z in range(3)}

    def test_same_seed_same_order(self):
        @kernel
        def noop(t):
            pass

        first = make_device(seed=7).scheduler.launch(noop, 16, 32)
        second = make_device(seed=7).scheduler.launch(noop, 16, 32)
        other = make_device(seed=8).scheduler.launch(noop, 16, 32)

        assert first.block_order == second.block_order
        assert first.block_order != other.block_order

    def test_results_do_not_depend_on_order(self):
        results = []
        for seed in (1, 2, 3):
            device = make_device(seed=seed)
            n = 300
            a = device.to_device(torch.arange(n, dtype=torch.float32))
            b = device.to_device(torch.arange(n, dtype=torch.float32))
            out = device.zeros(n, torch.float32)
            run_kernel(vector_add, 10, 32, args=(a, b, out, n), device=device)
            results.append(out.to_host())

        assert torch.equal(results[0], results[1])
        assert torch.equal(results[1], results[2])

    def test_blocks_round_robin_over_units(self):
        device = make_device(num_execution_units=3)

        @kernel
        def noop(t):
            pass

        stats = device.scheduler.launch(noop, 7, 32)

        assert [b.unit for b in stats.blocks] == [0, 1, 2, 0, 1, 2, 0]
        assert [b.block_idx for b in stats.blocks] == stats.block_order
        assert stats.simulated_cycles == max(stats.unit_cycles)
        assert sum(stats.unit_cycles) == sum(b.cycles for b in stats.blocks)

    def test_cancellation_between_blocks(self):
        device = make_device()
        stop = threading.Event()

        @kernel
        def signal(t, stop):
            if t.tid == 0:
                stop.set()

        record = run_kernel(signal, 8, 32, args=(stop,), device=device, cancel=stop)

        assert record.cancelled
        assert record.blocks_executed == 1
        assert record.blocks_total == 8


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
