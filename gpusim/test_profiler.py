import pytest
import torch

from .config import SimulatorConfig
from .kernel import kernel
from .profiler import ProfileRecord
from .runtime import Device, get_device, reset_device, run_kernel, set_device


@kernel
def scale(t, data, factor, n):
    i = t.grid(1)
    if t.branch(i < n):
        data[i] = data[i] * factor


@pytest.fixture
def device():
    return Device(config=SimulatorConfig(seed=0))


class TestProfileRecord:
    def test_launch_record(self, device):
        data = device.to_device(torch.ones(48))

        record = run_kernel(scale, 2, 32, args=(data, 3.0, 48), device=device)

        assert isinstance(record, ProfileRecord)
        assert record.kernel_id == "scale"
        assert record.launches == 1
        assert record.duration_ms >= 0.0
        assert record.launch_timestamp > 0.0
        assert record.num_warps == 2
        assert record.divergence_ratio == pytest.approx(0.5)
        assert record.transfer_bytes == 0
        assert record.blocks_executed == record.blocks_total == 2
        assert not record.cancelled
        assert sorted(record.block_order) == [(0, 0, 0), (1, 0, 0)]

    def test_scope_counts_transfers(self, device):
        with device.profiler.scope("round_trip") as scope:
            data = device.to_device(torch.ones(48))
            run_kernel(scale, 2, 32, args=(data, 2.0, 48), device=device)
            result = data.to_host()

        record = scope.record
        assert torch.equal(result, torch.full((48,), 2.0))
        assert record.kernel_id == "round_trip"
        assert record.h2d_bytes == 48 * 4
        assert record.d2h_bytes == 48 * 4
        assert record.transfer_bytes == 2 * 48 * 4
        assert record.launches == 1

    def test_nested_scopes(self, device):
        data = device.to_device(torch.ones(64))

        with device.profiler.scope("outer") as outer:
            run_kernel(scale, 2, 32, args=(data, 2.0, 64), device=device)
            run_kernel(scale, 2, 32, args=(data, 2.0, 64), device=device)

        assert outer.record.launches == 2
        assert [r.kernel_id for r in device.profiler.records] == ["scale", "scale", "outer"]

    def test_to_dict(self, device):
        data = device.to_device(torch.ones(32))
        record = run_kernel(scale, 1, 32, args=(data, 2.0, 32), device=device)

        row = record.to_dict()

        assert row["kernel_id"] == "scale"
        assert row["block_order"] == [(0, 0, 0)]
        assert row["serialization"] == 1.0
        assert row["coalescing_efficiency"] == pytest.approx(1.0)

    def test_empty_scope(self, device):
        with device.profiler.scope("idle") as scope:
            pass

        assert scope.record.launches == 0
        assert scope.record.divergence_ratio == 0.0
        assert scope.record.serialization == 1.0


class TestObserverEffect:
    def test_profiling_does_not_change_scheduling(self):
        @kernel
        def noop(t):
            pass

        plain = Device(config=SimulatorConfig(seed=5))
        profiled = Device(config=SimulatorConfig(seed=5))

        stats = plain.scheduler.launch(noop, 12, 32)
        with profiled.profiler.scope("outer"):
            record = run_kernel(noop, 12, 32, device=profiled)

        assert record.block_order == stats.block_order
        assert record.simulated_cycles == stats.simulated_cycles

    def test_listeners_detached_after_scope(self, device):
        with device.profiler.scope():
            pass

        assert device.pool.transfer_listeners == []
        assert device.scheduler.launch_listeners == []

    def test_listeners_detached_after_failure(self, device):
        @kernel
        def boom(t):
            raise ValueError("bad")

        with pytest.raises(RuntimeError):
            run_kernel(boom, 1, 1, device=device)

        assert device.pool.transfer_listeners == []
        assert device.scheduler.launch_listeners == []
        assert device.profiler.records == ()


class TestProfilerSummary:
    def test_profile_callable(self, device):
        data = device.to_device(torch.ones(32))

        def step():
            run_kernel(scale, 1, 32, args=(data, 2.0, 32), device=device)
            data.to_host()

        record = device.profiler.profile(step)

        assert record.kernel_id == "step"
        assert record.launches == 1
        assert record.d2h_bytes == 128

    def test_summary_groups_by_kernel(self, device):
        data = device.to_device(torch.ones(32))
        for _ in range(3):
            run_kernel(scale, 1, 32, args=(data, 1.0, 32), device=device)

        summary = device.profiler.summary()

        assert summary["scale"]["count"] == 3
        assert summary["scale"]["mean_ms"] == pytest.approx(summary["scale"]["total_ms"] / 3)
        assert summary["scale"]["mean_divergence_ratio"] == 0.0

    def test_format_table(self, device):
        data = device.to_device(torch.ones(32))
        run_kernel(scale, 1, 32, args=(data, 1.0, 32), device=device)

        table = device.profiler.format_table()

        assert "Kernel" in table
        assert "scale" in table

    def test_reset(self, device):
        data = device.to_device(torch.ones(32))
        run_kernel(scale, 1, 32, args=(data, 1.0, 32), device=device)
        device.profiler.reset()

        assert device.profiler.records == ()
        assert device.profiler.summary() == {}


class TestDefaultDevice:
    def test_default_device_is_shared(self):
        reset_device()
        try:
            assert get_device() is get_device()
        finally:
            reset_device()

    def test_set_device(self, device):
        set_device(device)
        try:
            data = device.to_device(torch.ones(32))
            record = run_kernel(scale, 1, 32, args=(data, 2.0, 32))
            assert device.profiler.records[-1] is record
        finally:
            reset_device()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
