class SimulatorError(RuntimeError):
    pass


class OutOfMemory(SimulatorError):
    def __init__(self, requested: int, largest_free: int, free: int):
        super().__init__(
            f"Out of device memory: requested {requested} bytes, "
            f"largest free block {largest_free} bytes, {free} bytes free in total"
        )
        self.requested = requested
        self.largest_free = largest_free
        self.free = free


class UseAfterFree(SimulatorError):
    pass


class ShapeMismatch(SimulatorError, ValueError):
    pass


class DeviceOnlyAccess(SimulatorError):
    pass


class UnsynchronizedSharedAccess(SimulatorError):
    pass


class IllegalKernelOperation(SimulatorError):
    pass


class DeadlockTimeout(SimulatorError, TimeoutError):
    pass


class InvalidLaunchConfig(SimulatorError, ValueError):
    pass
