import threading
from contextlib import contextmanager

_state = threading.local()


def current_thread():
    return getattr(_state, "thread", None)


def in_kernel() -> bool:
    return current_thread() is not None


@contextmanager
def running(thread):
    previous = current_thread()
    _state.thread = thread
    try:
        yield thread
    finally:
        _state.thread = previous
