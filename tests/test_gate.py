import threading

import pytest

from viddown.errors import ServerBusy
from viddown.gate import ConcurrencyGate


def test_gate_admits_exactly_capacity_under_contention():
    capacity, extra = 4, 6
    gate = ConcurrencyGate(capacity)
    barrier = threading.Barrier(capacity + extra)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        admitted = gate.try_acquire()
        with lock:
            results.append(admitted)

    threads = [threading.Thread(target=worker) for _ in range(capacity + extra)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert results.count(True) == capacity
    assert results.count(False) == extra
    assert gate.available() == 0

    gate.release()
    assert gate.available() == 1
    assert gate.try_acquire() is True
    assert gate.try_acquire() is False


def test_release_without_acquire_is_an_error():
    gate = ConcurrencyGate(1)
    with pytest.raises(RuntimeError):
        gate.release()
    assert gate.available() == 1


def test_slot_context_releases_and_rejects_when_full():
    gate = ConcurrencyGate(1)
    with gate.slot():
        assert gate.available() == 0
        with pytest.raises(ServerBusy):
            with gate.slot():
                pass
    assert gate.available() == 1


def test_slot_released_when_block_raises():
    gate = ConcurrencyGate(2)
    with pytest.raises(ValueError):
        with gate.slot():
            raise ValueError("boom")
    assert gate.available() == 2


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyGate(0)
