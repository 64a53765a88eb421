import threading

from devicecore.runtime.failures import FailureTracker


def test_decrease_counts_down_and_reports_exhaustion() -> None:
    tracker = FailureTracker()
    tracker.set("d1", 2)
    assert tracker.decrease("d1") == 1
    assert tracker.decrease("d1") == 0
    assert tracker.decrease("d1") == -1
    assert tracker.decrease("d1") == -1


def test_unknown_device_reports_minus_one() -> None:
    tracker = FailureTracker()
    assert tracker.decrease("ghost") == -1
    assert tracker.value("ghost") == -1


def test_set_resets_and_remove_forgets() -> None:
    tracker = FailureTracker()
    tracker.set("d1", 3)
    tracker.decrease("d1")
    tracker.set("d1", 3)
    assert tracker.value("d1") == 3
    tracker.remove("d1")
    assert tracker.names() == []


def test_concurrent_decrease_hits_zero_exactly_once() -> None:
    tracker = FailureTracker()
    tracker.set("d1", 50)
    zeros: list[int] = []
    lock = threading.Lock()

    def _worker() -> None:
        for _ in range(10):
            if tracker.decrease("d1") == 0:
                with lock:
                    zeros.append(1)

    threads = [threading.Thread(target=_worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(zeros) == 1
