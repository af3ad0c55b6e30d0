import threading
import time

from app.keyed_locks import KeyedLocks


def test_same_key_is_serialized():
    locks = KeyedLocks()
    active = []
    overlaps = []
    guard = threading.Lock()

    def _worker():
        with locks.hold("dep_1"):
            with guard:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(len(active))
            time.sleep(0.01)
            with guard:
                active.pop()

    threads = [threading.Thread(target=_worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert locks.active_keys() == 0


def test_different_keys_do_not_block_each_other():
    locks = KeyedLocks()
    entered = threading.Event()

    def _other():
        with locks.hold("dep_2"):
            entered.set()

    with locks.hold("dep_1"):
        t = threading.Thread(target=_other)
        t.start()
        assert entered.wait(1.0) is True
        assert locks.active_keys() >= 1
    t.join()
    assert locks.active_keys() == 0
