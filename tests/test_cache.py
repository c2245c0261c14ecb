from __future__ import annotations

import threading
import time

import pytest

from monorun.cache import GLOBAL, DedupCache, DedupKey, TaskState


def test_key_for_global_task_ignores_path():
    assert DedupKey.for_task("install", "a", global_=True) == DedupKey.for_task("install", "b", global_=True)
    assert DedupKey.for_task("install", "a", global_=True).path == GLOBAL
    assert DedupKey.for_task("lint", "a") != DedupKey.for_task("lint", "b")
    assert str(DedupKey("lint", "a")) == "lint@a"


def test_concurrent_callers_share_one_execution():
    cache = DedupCache()
    key = DedupKey("build", ".")
    runs = []
    owners = []
    barrier = threading.Barrier(10)

    def work():
        runs.append(1)
        time.sleep(0.05)

    def caller():
        barrier.wait()
        owners.append(cache.run(key, work))

    threads = [threading.Thread(target=caller) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(runs) == 1
    assert sorted(owners) == [False] * 9 + [True]
    assert cache.state(key) is TaskState.SUCCEEDED
    assert cache.executed() == [key]


def test_every_caller_sees_the_original_error():
    cache = DedupCache()
    key = DedupKey("lint", "a")
    err = RuntimeError("lint failed")
    seen = []
    lock = threading.Lock()
    barrier = threading.Barrier(5)

    def work():
        time.sleep(0.05)
        raise err

    def caller():
        barrier.wait()
        try:
            cache.run(key, work)
        except RuntimeError as e:
            with lock:
                seen.append(e)

    threads = [threading.Thread(target=caller) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(seen) == 5
    assert all(e is err for e in seen)
    assert cache.state(key) is TaskState.FAILED


def test_later_callers_get_cached_result():
    cache = DedupCache()
    key = DedupKey("fmt", ".")
    runs = []
    assert cache.state(key) is TaskState.NOT_STARTED
    assert cache.run(key, lambda: runs.append(1)) is True
    assert cache.run(key, lambda: runs.append(1)) is False
    assert runs == [1]


def test_state_is_running_while_in_flight():
    cache = DedupCache()
    key = DedupKey("slow", ".")
    started = threading.Event()
    release = threading.Event()

    def work():
        started.set()
        release.wait(5)

    t = threading.Thread(target=cache.run, args=(key, work))
    t.start()
    assert started.wait(5)
    assert cache.state(key) is TaskState.RUNNING
    release.set()
    t.join()
    assert cache.state(key) is TaskState.SUCCEEDED


def test_independent_caches():
    key = DedupKey("x", ".")
    runs = []
    for cache in (DedupCache(), DedupCache()):
        cache.run(key, lambda: runs.append(1))
    assert runs == [1, 1]


def test_failure_is_not_retried():
    cache = DedupCache()
    key = DedupKey("x", ".")
    attempts = []

    def work():
        attempts.append(1)
        raise ValueError("no")

    for _ in range(3):
        with pytest.raises(ValueError):
            cache.run(key, work)
    assert attempts == [1]
