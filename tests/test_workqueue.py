"""Tests for the work queue family and rate limiters."""

from __future__ import annotations

import threading
import time

import pytest

from simple_ingress_controller.workqueue import (
    BucketRateLimiter,
    DelayingQueue,
    ItemExponentialFailureRateLimiter,
    MaxOfRateLimiter,
    RateLimitingQueue,
    WorkQueue,
    default_controller_rate_limiter,
)


@pytest.fixture()
def delaying_queue():
    q = DelayingQueue(name="test")
    yield q
    q.shut_down()


@pytest.fixture()
def rate_limiting_queue():
    q = RateLimitingQueue(default_controller_rate_limiter(), name="test")
    yield q
    q.shut_down()


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestWorkQueue:
    def test_add_get_done(self) -> None:
        q = WorkQueue()
        q.add("A")
        item, shutdown = q.get()
        assert item == "A"
        assert shutdown is False
        q.done("A")
        assert len(q) == 0

    def test_duplicate_adds_coalesce(self) -> None:
        q = WorkQueue()
        for _ in range(10):
            q.add("ns/foo")
        assert len(q) == 1
        item, _ = q.get()
        assert item == "ns/foo"
        assert q.get(timeout=0.05) == (None, False)

    def test_fifo_across_keys(self) -> None:
        q = WorkQueue()
        for key in ("a", "b", "c", "a"):
            q.add(key)
        assert [q.get()[0] for _ in range(3)] == ["a", "b", "c"]

    def test_add_while_processing_redelivers_once_after_done(self) -> None:
        q = WorkQueue()
        q.add("k")
        item, _ = q.get()
        q.add("k")
        q.add("k")
        # Not ready while in flight
        assert len(q) == 0
        assert q.get(timeout=0.05) == (None, False)
        q.done(item)
        assert len(q) == 1
        assert q.get(timeout=0.05) == ("k", False)
        q.done("k")
        assert len(q) == 0

    def test_same_key_never_handed_to_two_workers(self) -> None:
        q = WorkQueue()
        q.add("k")
        first, _ = q.get()
        q.add("k")
        assert q.processing() == {"k"}
        assert q.get(timeout=0.05) == (None, False)
        q.done(first)

    def test_get_blocks_until_add(self) -> None:
        q = WorkQueue()
        results: list = []
        t = threading.Thread(target=lambda: results.append(q.get()))
        t.start()
        time.sleep(0.05)
        assert results == []
        q.add("late")
        t.join(timeout=2)
        assert results == [("late", False)]

    def test_shutdown_wakes_blocked_getters(self) -> None:
        q = WorkQueue()
        results: list = []
        threads = [threading.Thread(target=lambda: results.append(q.get())) for _ in range(3)]
        for t in threads:
            t.start()
        time.sleep(0.05)
        q.shut_down()
        for t in threads:
            t.join(timeout=2)
        assert results == [(None, True)] * 3

    def test_shutdown_drains_remaining_items_then_reports_shutdown(self) -> None:
        q = WorkQueue()
        q.add("a")
        q.shut_down()
        q.shut_down()  # idempotent
        assert q.get() == ("a", False)
        assert q.get() == (None, True)

    def test_add_after_shutdown_is_ignored(self) -> None:
        q = WorkQueue()
        q.shut_down()
        q.add("a")
        assert len(q) == 0
        assert q.shutting_down is True

    def test_shut_down_with_drain_waits_for_in_flight(self) -> None:
        q = WorkQueue()
        q.add("a")
        item, _ = q.get()
        timer = threading.Timer(0.05, q.done, args=(item,))
        timer.start()
        assert q.shut_down_with_drain(timeout=2) is True

    def test_shut_down_with_drain_times_out(self) -> None:
        q = WorkQueue()
        q.add("a")
        q.get()
        assert q.shut_down_with_drain(timeout=0.05) is False


class TestDelayingQueue:
    def test_add_after_delays_item(self, delaying_queue: DelayingQueue) -> None:
        delaying_queue.add_after("A", 0.1)
        assert len(delaying_queue) == 0
        assert delaying_queue.waiting() == 1
        assert _wait_until(lambda: len(delaying_queue) == 1)
        assert delaying_queue.waiting() == 0

    def test_non_positive_delay_adds_immediately(self, delaying_queue: DelayingQueue) -> None:
        delaying_queue.add_after("A", 0)
        assert len(delaying_queue) == 1

    def test_earlier_ready_time_wins(self, delaying_queue: DelayingQueue) -> None:
        delaying_queue.add_after("A", 60)
        delaying_queue.add_after("A", 0.05)
        assert delaying_queue.waiting() == 1
        assert _wait_until(lambda: len(delaying_queue) == 1)

    def test_later_ready_time_is_ignored(self, delaying_queue: DelayingQueue) -> None:
        delaying_queue.add_after("A", 0.05)
        delaying_queue.add_after("A", 60)
        assert _wait_until(lambda: len(delaying_queue) == 1)
        assert delaying_queue.waiting() == 0


class TestRateLimiters:
    def test_exponential_backoff_doubles_and_caps(self) -> None:
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.01, max_delay=0.05)
        delays = [limiter.when("a") for _ in range(5)]
        assert delays == pytest.approx([0.01, 0.02, 0.04, 0.05, 0.05])
        assert limiter.num_requeues("a") == 5
        # Independent per item
        assert limiter.when("b") == 0.01

    def test_exponential_forget_resets(self) -> None:
        limiter = ItemExponentialFailureRateLimiter(base_delay=1, max_delay=100)
        limiter.when("a")
        limiter.when("a")
        limiter.forget("a")
        assert limiter.num_requeues("a") == 0
        assert limiter.when("a") == 1

    def test_exponential_large_exponent_returns_max(self) -> None:
        limiter = ItemExponentialFailureRateLimiter(base_delay=0.005, max_delay=1000)
        for _ in range(2000):
            delay = limiter.when("a")
        assert delay == 1000

    def test_bucket_allows_burst_then_paces(self) -> None:
        now = [0.0]
        limiter = BucketRateLimiter(qps=10, burst=2, clock=lambda: now[0])
        assert limiter.when("a") == 0.0
        assert limiter.when("b") == 0.0
        assert limiter.when("c") == pytest.approx(0.1)
        assert limiter.when("d") == pytest.approx(0.2)
        now[0] = 10.0
        assert limiter.when("e") == 0.0

    def test_max_of_takes_longest(self) -> None:
        now = [0.0]
        limiter = MaxOfRateLimiter(
            ItemExponentialFailureRateLimiter(base_delay=0.001, max_delay=1),
            BucketRateLimiter(qps=1, burst=1, clock=lambda: now[0]),
        )
        assert limiter.when("a") == pytest.approx(0.001)
        assert limiter.when("a") == pytest.approx(1.0)
        assert limiter.num_requeues("a") == 2
        limiter.forget("a")
        assert limiter.num_requeues("a") == 0


class TestRateLimitingQueue:
    def test_add_rate_limited_counts_requeues(self, rate_limiting_queue: RateLimitingQueue) -> None:
        rate_limiting_queue.add("A")
        rate_limiting_queue.add_rate_limited("A")
        assert rate_limiting_queue.num_requeues("A") == 1
        rate_limiting_queue.forget("A")
        assert rate_limiting_queue.num_requeues("A") == 0

    def test_add_rate_limited_eventually_delivers(self) -> None:
        q = RateLimitingQueue(ItemExponentialFailureRateLimiter(base_delay=0.02, max_delay=1))
        try:
            q.add_rate_limited("A")
            assert len(q) == 0
            assert _wait_until(lambda: len(q) == 1)
            assert q.get(timeout=1) == ("A", False)
        finally:
            q.shut_down()
