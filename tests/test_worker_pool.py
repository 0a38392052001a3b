"""
Worker 池单元测试
"""
import threading
import time

import pytest

from backend.core.errors import PoolStateError, QueueFullError, TransportError
from backend.core.worker_pool import PoolState, Task, WorkerPool


def drain(pool, expected, timeout=5.0):
    results = []
    deadline = time.monotonic() + timeout
    while len(results) < expected and time.monotonic() < deadline:
        result = pool.get_result(timeout=0.05)
        if result is not None:
            results.append(result)
    return results


def pool_threads():
    return [t for t in threading.enumerate() if t.name.startswith("usage-worker-")]


class TestWorkerPoolLifecycle:
    """测试启动/停止"""

    def test_start_launches_exactly_n_workers(self, fake_fetcher):
        pool = WorkerPool(max_workers=3, queue_size=10, fetcher=fake_fetcher, poll_interval=0.01)
        pool.start()
        try:
            assert pool.state == PoolState.RUNNING
            deadline = time.monotonic() + 2
            while pool.stats()["active_workers"] < 3 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert pool.stats()["active_workers"] == 3
        finally:
            pool.stop()
        assert pool.state == PoolState.STOPPED
        assert pool.stats()["active_workers"] == 0

    def test_stop_twice_is_a_programming_error(self, fake_fetcher):
        pool = WorkerPool(max_workers=1, queue_size=1, fetcher=fake_fetcher, poll_interval=0.01)
        pool.start()
        pool.stop()
        with pytest.raises(PoolStateError):
            pool.stop()

    def test_start_twice_is_a_programming_error(self, fake_fetcher):
        pool = WorkerPool(max_workers=1, queue_size=1, fetcher=fake_fetcher, poll_interval=0.01)
        pool.start()
        try:
            with pytest.raises(PoolStateError):
                pool.start()
        finally:
            pool.stop()

    def test_submit_after_stop_is_a_programming_error(self, fake_fetcher):
        pool = WorkerPool(max_workers=1, queue_size=1, fetcher=fake_fetcher, poll_interval=0.01)
        pool.start()
        pool.stop()
        with pytest.raises(PoolStateError):
            pool.submit_task(Task(id="k1", api_key="secret"))
        with pytest.raises(PoolStateError):
            pool.offer_task(Task(id="k1", api_key="secret"))

    def test_stop_with_tasks_still_queued_terminates(self, make_fetcher):
        fetcher = make_fetcher(delay=0.05)
        pool = WorkerPool(max_workers=2, queue_size=100, fetcher=fetcher, poll_interval=0.01)
        pool.start()
        for i in range(50):
            pool.submit_task(Task(id=f"k{i}", api_key=f"secret-{i}"))

        started = time.monotonic()
        pool.stop()

        assert time.monotonic() - started < 2
        assert pool_threads() == []
        assert fetcher.call_count < 50

    def test_context_manager_starts_and_stops(self, fake_fetcher):
        with WorkerPool(max_workers=2, queue_size=4, fetcher=fake_fetcher, poll_interval=0.01) as pool:
            assert pool.state == PoolState.RUNNING
        assert pool.state == PoolState.STOPPED

    def test_stop_closes_fetcher(self):
        class ClosingFetcher:
            closed = False

            def __call__(self, key_id, api_key):
                raise AssertionError("not called")

            def close(self):
                self.closed = True

        fetcher = ClosingFetcher()
        pool = WorkerPool(max_workers=1, queue_size=1, fetcher=fetcher, poll_interval=0.01)
        pool.start()
        pool.stop()
        assert fetcher.closed

    def test_invalid_sizes_rejected(self, fake_fetcher):
        with pytest.raises(ValueError):
            WorkerPool(max_workers=0, fetcher=fake_fetcher)
        with pytest.raises(ValueError):
            WorkerPool(max_workers=1, queue_size=0, fetcher=fake_fetcher)


class TestWorkerPoolProcessing:
    """测试任务处理"""

    def test_processes_tasks_and_publishes_results(self, fake_fetcher):
        with WorkerPool(max_workers=4, queue_size=20, fetcher=fake_fetcher, poll_interval=0.01) as pool:
            for i in range(10):
                pool.submit_task(Task(id=f"k{i}", api_key=f"secret-{i}", batch_id=7))
            results = drain(pool, 10)

            assert sorted(r.id for r in results) == sorted(f"k{i}" for i in range(10))
            assert all(r.batch_id == 7 for r in results)
            assert all(r.to_record().is_ok for r in results)
            assert pool.stats()["processed_tasks"] == 10

    def test_fetch_errors_become_error_results(self, make_fetcher):
        fetcher = make_fetcher(outcomes={"bad": TransportError("API request failed: refused")})
        with WorkerPool(max_workers=1, queue_size=4, fetcher=fetcher, poll_interval=0.01) as pool:
            pool.submit_task(Task(id="k-bad", api_key="bad"))
            [result] = drain(pool, 1)

        record = result.to_record()
        assert record.id == "k-bad"
        assert record.error == "API request failed: refused"

    def test_unexpected_exception_does_not_kill_worker(self, make_fetcher):
        fetcher = make_fetcher(outcomes={"boom": RuntimeError("boom")})
        with WorkerPool(max_workers=1, queue_size=4, fetcher=fetcher, poll_interval=0.01) as pool:
            pool.submit_task(Task(id="k1", api_key="boom"))
            pool.submit_task(Task(id="k2", api_key="fine"))
            results = {r.id: r.to_record() for r in drain(pool, 2)}

        assert results["k1"].error == "boom"
        assert results["k2"].is_ok

    def test_submit_fails_with_queue_full(self, fake_fetcher):
        pool = WorkerPool(max_workers=1, queue_size=1, fetcher=fake_fetcher, submit_timeout=0.05)
        pool.submit_task(Task(id="k1", api_key="secret"))

        started = time.monotonic()
        with pytest.raises(QueueFullError):
            pool.submit_task(Task(id="k2", api_key="secret"))
        assert time.monotonic() - started < 1
        assert pool.offer_task(Task(id="k3", api_key="secret")) is False
        pool.stop()

    def test_stats_report_queue_depths(self, fake_fetcher):
        pool = WorkerPool(max_workers=2, queue_size=5, fetcher=fake_fetcher)
        pool.offer_task(Task(id="k1", api_key="secret"))
        pool.offer_task(Task(id="k2", api_key="secret"))

        stats = pool.stats()
        assert stats["queue_size"] == 2
        assert stats["result_queue_size"] == 0
        assert stats["queue_capacity"] == 5
        assert stats["max_workers"] == 2
        assert stats["state"] == "created"
        pool.stop()

    def test_stats_readable_while_workers_run(self, make_fetcher):
        fetcher = make_fetcher(delay=0.01)
        with WorkerPool(max_workers=4, queue_size=50, fetcher=fetcher, poll_interval=0.01) as pool:
            for i in range(40):
                pool.submit_task(Task(id=f"k{i}", api_key="secret"))
            seen = []
            received = []
            deadline = time.monotonic() + 5
            while len(received) < 40 and time.monotonic() < deadline:
                seen.append(pool.stats()["processed_tasks"])
                result = pool.get_result(timeout=0.05)
                if result is not None:
                    received.append(result)
            assert seen == sorted(seen)
            assert pool.stats()["processed_tasks"] == 40


class TestWorkerPoolBatches:
    """测试批次通道"""

    def test_batch_results_are_routed_to_their_channel(self, fake_fetcher):
        with WorkerPool(max_workers=2, queue_size=10, fetcher=fake_fetcher, poll_interval=0.01) as pool:
            pool.open_batch(1)
            pool.open_batch(2)
            pool.submit_task(Task(id="a", api_key="secret-a", batch_id=1))
            pool.submit_task(Task(id="b", api_key="secret-b", batch_id=2))

            first = pool.get_batch_result(1, timeout=2)
            second = pool.get_batch_result(2, timeout=2)

            assert first.id == "a"
            assert second.id == "b"
            assert pool.get_result(timeout=0) is None
            assert pool.stats()["open_batches"] == 2
            pool.close_batch(1)
            pool.close_batch(2)
            assert pool.stats()["open_batches"] == 0

    def test_open_batch_twice_is_a_programming_error(self, fake_fetcher):
        pool = WorkerPool(max_workers=1, queue_size=1, fetcher=fake_fetcher)
        pool.open_batch(1)
        with pytest.raises(PoolStateError):
            pool.open_batch(1)
        pool.stop()

    def test_queued_tasks_of_closed_batch_are_skipped(self, fake_fetcher):
        pool = WorkerPool(max_workers=1, queue_size=10, fetcher=fake_fetcher, poll_interval=0.01)
        pool.open_batch(1)
        for i in range(3):
            pool.submit_task(Task(id=f"k{i}", api_key="secret", batch_id=1))
        assert pool.close_batch(1) == 3

        pool.submit_task(Task(id="after", api_key="secret"))
        pool.start()
        try:
            [result] = drain(pool, 1)
        finally:
            pool.stop()

        assert result.id == "after"
        assert fake_fetcher.call_count == 1
        stats = pool.stats()
        assert stats["skipped_tasks"] == 3
        assert stats["open_batches"] == 0

    def test_rejected_offer_does_not_leave_pending_tasks(self, fake_fetcher):
        pool = WorkerPool(max_workers=1, queue_size=1, fetcher=fake_fetcher)
        pool.open_batch(1)
        assert pool.offer_task(Task(id="k1", api_key="secret", batch_id=1))
        assert pool.offer_task(Task(id="k2", api_key="secret", batch_id=1)) is False
        assert pool.close_batch(1) == 1
        pool.stop()
