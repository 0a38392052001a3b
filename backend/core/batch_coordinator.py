# backend/core/batch_coordinator.py
"""
批量调度

把一批Key提交给 Worker 池，按动态截止时间收集结果，超时或提交失败的Key填充占位记录，
最后按输入顺序返回。
"""
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ..models.api_key import APIKey
from ..models.schemas import UsageRecord
from .errors import ProcessingTimeout, QueueFullError
from .worker_pool import Task, WorkerPool

logger = logging.getLogger(__name__)

# 收集线程单次等待结果的上限（秒），保证占位写满或超时后能及时退出
POLL_SLICE = 0.1


def compute_deadline(key_count: int, worker_count: int, base: float = 30.0,
                     per_item: float = 2.0, cap: float = 300.0) -> float:
    """截止时间（秒）= base + (Key数 // worker数) * per_item，不超过 cap"""
    rounds = key_count // max(worker_count, 1)
    return min(base + rounds * per_item, cap)


@dataclass
class BatchProgress:
    received: int
    total: int
    elapsed: float

    @property
    def percent(self) -> float:
        return self.received / self.total * 100 if self.total else 100.0

    @property
    def rate(self) -> float:
        return self.received / self.elapsed if self.elapsed > 0 else 0.0


def log_progress(progress: BatchProgress):
    logger.info(f"Progress: {progress.received}/{progress.total} ({progress.percent:.1f}%) | "
                f"{progress.rate:.1f} keys/s | elapsed {progress.elapsed:.0f}s")


class BatchCoordinator:

    _batch_ids = itertools.count(1)

    def __init__(self, pool: WorkerPool, base_timeout: float = 30.0, per_item_timeout: float = 2.0,
                 max_timeout: float = 300.0, progress_interval: float = 1.0, milestone: int = 100,
                 observer: Optional[Callable[[BatchProgress], None]] = log_progress,
                 retry_delay: float = 0.01):
        self.pool = pool
        self.base_timeout = base_timeout
        self.per_item_timeout = per_item_timeout
        self.max_timeout = max_timeout
        self.progress_interval = progress_interval
        self.milestone = milestone
        self.observer = observer
        self.retry_delay = retry_delay

    def deadline_for(self, key_count: int) -> float:
        return compute_deadline(key_count, self.pool.max_workers, self.base_timeout,
                                self.per_item_timeout, self.max_timeout)

    def process(self, keys: Sequence[APIKey]) -> List[UsageRecord]:
        """
        并发查询一批Key的用量。
        单个Key的失败不会中断批次；截止时间到了，未返回的Key以超时占位。
        :return: 与 keys 顺序一致的 UsageRecord 列表
        """
        if not keys:
            return []
        batch_id = next(self._batch_ids)
        self.pool.open_batch(batch_id)
        try:
            return self._process(batch_id, keys)
        finally:
            skipped = self.pool.close_batch(batch_id)
            if skipped:
                logger.info(f"Batch {batch_id}: {skipped} queued tasks will be skipped")

    def _process(self, batch_id: int, keys: Sequence[APIKey]) -> List[UsageRecord]:
        total = len(keys)
        timeout = self.deadline_for(total)
        started = time.monotonic()
        deadline = started + timeout
        logger.info(f"Batch {batch_id}: processing {total} keys with {self.pool.max_workers} workers, "
                    f"timeout {timeout:.0f}s")

        results: Dict[str, UsageRecord] = {}
        lock = threading.Lock()
        wanted = {key.id for key in keys}
        collector = threading.Thread(
            target=self._collect,
            args=(batch_id, wanted, results, lock, started, deadline),
            name=f"usage-collector-{batch_id}",
            daemon=True,
        )
        collector.start()

        submitted = 0
        for key in keys:
            task = Task(id=key.id, api_key=key.key, batch_id=batch_id)
            if self.pool.offer_task(task):
                submitted += 1
                continue
            # 队列满了，等一下再试一次
            time.sleep(self.retry_delay)
            if self.pool.offer_task(task):
                submitted += 1
                continue
            with lock:
                results[key.id] = UsageRecord.from_error(key.id, QueueFullError())
        logger.info(f"Batch {batch_id}: submitted {submitted}/{total} tasks")

        collector.join(max(deadline - time.monotonic(), 0) + POLL_SLICE * 2)
        if collector.is_alive():
            logger.warning(f"Batch {batch_id}: collector still running after deadline")

        with lock:
            received = len(results)
            ordered = []
            for key in keys:
                record = results.get(key.id)
                if record is None:
                    record = UsageRecord.from_error(key.id, ProcessingTimeout())
                ordered.append(record)

        elapsed = time.monotonic() - started
        if received < total:
            logger.warning(f"Batch {batch_id}: timed out, received {received}/{total} results")
        logger.info(f"Batch {batch_id}: done, total {total} | received {received} | "
                    f"{elapsed:.3f}s | {received / elapsed if elapsed > 0 else 0:.1f} keys/s")
        return ordered

    def _collect(self, batch_id: int, wanted: set, results: Dict[str, UsageRecord],
                 lock: threading.Lock, started: float, deadline: float):
        """从结果队列收集本批次的结果，同时按固定间隔报告进度"""
        total = len(wanted)
        next_tick = started + self.progress_interval
        while True:
            with lock:
                received = len(results)
            if received >= total:
                return
            now = time.monotonic()
            if now >= deadline:
                return
            if now >= next_tick:
                self._report(received, total, now - started)
                next_tick = now + self.progress_interval

            wait = min(next_tick, deadline) - now
            result = self.pool.get_batch_result(batch_id, timeout=min(wait, POLL_SLICE))
            if result is None:
                continue
            if result.id not in wanted:
                logger.debug(f"Batch {batch_id}: dropping unexpected result for {result.id}")
                continue
            with lock:
                if result.id in results:
                    continue
                results[result.id] = result.to_record()
                received = len(results)
            if self.milestone and received % self.milestone == 0:
                self._report(received, total, time.monotonic() - started)

    def _report(self, received: int, total: int, elapsed: float):
        if self.observer is None:
            return
        try:
            self.observer(BatchProgress(received=received, total=total, elapsed=elapsed))
        except Exception:
            logger.exception("Progress observer failed")
