# backend/core/worker_pool.py
"""
Worker 池

固定数量的线程从有界任务队列取任务，调用远程查询后投递结果：
已登记批次的任务投递到该批次自己的通道，其余放入有界的共享结果队列。
批次关闭后，队列中残留的该批次任务会被跳过，不再发起请求。
状态流转：CREATED -> RUNNING -> DRAINING -> STOPPED
"""
import logging
import queue
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..models.schemas import UsageRecord
from .errors import KeyUsageError, PoolStateError, QueueFullError
from .usage_fetcher import UsageFetcher

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, str], UsageRecord]


class PoolState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Task:
    id: str
    api_key: str
    batch_id: Optional[int] = None


@dataclass
class Result:
    id: str
    usage: Optional[UsageRecord] = None
    error: Optional[Exception] = None
    batch_id: Optional[int] = None

    def to_record(self) -> UsageRecord:
        if self.error is not None:
            return UsageRecord.from_error(self.id, self.error)
        if self.usage is None:
            return UsageRecord.from_error(self.id, "empty result")
        return self.usage


class _BatchChannel:
    """单个批次的结果通道：独立结果队列 + 队列中尚未被取走的任务数"""

    def __init__(self):
        self.results: "queue.Queue[Result]" = queue.Queue()
        self.pending = 0
        self.closed = False


class WorkerPool:

    def __init__(self, max_workers: int = 100, queue_size: int = 10000,
                 fetcher: Optional[Fetcher] = None, submit_timeout: float = 5.0,
                 poll_interval: float = 0.1):
        """
        :param max_workers: worker 线程数
        :param queue_size: 任务队列与结果队列的容量
        :param fetcher: (key_id, api_key) -> UsageRecord，默认使用共享连接池的 UsageFetcher
        :param submit_timeout: submit_task 等待队列空位的最长时间（秒）
        :param poll_interval: worker 检查关闭信号的间隔（秒）
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")
        self.max_workers = max_workers
        self.queue_size = queue_size
        self.fetcher = fetcher or UsageFetcher(pool_maxsize=max_workers * 2)
        self.submit_timeout = submit_timeout
        self.poll_interval = poll_interval

        self._task_queue: "queue.Queue[Task]" = queue.Queue(maxsize=queue_size)
        self._result_queue: "queue.Queue[Result]" = queue.Queue(maxsize=queue_size)
        self._shutdown = threading.Event()
        self._threads: List[threading.Thread] = []

        self._lock = threading.Lock()
        self._state = PoolState.CREATED
        self._active_workers = 0
        self._processed_tasks = 0
        self._skipped_tasks = 0
        self._batches: Dict[int, _BatchChannel] = {}

    @property
    def state(self) -> PoolState:
        with self._lock:
            return self._state

    def start(self):
        with self._lock:
            if self._state != PoolState.CREATED:
                raise PoolStateError(f"cannot start worker pool in state {self._state.value}")
            self._state = PoolState.RUNNING
        for i in range(self.max_workers):
            t = threading.Thread(target=self._worker, args=(i,), name=f"usage-worker-{i}", daemon=True)
            self._threads.append(t)
            t.start()
        logger.info(f"Worker pool started: {self.max_workers} workers, queue capacity {self.queue_size}")

    def stop(self):
        """发出关闭信号并等待所有 worker 退出；只能调用一次"""
        with self._lock:
            if self._state in (PoolState.DRAINING, PoolState.STOPPED):
                raise PoolStateError("worker pool already stopped")
            self._state = PoolState.DRAINING
        self._shutdown.set()
        for t in self._threads:
            t.join()
        self._threads.clear()
        with self._lock:
            self._state = PoolState.STOPPED
        close = getattr(self.fetcher, "close", None)
        if close is not None:
            close()
        logger.info(f"Worker pool stopped, processed {self._processed_tasks} tasks, "
                    f"{self._task_queue.qsize()} tasks left in queue")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def submit_task(self, task: Task, timeout: Optional[float] = None):
        """阻塞提交，超过等待时间仍满则抛出 QueueFullError，由调用方决定重试或放弃"""
        self._ensure_open()
        self._reserve(task)
        try:
            self._task_queue.put(task, timeout=self.submit_timeout if timeout is None else timeout)
        except queue.Full:
            self._release(task)
            raise QueueFullError()

    def offer_task(self, task: Task) -> bool:
        """非阻塞提交，队列满时返回 False"""
        self._ensure_open()
        self._reserve(task)
        try:
            self._task_queue.put_nowait(task)
            return True
        except queue.Full:
            self._release(task)
            return False

    def get_result(self, timeout: Optional[float] = 0.1) -> Optional[Result]:
        """从共享结果队列取结果（未登记批次的任务）"""
        return _get(self._result_queue, timeout)

    # ---------- 批次通道 ----------

    def open_batch(self, batch_id: int):
        """登记批次，之后带该 batch_id 的任务结果只投递到这个批次自己的通道"""
        with self._lock:
            if batch_id in self._batches:
                raise PoolStateError(f"batch {batch_id} is already open")
            self._batches[batch_id] = _BatchChannel()

    def close_batch(self, batch_id: int) -> int:
        """
        关闭批次：之后的结果直接丢弃，仍在任务队列中的任务被 worker 跳过，不再发起请求。
        :return: 关闭时仍在队列中的任务数
        """
        with self._lock:
            channel = self._batches.get(batch_id)
            if channel is None:
                return 0
            channel.closed = True
            if channel.pending == 0:
                del self._batches[batch_id]
            return channel.pending

    def get_batch_result(self, batch_id: int, timeout: Optional[float] = 0.1) -> Optional[Result]:
        with self._lock:
            channel = self._batches.get(batch_id)
        if channel is None:
            return None
        return _get(channel.results, timeout)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_workers": self._active_workers,
                "queue_size": self._task_queue.qsize(),
                "result_queue_size": self._result_queue.qsize(),
                "processed_tasks": self._processed_tasks,
                "skipped_tasks": self._skipped_tasks,
                "open_batches": sum(1 for c in self._batches.values() if not c.closed),
                "max_workers": self.max_workers,
                "queue_capacity": self.queue_size,
                "state": self._state.value,
            }

    def _ensure_open(self):
        if self._shutdown.is_set():
            raise PoolStateError("worker pool is stopped")

    def _reserve(self, task: Task):
        with self._lock:
            channel = self._batches.get(task.batch_id)
            if channel is not None:
                channel.pending += 1

    def _release(self, task: Task):
        with self._lock:
            channel = self._batches.get(task.batch_id)
            if channel is None:
                return
            channel.pending -= 1
            if channel.closed and channel.pending == 0:
                del self._batches[task.batch_id]

    def _claim(self, task: Task) -> Tuple[Optional[_BatchChannel], bool]:
        """worker 取到任务后调用，返回 (批次通道, 是否跳过)"""
        with self._lock:
            channel = self._batches.get(task.batch_id)
            if channel is None:
                return None, False
            channel.pending -= 1
            if not channel.closed:
                return channel, False
            if channel.pending == 0:
                del self._batches[task.batch_id]
            self._skipped_tasks += 1
            return None, True

    def _worker(self, worker_id: int):
        with self._lock:
            self._active_workers += 1
        try:
            while not self._shutdown.is_set():
                try:
                    task = self._task_queue.get(timeout=self.poll_interval)
                except queue.Empty:
                    continue
                channel, skip = self._claim(task)
                if skip:
                    logger.debug(f"Skipping {task.id}: batch {task.batch_id} already closed")
                    continue
                result = self._process_task(task)
                if channel is not None:
                    self._deliver(channel, result)
                elif not self._publish(result):
                    return
                with self._lock:
                    self._processed_tasks += 1
        finally:
            with self._lock:
                self._active_workers -= 1

    def _process_task(self, task: Task) -> Result:
        try:
            usage = self.fetcher(task.id, task.api_key)
            return Result(id=task.id, usage=usage, batch_id=task.batch_id)
        except KeyUsageError as e:
            logger.debug(f"Fetch failed for {task.id}: {e}")
            return Result(id=task.id, error=e, batch_id=task.batch_id)
        except Exception as e:
            logger.exception(f"Unexpected error fetching usage for {task.id}")
            return Result(id=task.id, error=e, batch_id=task.batch_id)

    def _deliver(self, channel: _BatchChannel, result: Result):
        with self._lock:
            closed = channel.closed
        if closed:
            logger.debug(f"Dropping late result for {result.id}: batch {result.batch_id} closed")
            return
        channel.results.put_nowait(result)

    def _publish(self, result: Result) -> bool:
        """放入共享结果队列；等待期间收到关闭信号则放弃该结果"""
        while not self._shutdown.is_set():
            try:
                self._result_queue.put(result, timeout=self.poll_interval)
                return True
            except queue.Full:
                continue
        return False


def _get(q: "queue.Queue[Result]", timeout: Optional[float]) -> Optional[Result]:
    try:
        if timeout is not None and timeout <= 0:
            return q.get_nowait()
        return q.get(timeout=timeout)
    except queue.Empty:
        return None
