"""Thread based job scheduling: bounded worker queues, detached jobs and result collection."""

import logging
import queue
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from aptmirror.errors import CollectorStateError, QueueClosedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# posted once per worker to stop it
_STOP = None


@dataclass(frozen=True, slots=True)
class Result:
    """Outcome of a job: either a value or an error."""

    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def failure(cls, error: BaseException | str) -> "Result":
        if isinstance(error, str):
            error = RuntimeError(error)
        return cls(error=error)


class JobQueue:
    """A fixed set of worker threads pulling jobs from a private unbounded buffer.

    Created through `Scheduler.start_queue`; all bookkeeping happens under the
    scheduler's lock so the process wide barrier sees every queued job.
    """

    def __init__(self, scheduler: "Scheduler", worker_count: int, runner: Callable[[Any], None], name: str):
        if worker_count < 1:
            raise ValueError(f"worker_count must be positive, got {worker_count}")
        self.name = name
        self._scheduler = scheduler
        self._runner = runner
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._finished = threading.Condition(scheduler._lock)
        self._waiting = 0
        self.stopped = False
        self._workers = [
            threading.Thread(target=self._work, name=f"{name}-{i}") for i in range(worker_count)
        ]

    @property
    def pending(self) -> int:
        with self._scheduler._lock:
            return self._waiting

    def _start(self) -> None:
        for worker in self._workers:
            worker.start()

    def _work(self) -> None:
        while (job := self._queue.get()) is not _STOP:
            try:
                self._runner(job)
            except Exception:
                logger.exception(f"Job failed in queue {self.name} (ignoring)")
            finally:
                self._scheduler._finished_job(self)

    def add(self, job: Any) -> None:
        """Enqueue a job. `None` is ignored."""
        if job is None:
            return
        with self._scheduler._lock:
            if self.stopped:
                raise QueueClosedError(f"Queue {self.name} is closed")
            self._waiting += 1
            self._scheduler._waiting += 1
            self._queue.put(job)

    def wait(self) -> None:
        """Block until every job added so far has completed."""
        with self._scheduler._lock:
            while self._waiting > 0:
                self._finished.wait()

    def join(self) -> None:
        """Wait for outstanding jobs, then stop the workers. Idempotent."""
        self.wait()
        with self._scheduler._lock:
            if self.stopped:
                return
            self.stopped = True
            self._scheduler._queues.remove(self)
        self._stop_workers()

    def _stop_workers(self) -> None:
        for _ in self._workers:
            self._queue.put(_STOP)
        for worker in self._workers:
            worker.join()
        self._workers = []


class Scheduler:
    """Owns every worker queue and detached job of one mirror run.

    `wait()`/`join()` form the process wide barrier: they block until the
    outstanding job count across all queues and detached jobs drops to zero.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._finished = threading.Condition(self._lock)
        self._waiting = 0
        self._queues: list[JobQueue] = []
        self._detached: set[threading.Thread] = set()
        self._finished_threads: list[threading.Thread] = []
        self._counter = 0

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, *exc_info) -> None:
        self.join()

    @property
    def pending(self) -> int:
        with self._lock:
            return self._waiting

    def _finished_job(self, job_queue: JobQueue | None) -> None:
        with self._lock:
            if job_queue is not None:
                job_queue._waiting -= 1
                if job_queue._waiting == 0:
                    job_queue._finished.notify_all()
            self._waiting -= 1
            if self._waiting == 0:
                self._finished.notify_all()

    def start_queue(self, worker_count: int, runner: Callable[[Any], None], name: str | None = None) -> JobQueue:
        """Start `worker_count` workers that call `runner(job)` for every added job."""
        with self._lock:
            self._counter += 1
            job_queue = JobQueue(self, worker_count, runner, name or f"queue{self._counter}")
            self._queues.append(job_queue)
        job_queue._start()
        logger.debug(f"Started queue {job_queue.name} with {worker_count} workers")
        return job_queue

    def run(self, fn: Callable[..., Any], *args, **kwargs) -> threading.Thread:
        """Run a single job on its own thread, outside any queue."""
        self._reap_finished()

        def _target():
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception(f"Detached job {getattr(fn, '__name__', fn)!r} failed (ignoring)")
            finally:
                current = threading.current_thread()
                with self._lock:
                    if current in self._detached:
                        self._detached.discard(current)
                        self._finished_threads.append(current)
                    self._waiting -= 1
                    if self._waiting == 0:
                        self._finished.notify_all()

        with self._lock:
            self._counter += 1
            thread = threading.Thread(target=_target, name=f"detached{self._counter}")
            self._waiting += 1
            self._detached.add(thread)
        thread.start()
        return thread

    def _reap_finished(self) -> None:
        with self._lock:
            finished, self._finished_threads = self._finished_threads, []
        for thread in finished:
            thread.join()

    def wait(self) -> None:
        """Block until no job is outstanding in any queue or detached thread."""
        with self._lock:
            while self._waiting > 0:
                self._finished.wait()

    def join(self) -> None:
        """Drain everything, then stop all queues and join every thread."""
        self.wait()
        with self._lock:
            queues, self._queues = self._queues, []
            for job_queue in queues:
                job_queue.stopped = True
            detached, self._detached = list(self._detached), set()
        for job_queue in queues:
            job_queue._stop_workers()
        for thread in detached:
            thread.join()
        self._reap_finished()


class Completion:
    """One-shot handle that fills a single Collector slot."""

    __slots__ = ("_collector", "index", "_done")

    def __init__(self, collector: "Collector", index: int):
        self._collector = collector
        self.index = index
        self._done = False

    def __call__(self, result: Result) -> None:
        self._collector._complete(self, result)

    def ok(self, value: Any = None) -> None:
        self(Result(value=value))

    def fail(self, error: BaseException | str) -> None:
        self(Result.failure(error))


class Collector:
    """Fan-out/fan-in of independent jobs.

    Slots are reserved in call order and results are reported in that order
    regardless of completion order. Only the first error (by completion time)
    is retained; no job is ever cancelled.
    """

    def __init__(self, scheduler: Scheduler):
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._finished = threading.Condition(self._lock)
        self._results: list[Any] = []
        self._waiting = 0
        self._error: BaseException | None = None
        self._closed = False

    def collect(self) -> Completion:
        """Reserve the next result slot."""
        with self._lock:
            if self._closed:
                raise CollectorStateError("Collector already finalized")
            self._waiting += 1
            index = len(self._results)
            self._results.append(None)
        return Completion(self, index)

    def _complete(self, completion: Completion, result: Result) -> None:
        with self._lock:
            if completion._done:
                raise CollectorStateError(f"Collector slot {completion.index} already completed")
            completion._done = True
            self._results[completion.index] = result.value
            if self._error is None and result.error is not None:
                self._error = result.error
            self._waiting -= 1
            if self._waiting == 0:
                self._finished.notify_all()

    def run_each(self, items: Iterable[T], fn: Callable[[T], Any]) -> None:
        """Run `fn(item)` for every item as a detached job, one slot per item."""
        for item in items:
            self._scheduler.run(self._run_one, self.collect(), fn, item)

    @staticmethod
    def _run_one(completion: Completion, fn: Callable[[Any], Any], item: Any) -> None:
        try:
            value = fn(item)
        except Exception as e:
            logger.debug(f"Collected job for {item!r} failed: {e}")
            completion(Result(error=e))
        else:
            completion(Result(value=value))

    def wait(self) -> None:
        """Finalize and block until every reserved slot is completed. Never raises job errors."""
        with self._lock:
            self._closed = True
            while self._waiting > 0:
                self._finished.wait()

    def wait_throw(self) -> None:
        self.wait()
        if self._error is not None:
            raise self._error

    def get(self) -> tuple[list[Any], BaseException | None]:
        self.wait()
        return list(self._results), self._error

    def results(self) -> list[Any]:
        self.wait()
        return list(self._results)

    def results_throw(self) -> list[Any]:
        self.wait_throw()
        return list(self._results)

    def error(self) -> BaseException | None:
        self.wait()
        return self._error
