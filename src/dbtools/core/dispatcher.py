"""Bounded-concurrency dispatcher for backup unit-jobs"""

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from .exceptions import DBToolsError


class JobToken:
    """Admission ticket; exactly ``capacity`` of them exist per pool"""

    def __init__(self, pool: "TokenPool", number: int):
        self.pool = pool
        self.number = number
        self._lock = threading.Lock()
        self._held = False

    def _take(self) -> None:
        with self._lock:
            self._held = True

    def release(self) -> None:
        """Return the token to its pool; a second release raises"""
        with self._lock:
            if not self._held:
                raise DBToolsError(f"Job token {self.number} returned twice")
            self._held = False
        self.pool._tokens.put(self)


class TokenPool:
    """Fixed set of tokens kept in a FIFO queue"""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Pool capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self._tokens: queue.Queue[JobToken] = queue.Queue(maxsize=capacity)
        for number in range(capacity):
            self._tokens.put(JobToken(self, number))

    def acquire(self) -> JobToken:
        token = self._tokens.get()
        token._take()
        return token

    def drain(self) -> list[JobToken]:
        """Block until every token is back, then hand them all out"""
        return [self.acquire() for _ in range(self.capacity)]

    @property
    def available(self) -> int:
        return self._tokens.qsize()


@dataclass
class JobResult:
    """Outcome of one unit-job, written only by the worker that ran it"""

    name: str
    ok: bool
    message: str = ""
    artifact: str | None = None
    duration: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchReport:
    results: list[JobResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok)

    @property
    def failures(self) -> list[JobResult]:
        return [r for r in self.results if not r.ok]


class BackupDispatcher:
    """Runs unit-jobs with at most ``max_jobs`` in flight.

    A job takes a token before it is submitted to the executor; the future's
    done-callback returns the token whatever the outcome. ``run`` reports only
    after all tokens are back, so no job is still running (or holding a token)
    when the caller sees the results.
    """

    def __init__(self, max_jobs: int = 2):
        self.max_jobs = max_jobs
        self.logger = logging.getLogger("BackupDispatcher")
        self.last_pool: TokenPool | None = None

    def run(self, jobs: Iterable[tuple[str, Callable[[], JobResult]]]) -> DispatchReport:
        """Run ``(name, job)`` pairs; a job returns a JobResult or raises"""
        pool = TokenPool(self.max_jobs)
        self.last_pool = pool
        submitted: list[tuple[str, Future]] = []

        def run_job(job: Callable[[], JobResult]) -> JobResult:
            start = time.monotonic()
            result = job()
            if not result.duration:
                result.duration = round(time.monotonic() - start, 2)
            return result

        with ThreadPoolExecutor(max_workers=self.max_jobs, thread_name_prefix="dbtools-job") as executor:
            for name, job in jobs:
                token = pool.acquire()
                try:
                    future = executor.submit(run_job, job)
                except BaseException:
                    token.release()
                    raise
                future.add_done_callback(lambda _f, t=token: t.release())
                submitted.append((name, future))
                self.logger.debug(f"Dispatched {name} ({pool.available} slot(s) free)")

            # Done-callbacks may still be running after the futures resolve
            for token in pool.drain():
                token.release()

        report = DispatchReport()
        for name, future in submitted:
            error = future.exception()
            if error is None:
                result = future.result()
            else:
                self.logger.error(f"Job {name} raised: {error}")
                result = JobResult(name=name, ok=False, message=str(error))
            report.results.append(result)

        self.logger.info(f"Dispatch complete: {report.succeeded} ok, {report.failed} failed")
        return report
