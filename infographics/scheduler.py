import logging
import os
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, BrokenExecutor, Executor, Future, ProcessPoolExecutor, wait
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from .generator import run_render_job
from .models import GenerateResult, JobOutcome, ProgressEvent, RenderJob


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]
ExecutorFactory = Callable[[int], Executor]


def logical_cores() -> int:
    return os.cpu_count() or 1


def resolve_parallelism(requested: Optional[int], cores: Optional[int] = None) -> int:
    """
    Number of jobs allowed in flight: half the logical cores by default,
    always clamped to [1, cores].
    """
    cores = cores or logical_cores()
    if requested is None:
        requested = max(1, cores // 2)
    return min(max(requested, 1), cores)


class ProgressCounter:
    """Completed-job counter; increment and read happen as one step."""

    def __init__(self, total: int) -> None:
        self.total = total
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value


class BatchScheduler:
    """
    Runs render jobs on a worker pool with at most `parallelism` in flight.

    A new job is submitted the moment any running one finishes, so a slow
    image never holds back the rest of the queue. Every completion, success or
    failure, bumps the progress counter once and is reported to the observer.
    Failures stay per job: they end up in `errors` and never stop the batch.

    A worker process that dies takes the whole process pool down with it, and
    every job running at that moment comes back broken. The pool is replaced
    and those jobs are retried one at a time on the fresh pool; only a job
    that breaks the pool while running alone is reported as failed.
    """

    def __init__(
        self,
        parallelism: int,
        executor_factory: ExecutorFactory = ProcessPoolExecutor,
        worker: Callable[[RenderJob], JobOutcome] = run_render_job,
    ) -> None:
        self.parallelism = max(1, parallelism)
        self.executor_factory = executor_factory
        self.worker = worker

    def run(
        self,
        jobs: Iterable[RenderJob],
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerateResult:
        queue = list(jobs)
        counter = ProgressCounter(total=len(queue))
        generated: List[str] = []
        errors: List[str] = []

        if not queue:
            return GenerateResult(success=True)

        pending = iter(range(len(queue)))
        suspects: Deque[int] = deque()
        # future -> (index into queue, pool generation it was submitted to)
        in_flight: Dict[Future, Tuple[int, int]] = {}
        isolated: Optional[int] = None
        pool = _RestartablePool(self.executor_factory, self.parallelism)

        def submit(index: int) -> None:
            future = self._submit(pool, queue[index])
            in_flight[future] = (index, pool.generation)

        def admit() -> None:
            nonlocal isolated
            if isolated is not None:
                return
            if suspects:
                # Drain the pool first so the suspect runs with no neighbours.
                if not in_flight:
                    isolated = suspects.popleft()
                    submit(isolated)
                return
            for index in pending:
                submit(index)
                if len(in_flight) >= self.parallelism:
                    return

        try:
            admit()
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    index, generation = in_flight.pop(future)
                    job = queue[index]

                    if _pool_broke(future):
                        pool.restart(generation)
                        if index != isolated:
                            logger.warning(
                                "Worker pool broke while %s was running; retrying it alone",
                                job.source.name,
                            )
                            suspects.append(index)
                            continue
                    if index == isolated:
                        isolated = None

                    outcome = self._outcome(future, job)
                    if outcome.error is None:
                        generated.append(outcome.output_path)
                    else:
                        logger.warning("Job %s failed: %s", job.source.name, outcome.error)
                        errors.append(outcome.error)

                    event = ProgressEvent(
                        current=counter.increment(),
                        total=counter.total,
                        current_file=job.source.name,
                    )
                    self._publish(on_progress, event)
                admit()
        finally:
            pool.shutdown()

        return GenerateResult(
            success=not errors,
            generated_files=generated,
            errors=errors,
        )

    def _submit(self, pool: "_RestartablePool", job: RenderJob) -> Future:
        try:
            return pool.submit(self.worker, job)
        except RuntimeError as exc:
            # The pool refuses work even after a restart; fail this job only.
            future: Future = Future()
            future.set_exception(exc)
            return future

    @staticmethod
    def _outcome(future: Future, job: RenderJob) -> JobOutcome:
        try:
            return future.result()
        except Exception as exc:
            logger.exception("Worker crashed on %s", job.source.name)
            return JobOutcome(name=job.source.name, error=f"Task failed: {job.source.name}: {exc}")

    @staticmethod
    def _publish(on_progress: Optional[ProgressCallback], event: ProgressEvent) -> None:
        if on_progress is None:
            return
        try:
            on_progress(event)
        except Exception:
            logger.exception("Progress callback failed for %s", event.current_file)


class _RestartablePool:
    """Executor holder that swaps in a new executor once the current one breaks."""

    def __init__(self, factory: ExecutorFactory, size: int) -> None:
        self._factory = factory
        self._size = size
        self._executor = factory(size)
        self.generation = 0

    def submit(self, fn: Callable[[RenderJob], JobOutcome], job: RenderJob) -> Future:
        try:
            return self._executor.submit(fn, job)
        except BrokenExecutor:
            self.restart(self.generation)
            return self._executor.submit(fn, job)

    def restart(self, generation: int) -> None:
        # Every job of a broken pool reports the break; replace it only once.
        if generation != self.generation:
            return
        logger.warning("Worker pool broke, starting a new one")
        self._executor.shutdown(wait=False)
        self._executor = self._factory(self._size)
        self.generation += 1

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def _pool_broke(future: Future) -> bool:
    return not future.cancelled() and isinstance(future.exception(), BrokenExecutor)
