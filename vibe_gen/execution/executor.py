"""
Bounded-concurrency task runner used for variant generation, wireframing
and component extraction.

Tasks are taken from a FIFO queue by a fixed pool of workers. Each task is
raced against a per-task timeout, and a failing task never affects its
siblings: the batch result carries every success and every error.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from vibe_gen.errors import TaskTimeoutError


log = logging.getLogger(__name__)


class TaskEventKind(str, Enum):
    START = "start"
    STEP_CHANGE = "step_change"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class TaskEvent:
    """Lifecycle event of one task."""
    kind: TaskEventKind
    task_id: str
    index: int
    step: Optional[str] = None
    error: Optional[BaseException] = None


@dataclass
class BatchProgress:
    """Aggregate progress reported after every task event."""
    total: int
    completed: int
    failed: int
    in_flight: int
    elapsed_ms: float
    eta_ms: float
    percent: float
    event: TaskEvent

    @property
    def finished(self) -> int:
        return self.completed + self.failed


StepReporter = Callable[[str], None]


@dataclass
class TaskSpec:
    """A unit of work. ``run`` receives a callback for reporting step changes."""
    task_id: str
    run: Callable[[StepReporter], Awaitable[Any]]


@dataclass
class BatchResult:
    """Per-task outcomes, in submission order."""
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, BaseException] = field(default_factory=dict)
    elapsed_ms: float = 0.0

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


ProgressCallback = Callable[[BatchProgress], None]


def estimate_remaining_ms(
    elapsed_ms: float,
    finished: int,
    remaining: int,
    concurrency: int,
    default_estimate_ms: float,
) -> float:
    """
    Estimate time left for a batch.

    Args:
        elapsed_ms: Time since the batch started.
        finished: Tasks that completed or failed so far.
        remaining: Tasks not yet finished.
        concurrency: Worker count.
        default_estimate_ms: Per-task estimate used before anything finished.

    Returns:
        Estimated milliseconds until the batch drains.
    """
    average = elapsed_ms / finished if finished > 0 else default_estimate_ms
    return average * remaining / max(concurrency, 1)


class ConcurrentTaskExecutor:
    """Runs tasks with at most ``concurrency`` in flight."""

    def __init__(
        self,
        concurrency: int = 3,
        per_task_timeout: Optional[float] = 120.0,
        default_estimate: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the executor.

        Args:
            concurrency: Maximum number of tasks in flight.
            per_task_timeout: Seconds each task may take (None disables).
            default_estimate: Per-task seconds assumed for ETA before any task finishes.
            clock: Monotonic clock in seconds.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.per_task_timeout = per_task_timeout
        self.default_estimate = default_estimate
        self.clock = clock

    async def run(
        self,
        tasks: List[TaskSpec],
        on_progress: Optional[ProgressCallback] = None,
        deadline: Optional[float] = None,
    ) -> BatchResult:
        """
        Run all tasks and wait for the queue to drain.

        Args:
            tasks: Tasks in FIFO order.
            on_progress: Called after every task event.
            deadline: Optional seconds for the whole batch. Tasks still queued
                or running when it passes are recorded as timed out.

        Returns:
            BatchResult with results and errors keyed by task id.
        """
        result = BatchResult()
        if not tasks:
            return result

        queue: Deque[Tuple[int, TaskSpec]] = deque(enumerate(tasks))
        worker_count = min(self.concurrency, len(tasks))
        started_at = self.clock()
        in_flight = 0
        outcomes: Dict[str, Tuple[bool, Any]] = {}

        def emit(event: TaskEvent):
            if on_progress is None:
                return
            elapsed_ms = (self.clock() - started_at) * 1000
            completed = sum(1 for ok, _ in outcomes.values() if ok)
            failed = len(outcomes) - completed
            finished = len(outcomes)
            on_progress(BatchProgress(
                total=len(tasks),
                completed=completed,
                failed=failed,
                in_flight=in_flight,
                elapsed_ms=elapsed_ms,
                eta_ms=estimate_remaining_ms(
                    elapsed_ms,
                    finished,
                    len(tasks) - finished,
                    worker_count,
                    self.default_estimate * 1000,
                ),
                percent=100.0 * finished / len(tasks),
                event=event,
            ))

        async def run_one(index: int, task: TaskSpec):
            nonlocal in_flight

            def report_step(step: str):
                emit(TaskEvent(TaskEventKind.STEP_CHANGE, task.task_id, index, step=step))

            in_flight += 1
            emit(TaskEvent(TaskEventKind.START, task.task_id, index))
            try:
                call = task.run(report_step)
                if self.per_task_timeout:
                    value = await asyncio.wait_for(call, self.per_task_timeout)
                else:
                    value = await call
            except asyncio.TimeoutError:
                error = TaskTimeoutError(task.task_id, self.per_task_timeout or 0)
                outcomes[task.task_id] = (False, error)
                in_flight -= 1
                log.warning("Task %s timed out", task.task_id)
                emit(TaskEvent(TaskEventKind.ERROR, task.task_id, index, error=error))
            except Exception as e:
                outcomes[task.task_id] = (False, e)
                in_flight -= 1
                log.warning("Task %s failed: %s", task.task_id, e)
                emit(TaskEvent(TaskEventKind.ERROR, task.task_id, index, error=e))
            else:
                outcomes[task.task_id] = (True, value)
                in_flight -= 1
                emit(TaskEvent(TaskEventKind.COMPLETE, task.task_id, index))

        async def worker():
            while queue:
                index, task = queue.popleft()
                await run_one(index, task)

        workers = asyncio.gather(*(worker() for _ in range(worker_count)))
        try:
            if deadline:
                await asyncio.wait_for(workers, deadline)
            else:
                await workers
        except asyncio.TimeoutError:
            log.warning("Batch deadline of %.0fs passed with %d tasks unfinished", deadline, len(tasks) - len(outcomes))

        for task in tasks:
            ok, value = outcomes.get(task.task_id, (False, None))
            if task.task_id not in outcomes:
                result.errors[task.task_id] = TaskTimeoutError(task.task_id, deadline or 0)
            elif ok:
                result.results[task.task_id] = value
            else:
                result.errors[task.task_id] = value
        result.elapsed_ms = (self.clock() - started_at) * 1000
        return result
