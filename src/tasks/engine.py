"""
Task Orchestration Engine.

Runs many task state machines concurrently on one event loop. A driver loop
pops tasks whose ``ready_at`` has passed (ties broken FIFO by creation time)
and hands each to a bounded worker pool; every step is persisted before the
next one for that task may start.

Usage:
    engine = TaskEngine(store, generator, publisher, concurrency=4)
    await engine.start()

    task_id = await engine.submit(TaskSpec(type=TaskType.GENERATE, ...))
    task = await engine.get_status(task_id)
    await engine.cancel_task(task_id)

    await engine.stop()
"""
import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..core.clock import Clock, SystemClock
from ..core.config import settings
from ..core.errors import ConflictError, EngineError
from .capabilities import GenerationCapability, PublishingCapability
from .models import Content, Task, TaskSpec, TaskStatus, TaskType
from .retry import RetryPolicy
from .state_machine import CompletionWatcher, TaskStateMachine
from .storage import Store

logger = logging.getLogger(__name__)


@dataclass(order=True)
class _ReadyEntry:
    """Heap entry: earliest ready_at first, then oldest task, then FIFO."""
    ready_at: datetime
    created_at: datetime
    sequence: int
    task_id: str = field(compare=False)


class TaskEngine:
    """
    Owns all active tasks and drives them to a terminal state.

    Features:
    - Non-blocking submit; status reads come from storage
    - Bounded worker pool shared by all tasks
    - Single writer per task (per-task lock held for the whole step)
    - Scheduled publishing and retry backoff without sleeping in workers
    - Completion watchers invoked after the terminal state is persisted
    - Recovery of unfinished tasks from storage on start
    """

    def __init__(
        self,
        store: Store,
        generator: GenerationCapability,
        publisher: PublishingCapability,
        *,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: Optional[int] = None,
        generation_timeout: Optional[float] = None,
        publish_timeout: Optional[float] = None,
        conflict_retry_limit: Optional[int] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Storage capability for tasks, content and accounts
            generator: Generation capability
            publisher: Publishing capability
            clock: Time source (defaults to SystemClock)
            retry_policy: Retry policy (defaults to configured backoff)
            concurrency: Maximum concurrent steps across all tasks
            generation_timeout: Bound on one generation call, in seconds
            publish_timeout: Bound on one publish call, in seconds
            conflict_retry_limit: Retries of a step whose persist conflicted
        """
        self.concurrency = (
            settings.worker_concurrency if concurrency is None else concurrency
        )
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        if generation_timeout is None:
            generation_timeout = settings.generation_timeout_seconds
        if publish_timeout is None:
            publish_timeout = settings.publish_timeout_seconds
        if generation_timeout <= 0 or publish_timeout <= 0:
            raise ValueError("timeouts must be positive")

        self._store = store
        self._clock = clock or SystemClock()
        self._conflict_retry_limit = (
            settings.conflict_retry_limit
            if conflict_retry_limit is None
            else conflict_retry_limit
        )
        if self._conflict_retry_limit < 0:
            raise ValueError("conflict_retry_limit must not be negative")
        self._machine_kwargs = {
            "store": store,
            "generator": generator,
            "publisher": publisher,
            "retry_policy": retry_policy or RetryPolicy(),
            "clock": self._clock,
            "generation_timeout": generation_timeout,
            "publish_timeout": publish_timeout,
        }

        self._active: dict[str, TaskStateMachine] = {}
        self._ready: list[_ReadyEntry] = []
        self._tokens: dict[str, int] = {}
        self._sequence = itertools.count()
        self._slots = asyncio.Semaphore(self.concurrency)
        self._wakeup = asyncio.Event()
        self._workers: set[asyncio.Task] = set()
        self._driver_task: Optional[asyncio.Task] = None
        self._steps_completed = 0

    # --- lifecycle ---

    @property
    def is_running(self) -> bool:
        return self._driver_task is not None

    async def start(self) -> None:
        """
        Recover unfinished tasks and start the driver loop.

        This should be called once at application startup.
        """
        if self._driver_task:
            return

        await self._recover()
        self._driver_task = asyncio.create_task(self._driver_loop())
        logger.info(f"Task engine started (concurrency={self.concurrency})")

    async def stop(self) -> None:
        """
        Stop the driver loop and abandon in-flight steps.

        Abandoned steps were not persisted; their tasks resume from the last
        persisted state on the next start.
        """
        if self._driver_task:
            self._driver_task.cancel()
            try:
                await self._driver_task
            except asyncio.CancelledError:
                pass
            self._driver_task = None

        workers = list(self._workers)
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

        self._active.clear()
        self._ready.clear()
        self._tokens.clear()
        logger.info("Task engine stopped")

    async def __aenter__(self) -> "TaskEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _recover(self) -> None:
        """Re-adopt non-terminal tasks left in storage."""
        unfinished = await self._store.list_tasks(
            statuses=[TaskStatus.PENDING, TaskStatus.RUNNING]
        )
        for task in unfinished:
            if task.id in self._active:
                continue
            machine = TaskStateMachine(task, **self._machine_kwargs)
            self._active[task.id] = machine
            self._enqueue(machine)

        if unfinished:
            logger.info(f"Recovered {len(unfinished)} unfinished task(s) from storage")

    # --- public API ---

    async def submit(
        self,
        spec: TaskSpec,
        on_complete: Optional[CompletionWatcher] = None,
    ) -> str:
        """
        Create a task and queue it for driving. Never waits on capabilities.

        Args:
            spec: What to generate and/or publish
            on_complete: Awaited with the final task once it is terminal

        Returns:
            Task ID

        Raises:
            ValidationError: If the spec is malformed
            NotFoundError: If the account or content does not exist
        """
        machine = await TaskStateMachine.create(spec, **self._machine_kwargs)
        if on_complete is not None:
            machine.watchers.append(on_complete)

        task = machine.task
        self._active[task.id] = machine
        self._enqueue(machine)

        logger.info(f"Submitted task {task.id} ({task.type.value}): {task.title}")
        return task.id

    def add_completion_watcher(self, task_id: str, watcher: CompletionWatcher) -> bool:
        """
        Register a watcher on an active task.

        Returns:
            False if the task is not active (already terminal or unknown)
        """
        machine = self._active.get(task_id)
        if machine is None:
            return False
        machine.watchers.append(watcher)
        return True

    async def get_status(self, task_id: str) -> Task:
        """
        Get the last persisted state of a task.

        Raises:
            NotFoundError: If the task does not exist
        """
        return await self._store.get_task(task_id)

    async def get_content(self, content_id: str) -> Content:
        """Get stored content produced by a task."""
        return await self._store.get_content(content_id)

    async def wait_for(self, task_id: str, timeout: Optional[float] = None) -> Task:
        """Wait until a task is terminal and return its final state."""
        done: asyncio.Future = asyncio.get_running_loop().create_future()

        async def _resolve(task: Task) -> None:
            if not done.done():
                done.set_result(task)

        if not self.add_completion_watcher(task_id, _resolve):
            return await self.get_status(task_id)
        return await asyncio.wait_for(done, timeout=timeout)

    async def cancel_task(self, task_id: str) -> Task:
        """
        Cancel a task at its next step boundary.

        An idle task is cancelled and persisted before this returns. A task
        whose step is in flight is cancelled when that step returns, and the
        step's result is discarded.

        Returns:
            Current snapshot of the task

        Raises:
            NotFoundError: If the task does not exist
        """
        machine = self._active.get(task_id)
        if machine is None:
            task = await self._store.get_task(task_id)
            if not task.is_terminal:
                logger.warning(f"Task {task_id} is not driven by this engine; not cancelled")
            return task

        machine.cancel()

        if machine.lock.locked():
            logger.info(f"Task {task_id} cancellation deferred until its step returns")
            return machine.snapshot()

        async with machine.lock:
            try:
                await self._advance_and_persist(machine)
            except Exception as e:
                self._abandon(machine, e)
                raise
        await self._after_step(machine)
        return machine.snapshot()

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        task_type: Optional[TaskType] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
        origin_device_id: Optional[str] = None,
    ) -> list[Task]:
        """List persisted tasks, newest first. ``limit=None`` returns all."""
        return await self._store.list_tasks(
            statuses=[status] if status else None,
            task_type=task_type,
            limit=limit,
            offset=offset,
            newest_first=True,
            origin_device_id=origin_device_id,
        )

    async def get_statistics(self) -> dict:
        """
        Get engine statistics.

        Returns:
            Dict with task counts per status, success rate and pool usage
        """
        counts = await self._store.count_tasks_by_status()
        total = sum(counts.values())
        completed = counts.get(TaskStatus.COMPLETED.value, 0)

        return {
            **counts,
            "total": total,
            "success_rate": round(completed / total * 100) if total else 0,
            "active_tasks": len(self._active),
            "in_flight": sum(1 for m in self._active.values() if m.lock.locked()),
            "ready_queue": len(self._ready),
            "steps_completed": self._steps_completed,
            "concurrency": self.concurrency,
        }

    # --- driver ---

    def _enqueue(self, machine: TaskStateMachine) -> None:
        """(Re)schedule a machine; supersedes any earlier heap entry."""
        task = machine.task
        sequence = next(self._sequence)
        self._tokens[task.id] = sequence
        heapq.heappush(
            self._ready,
            _ReadyEntry(
                ready_at=task.ready_at or self._clock.now(),
                created_at=task.created_at,
                sequence=sequence,
                task_id=task.id,
            ),
        )
        self._wakeup.set()

    def _release(self, machine: TaskStateMachine) -> None:
        self._active.pop(machine.task.id, None)
        self._tokens.pop(machine.task.id, None)

    async def _driver_loop(self) -> None:
        """Dispatch ready tasks, then sleep until the next deadline or wakeup."""
        while True:
            self._wakeup.clear()
            await self._dispatch_ready()
            await self._wait(self._next_delay())

    async def _dispatch_ready(self) -> None:
        while self._ready:
            entry = self._ready[0]
            if entry.ready_at > self._clock.now():
                return
            heapq.heappop(self._ready)

            machine = self._active.get(entry.task_id)
            if machine is None or self._tokens.get(entry.task_id) != entry.sequence:
                continue  # stale entry
            if machine.lock.locked():
                continue  # a cancellation step holds it and will finish it

            await self._slots.acquire()
            if self._active.get(entry.task_id) is not machine or machine.lock.locked():
                self._slots.release()
                continue

            # Taken here, released by the worker: no second writer can slip in.
            await machine.lock.acquire()
            worker = asyncio.create_task(self._run_step(machine))
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)

    def _next_delay(self) -> Optional[float]:
        if not self._ready:
            return None
        return (self._ready[0].ready_at - self._clock.now()).total_seconds()

    async def _wait(self, delay: Optional[float]) -> None:
        if delay is not None and delay <= 0:
            return
        if delay is None:
            await self._wakeup.wait()
            return

        timer = asyncio.ensure_future(self._clock.after(delay))
        waker = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait({timer, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            timer.cancel()
            waker.cancel()

    # --- workers ---

    async def _run_step(self, machine: TaskStateMachine) -> None:
        """Advance one task by one step inside a worker slot."""
        try:
            try:
                await self._advance_and_persist(machine)
            finally:
                machine.lock.release()
                self._slots.release()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._abandon(machine, e)
            return

        await self._after_step(machine)

    async def _advance_and_persist(self, machine: TaskStateMachine) -> None:
        """
        Run one advance() and persist the result.

        A storage conflict reloads the task and re-runs the step, up to
        the configured limit.

        Raises:
            EngineError: If every attempt conflicted
        """
        task_id = machine.task.id

        for attempt in range(self._conflict_retry_limit + 1):
            await machine.advance()
            try:
                machine.task = await self._store.update_task(machine.task)
                self._steps_completed += 1
                return
            except ConflictError as e:
                logger.warning(
                    f"Conflict persisting task {task_id} "
                    f"(attempt {attempt + 1}/{self._conflict_retry_limit + 1}): {e}"
                )
                machine.rebase(await self._store.get_task(task_id))
                if machine.task.is_terminal:
                    return

        raise EngineError(
            f"Task {task_id}: step abandoned after "
            f"{self._conflict_retry_limit + 1} conflicting updates"
        )

    def _abandon(self, machine: TaskStateMachine, error: Exception) -> None:
        """Drop a task whose step failed fatally; storage keeps its last good state."""
        logger.error(
            f"Task {machine.task.id} needs manual recovery, left at last "
            f"persisted state: {error}"
        )
        self._release(machine)

    async def _after_step(self, machine: TaskStateMachine) -> None:
        task = machine.task
        if self._active.get(task.id) is not machine:
            return

        if not task.is_terminal:
            self._enqueue(machine)
            return

        self._release(machine)
        logger.info(
            f"Task {task.id} finished: {task.status.value} "
            f"(attempt={task.attempt}, progress={task.progress})"
        )
        await self._notify_watchers(machine)

    async def _notify_watchers(self, machine: TaskStateMachine) -> None:
        snapshot = machine.snapshot()
        for watcher in machine.watchers:
            try:
                await watcher(snapshot)
            except Exception as e:
                logger.error(f"Completion watcher for task {snapshot.id} failed: {e}")
