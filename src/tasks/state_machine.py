"""
State machine for a single task.

A machine owns one task while it is active. ``advance()`` is its only
mutator and performs exactly one step per call: generate, wait for the
publish schedule, publish, or finalize. The engine guarantees that
``advance()`` is never running twice for the same task.

    pending ──► running ──► completed
       ▲           │   └──► failed
       └───────────┘  (retry / scheduled wait)
    pending | running ──► cancelled
"""
import asyncio
import logging
from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable

from ..core.clock import Clock
from ..core.errors import (
    CapabilityError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .capabilities import GenerationCapability, PublishingCapability
from .models import Task, TaskSpec, TaskStatus, TaskType
from .retry import RetryPolicy
from .storage import Store

logger = logging.getLogger(__name__)

CompletionWatcher = Callable[[Task], Awaitable[None]]

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.PENDING,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    }),
}

# Progress once generation finished and publishing is still ahead
GENERATED_PROGRESS = 50


class Step(str, Enum):
    """What a single advance() did."""
    GENERATE = "generate"
    WAIT = "wait"
    PUBLISH = "publish"
    FINALIZE = "finalize"
    CANCEL = "cancel"


class TaskStateMachine:
    """Drives one task through generation and publishing."""

    def __init__(
        self,
        task: Task,
        *,
        store: Store,
        generator: GenerationCapability,
        publisher: PublishingCapability,
        retry_policy: RetryPolicy,
        clock: Clock,
        generation_timeout: float,
        publish_timeout: float,
    ):
        self.task = task
        self.watchers: list[CompletionWatcher] = []
        self.lock = asyncio.Lock()
        self._store = store
        self._generator = generator
        self._publisher = publisher
        self._retry_policy = retry_policy
        self._clock = clock
        self._generation_timeout = generation_timeout
        self._publish_timeout = publish_timeout
        self._cancel_requested = False

    # --- creation ---

    @staticmethod
    async def validate(spec: TaskSpec, store: Store) -> None:
        """
        Check a task spec before any state is created.

        Raises:
            ValidationError: Malformed spec or inactive account
            NotFoundError: Unknown account or content
        """
        try:
            task_type = TaskType(spec.type)
        except ValueError:
            raise ValidationError(f"Unknown task type: {spec.type}")

        if spec.publish_config.max_retries < 0:
            raise ValidationError("max_retries must be >= 0")

        if task_type.requires_generation and spec.generation_config.is_empty:
            raise ValidationError("generation_config needs a theme or keywords")

        if task_type.requires_publish:
            if not spec.account_id:
                raise ValidationError(f"{task_type.value} tasks need an account_id")
            account = await store.get_account(spec.account_id)
            if not account.is_active:
                raise ValidationError(
                    f"Account {account.id} is {account.status.value}, not active"
                )

        if task_type == TaskType.PUBLISH:
            if not spec.content_id:
                raise ValidationError("publish tasks need a content_id")
            await store.get_content(spec.content_id)

    @classmethod
    async def create(
        cls,
        spec: TaskSpec,
        *,
        store: Store,
        clock: Clock,
        **kwargs,
    ) -> "TaskStateMachine":
        """Validate a spec, persist a pending task and wrap it in a machine."""
        await cls.validate(spec, store)

        task_type = TaskType(spec.type)
        now = clock.now()
        task = Task(
            type=task_type,
            title=spec.title or spec.generation_config.theme or task_type.value,
            account_id=spec.account_id,
            content_id=spec.content_id if task_type == TaskType.PUBLISH else None,
            generation_config=spec.generation_config,
            publish_config=spec.publish_config,
            origin_device_id=spec.origin_device_id,
            created_at=now,
            updated_at=now,
            ready_at=now,
        )
        task = await store.create_task(task)
        return cls(task, store=store, clock=clock, **kwargs)

    # --- public contract ---

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> bool:
        """
        Request cancellation at the next step boundary.

        Returns:
            False if the task already reached a terminal state
        """
        if self.task.is_terminal:
            return False
        self._cancel_requested = True
        return True

    def snapshot(self) -> Task:
        """Detached copy of the current task."""
        return Task.from_dict(self.task.to_dict())

    def rebase(self, task: Task) -> None:
        """Replace in-memory state with a freshly loaded record."""
        self.task = task

    async def advance(self) -> Step:
        """Perform exactly one step and return which one."""
        if self.task.is_terminal:
            raise InvalidTransitionError(
                f"Task {self.task.id} is already {self.task.status.value}"
            )

        if self._cancel_requested:
            self._finish(TaskStatus.CANCELLED)
            return Step.CANCEL

        task = self.task
        if task.type.requires_generation and task.content_id is None:
            await self._generate()
            return Step.GENERATE

        if task.type.requires_publish:
            if self._wait_for_schedule():
                return Step.WAIT
            await self._publish()
            return Step.PUBLISH

        self._finish(TaskStatus.COMPLETED)
        return Step.FINALIZE

    # --- steps ---

    async def _generate(self) -> None:
        task = self.task
        self._begin()

        content = None
        try:
            content = await asyncio.wait_for(
                self._generator.generate(task.generation_config),
                timeout=self._generation_timeout,
            )
            error = None
        except asyncio.TimeoutError:
            error = CapabilityError(
                f"Generation timed out after {self._generation_timeout}s"
            )
        except CapabilityError as e:
            error = e
        except Exception as e:
            error = CapabilityError(f"Generation failed: {e}")

        if self._cancel_requested:
            logger.info(f"Task {task.id} cancelled; discarding generation result")
            self._finish(TaskStatus.CANCELLED)
            return

        if error is not None:
            self._handle_failure(error, "generation")
            return

        stored = await self._store.create_content(content)
        task.content_id = stored.id
        logger.info(f"Task {task.id} generated content {stored.id}")

        if task.type == TaskType.GENERATE:
            self._finish(TaskStatus.COMPLETED)
        else:
            task.progress = GENERATED_PROGRESS
            task.ready_at = self._clock.now()
            task.touch(self._clock.now())

    def _wait_for_schedule(self) -> bool:
        """Hold the task in pending until its publish time. True if waiting."""
        task = self.task
        schedule_time = task.publish_config.schedule_time
        now = self._clock.now()
        if schedule_time is None or now >= schedule_time:
            return False

        if task.status == TaskStatus.RUNNING:
            self._transition(TaskStatus.PENDING)
        task.ready_at = schedule_time
        task.touch(now)
        logger.info(f"Task {task.id} waiting to publish at {schedule_time.isoformat()}")
        return True

    async def _publish(self) -> None:
        task = self.task
        self._begin()

        try:
            content = await self._store.get_content(task.content_id)
            account = await self._store.get_account(task.account_id)
        except NotFoundError as e:
            self._fail(str(e))
            return

        if not account.is_active:
            self._fail(f"Account {account.id} is {account.status.value}, not active")
            return

        receipt = None
        try:
            receipt = await asyncio.wait_for(
                self._publisher.publish(content, account),
                timeout=self._publish_timeout,
            )
            error = None
        except asyncio.TimeoutError:
            error = CapabilityError(f"Publish timed out after {self._publish_timeout}s")
        except CapabilityError as e:
            error = e
        except Exception as e:
            error = CapabilityError(f"Publish failed: {e}")

        if self._cancel_requested:
            logger.info(f"Task {task.id} cancelled; discarding publish result")
            self._finish(TaskStatus.CANCELLED)
            return

        if error is not None:
            self._handle_failure(error, "publish")
            return

        task.publish_post_id = receipt.post_id
        task.publish_url = receipt.post_url
        self._finish(TaskStatus.COMPLETED)

    # --- transitions ---

    def _transition(self, status: TaskStatus) -> None:
        current = self.task.status
        if status not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(
                f"Task {self.task.id}: {current.value} -> {status.value} not allowed"
            )
        self.task.status = status
        self.task.touch(self._clock.now())

    def _begin(self) -> None:
        if self.task.status == TaskStatus.PENDING:
            self._transition(TaskStatus.RUNNING)
        if self.task.started_at is None:
            self.task.started_at = self._clock.now()

    def _handle_failure(self, error: CapabilityError, step: str) -> None:
        task = self.task
        task.last_error = str(error)
        decision = self._retry_policy.decide(task, error)

        if not decision.should_retry:
            logger.warning(f"Task {task.id} {step} failed: {decision.reason}")
            self._fail(str(error))
            return

        task.attempt += 1
        self._transition(TaskStatus.PENDING)
        task.ready_at = self._clock.now() + timedelta(seconds=decision.delay_seconds)
        logger.warning(
            f"Task {task.id} {step} failed: {error}; retry "
            f"{task.attempt}/{task.publish_config.max_retries} "
            f"in {decision.delay_seconds:.2f}s"
        )

    def _fail(self, message: str) -> None:
        self.task.error_message = message
        self._finish(TaskStatus.FAILED)

    def _finish(self, status: TaskStatus) -> None:
        task = self.task
        self._transition(status)
        now = self._clock.now()
        task.completed_at = now
        task.ready_at = None
        if status == TaskStatus.COMPLETED:
            task.progress = 100
            task.error_message = None
        logger.info(f"Task {task.id} {status.value}")
