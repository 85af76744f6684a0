"""Task orchestration: models, storage, retry policy, state machine and engine."""
from .models import (
    Account,
    AccountStatus,
    Content,
    ContentStyle,
    Device,
    GenerationConfig,
    PublishConfig,
    PublishReceipt,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
    TERMINAL_STATUSES,
)
from .retry import RetryDecision, RetryPolicy
from .storage import InMemoryStore, SQLiteStore, Store
from .capabilities import GenerationCapability, PublishingCapability
from .state_machine import Step, TaskStateMachine
from .engine import TaskEngine

__all__ = [
    "Account",
    "AccountStatus",
    "Content",
    "ContentStyle",
    "Device",
    "GenerationConfig",
    "PublishConfig",
    "PublishReceipt",
    "Task",
    "TaskSpec",
    "TaskStatus",
    "TaskType",
    "TERMINAL_STATUSES",
    "RetryDecision",
    "RetryPolicy",
    "Store",
    "InMemoryStore",
    "SQLiteStore",
    "GenerationCapability",
    "PublishingCapability",
    "Step",
    "TaskStateMachine",
    "TaskEngine",
]
