"""Pytest fixtures for Post Orchestrator tests."""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from typing import Generator, Optional
from unittest.mock import patch

from fastapi.testclient import TestClient

from src.core.clock import Clock
from src.core.errors import CapabilityError
from src.mobile.devices import DeviceRegistry
from src.mobile.notifier import InboxNotifier
from src.mobile.relay import CommandRelay
from src.tasks.capabilities import GenerationCapability, PublishingCapability
from src.tasks.engine import TaskEngine
from src.tasks.models import (
    Account,
    AccountStatus,
    Content,
    GenerationConfig,
    PublishReceipt,
    TaskSpec,
    TaskType,
)
from src.tasks.retry import RetryPolicy
from src.tasks.storage import InMemoryStore


# --- Fake Capabilities ---

class FakeGenerator(GenerationCapability):
    """Generator that fails a fixed number of times before succeeding."""

    def __init__(self, fail_times: int = 0, delay: float = 0.0, retryable: bool = True):
        self.fail_times = fail_times
        self.delay = delay
        self.retryable = retryable
        self.calls = 0

    async def generate(self, config: GenerationConfig) -> Content:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.fail_times:
            raise CapabilityError(f"generation failed (call {self.calls})",
                                  retryable=self.retryable)
        return Content(title=config.theme or "untitled", text=f"About {config.theme}")


class FakePublisher(PublishingCapability):
    """Publisher that records call times and can fail."""

    def __init__(self, fail_times: int = 0, always_fail: bool = False, delay: float = 0.0):
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.delay = delay
        self.calls = 0
        self.called_at: list[datetime] = []

    async def publish(self, content: Content, account: Account) -> PublishReceipt:
        self.calls += 1
        self.called_at.append(datetime.now(timezone.utc))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_fail or self.calls <= self.fail_times:
            raise CapabilityError("platform rejected the post")
        return PublishReceipt(
            post_id=f"post-{self.calls}",
            post_url=f"https://example.com/p/{self.calls}",
        )


class ManualClock(Clock):
    """Clock whose wall time only moves when a test says so."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.current.timestamp()

    async def after(self, seconds: float) -> None:
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


# --- Helpers ---

async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll an async predicate until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def generate_spec(theme: str = "美食", **kwargs) -> TaskSpec:
    """Spec for a generate-only task."""
    return TaskSpec(
        type=TaskType.GENERATE,
        generation_config=GenerationConfig(theme=theme),
        **kwargs,
    )


# --- Component Fixtures ---

@pytest.fixture
def store() -> InMemoryStore:
    """Create an empty in-memory store."""
    return InMemoryStore()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Retry policy with millisecond backoff."""
    return RetryPolicy(base_delay=0.01, max_delay=0.05)


@pytest.fixture
async def account(store) -> Account:
    """An active publishing account."""
    return await store.create_account(Account(platform="xiaohongshu", nickname="tester"))


@pytest.fixture
async def inactive_account(store) -> Account:
    return await store.create_account(
        Account(platform="xiaohongshu", status=AccountStatus.INACTIVE)
    )


@pytest.fixture
def make_engine(store, generator, publisher, fast_retry):
    """Factory fixture for engines sharing the test store and fakes."""
    def _make(**overrides) -> TaskEngine:
        kwargs = {
            "store": store,
            "generator": generator,
            "publisher": publisher,
            "retry_policy": fast_retry,
            "concurrency": 2,
            "generation_timeout": 1.0,
            "publish_timeout": 1.0,
        }
        kwargs.update(overrides)
        return TaskEngine(
            kwargs.pop("store"),
            kwargs.pop("generator"),
            kwargs.pop("publisher"),
            **kwargs,
        )
    return _make


@pytest.fixture
async def engine(make_engine):
    """A started engine, stopped after the test."""
    task_engine = make_engine()
    await task_engine.start()
    yield task_engine
    await task_engine.stop()


@pytest.fixture
def registry(store) -> DeviceRegistry:
    return DeviceRegistry(store)


@pytest.fixture
def notifier() -> InboxNotifier:
    return InboxNotifier()


@pytest.fixture
def relay(engine, registry, notifier) -> CommandRelay:
    return CommandRelay(engine, registry, notifier)


# --- Client Fixtures ---

@pytest.fixture
def disable_rate_limiting():
    """Disable rate limiting for tests."""
    from src.api.server import limiter

    with patch.object(limiter, "enabled", False):
        yield


@pytest.fixture
def test_client(
    store, generator, publisher, fast_retry, disable_rate_limiting
) -> Generator[TestClient, None, None]:
    """Create a test client whose services use the in-memory store and fakes."""
    from src.api import server

    task_engine = TaskEngine(
        store,
        generator,
        publisher,
        retry_policy=fast_retry,
        concurrency=2,
        generation_timeout=1.0,
        publish_timeout=1.0,
    )
    device_registry = DeviceRegistry(store)
    command_relay = CommandRelay(task_engine, device_registry, InboxNotifier())

    with patch.object(server, "store", store), \
            patch.object(server, "engine", task_engine), \
            patch.object(server, "registry", device_registry), \
            patch.object(server, "relay", command_relay):
        with TestClient(server.app) as client:
            yield client
