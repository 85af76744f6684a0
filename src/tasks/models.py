"""
Records owned by the storage capability: tasks, content, accounts, devices.

Every record round-trips through ``to_dict``/``from_dict`` so storage
adapters can keep them as JSON documents.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from ..core.clock import utcnow


def new_id() -> str:
    """Opaque unique identifier."""
    return uuid4().hex


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class TaskType(str, Enum):
    """What a task does."""
    GENERATE = "generate"
    PUBLISH = "publish"
    GENERATE_AND_PUBLISH = "generate_and_publish"

    @property
    def requires_generation(self) -> bool:
        return self in (TaskType.GENERATE, TaskType.GENERATE_AND_PUBLISH)

    @property
    def requires_publish(self) -> bool:
        return self in (TaskType.PUBLISH, TaskType.GENERATE_AND_PUBLISH)


class ContentStyle(str, Enum):
    """Writing styles the generator understands."""
    FORMAL = "formal"
    CASUAL = "casual"
    PROFESSIONAL = "professional"
    CREATIVE = "creative"


@dataclass
class GenerationConfig:
    """High-level description of the post to generate."""
    theme: str = ""
    keywords: list[str] = field(default_factory=list)
    target_audience: str = ""
    style: ContentStyle = ContentStyle.CASUAL
    word_count: int = 500
    platform: str = "xiaohongshu"

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to generate from."""
        return not self.theme.strip() and not any(k.strip() for k in self.keywords)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "theme": self.theme,
            "keywords": list(self.keywords),
            "target_audience": self.target_audience,
            "style": self.style.value,
            "word_count": self.word_count,
            "platform": self.platform,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GenerationConfig":
        """Create from dictionary."""
        data = data or {}
        return cls(
            theme=data.get("theme", ""),
            keywords=list(data.get("keywords", [])),
            target_audience=data.get("target_audience", ""),
            style=ContentStyle(data.get("style", ContentStyle.CASUAL.value)),
            word_count=int(data.get("word_count", 500)),
            platform=data.get("platform", "xiaohongshu"),
        )


@dataclass
class PublishConfig:
    """When and how persistently to publish."""
    schedule_time: Optional[datetime] = None
    auto_retry: bool = True
    max_retries: int = 3
    notify_on_complete: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "schedule_time": _iso(self.schedule_time),
            "auto_retry": self.auto_retry,
            "max_retries": self.max_retries,
            "notify_on_complete": self.notify_on_complete,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PublishConfig":
        """Create from dictionary."""
        data = data or {}
        return cls(
            schedule_time=_parse(data.get("schedule_time")),
            auto_retry=bool(data.get("auto_retry", True)),
            max_retries=int(data.get("max_retries", 3)),
            notify_on_complete=bool(data.get("notify_on_complete", False)),
        )


@dataclass
class TaskSpec:
    """Everything a caller supplies to submit a task."""
    type: TaskType
    generation_config: GenerationConfig = field(default_factory=GenerationConfig)
    publish_config: PublishConfig = field(default_factory=PublishConfig)
    account_id: Optional[str] = None
    content_id: Optional[str] = None
    title: str = ""
    origin_device_id: Optional[str] = None


@dataclass
class Task:
    """A unit of generate/publish work with its own lifecycle."""
    type: TaskType
    id: str = field(default_factory=new_id)
    status: TaskStatus = TaskStatus.PENDING
    title: str = ""
    account_id: Optional[str] = None
    content_id: Optional[str] = None
    generation_config: GenerationConfig = field(default_factory=GenerationConfig)
    publish_config: PublishConfig = field(default_factory=PublishConfig)
    attempt: int = 0
    progress: int = 0
    error_message: Optional[str] = None
    last_error: Optional[str] = None
    publish_post_id: Optional[str] = None
    publish_url: Optional[str] = None
    origin_device_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    ready_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def touch(self, now: datetime) -> None:
        """Advance updated_at, never backwards."""
        if now > self.updated_at:
            self.updated_at = now

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "title": self.title,
            "account_id": self.account_id,
            "content_id": self.content_id,
            "generation_config": self.generation_config.to_dict(),
            "publish_config": self.publish_config.to_dict(),
            "attempt": self.attempt,
            "progress": self.progress,
            "error_message": self.error_message,
            "last_error": self.last_error,
            "publish_post_id": self.publish_post_id,
            "publish_url": self.publish_url,
            "origin_device_id": self.origin_device_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "ready_at": _iso(self.ready_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            type=TaskType(data["type"]),
            status=TaskStatus(data["status"]),
            title=data.get("title", ""),
            account_id=data.get("account_id"),
            content_id=data.get("content_id"),
            generation_config=GenerationConfig.from_dict(data.get("generation_config")),
            publish_config=PublishConfig.from_dict(data.get("publish_config")),
            attempt=data.get("attempt", 0),
            progress=data.get("progress", 0),
            error_message=data.get("error_message"),
            last_error=data.get("last_error"),
            publish_post_id=data.get("publish_post_id"),
            publish_url=data.get("publish_url"),
            origin_device_id=data.get("origin_device_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            ready_at=_parse(data.get("ready_at")),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            version=data.get("version", 0),
        )


@dataclass
class Content:
    """Generated post. Immutable once stored."""
    title: str
    text: str
    id: str = field(default_factory=new_id)
    images: list[str] = field(default_factory=list)
    videos: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "text": self.text,
            "images": list(self.images),
            "videos": list(self.videos),
            "tags": list(self.tags),
            "created_at": self.created_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Content":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            text=data.get("text", ""),
            images=list(data.get("images", [])),
            videos=list(data.get("videos", [])),
            tags=list(data.get("tags", [])),
            created_at=datetime.fromisoformat(data["created_at"]),
            version=data.get("version", 0),
        )


class AccountStatus(str, Enum):
    """Publishing account state."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


@dataclass
class Account:
    """Publish target. The engine only reads it."""
    platform: str
    id: str = field(default_factory=new_id)
    status: AccountStatus = AccountStatus.ACTIVE
    nickname: str = ""
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "platform": self.platform,
            "status": self.status.value,
            "nickname": self.nickname,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Account":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            platform=data["platform"],
            status=AccountStatus(data.get("status", AccountStatus.ACTIVE.value)),
            nickname=data.get("nickname", ""),
            version=data.get("version", 0),
        )


@dataclass
class PublishReceipt:
    """Proof that a platform accepted a post."""
    post_id: str
    post_url: Optional[str] = None
    published_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "post_id": self.post_id,
            "post_url": self.post_url,
            "published_at": self.published_at.isoformat(),
        }


@dataclass
class Device:
    """A registered mobile device."""
    device_id: str
    platform: str
    registered_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    push_channel: str = ""
    device_name: str = ""
    app_version: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        if not self.push_channel:
            self.push_channel = self.device_id

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "device_id": self.device_id,
            "platform": self.platform,
            "registered_at": self.registered_at.isoformat(),
            "last_seen_at": self.last_seen_at.isoformat(),
            "push_channel": self.push_channel,
            "device_name": self.device_name,
            "app_version": self.app_version,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Device":
        """Create from dictionary."""
        return cls(
            device_id=data["device_id"],
            platform=data["platform"],
            registered_at=datetime.fromisoformat(data["registered_at"]),
            last_seen_at=datetime.fromisoformat(data["last_seen_at"]),
            push_channel=data.get("push_channel", ""),
            device_name=data.get("device_name", ""),
            app_version=data.get("app_version"),
            version=data.get("version", 0),
        )
