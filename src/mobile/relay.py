"""
Mobile Command Relay.

Translates short commands from registered devices into engine tasks and
pushes task outcomes back to the issuing device.

Usage:
    relay = CommandRelay(engine, registry, notifier)
    ack = await relay.handle(Command(
        device_id="phone-1",
        command_type=CommandType.GENERATE_CONTENT,
        params={"theme": "美食", "keywords": ["火锅"]},
    ))
    if ack.accepted:
        print(ack.task_id)
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ..core.errors import (
    NotFoundError,
    OrchestratorError,
    UnknownDeviceError,
    ValidationError,
)
from ..tasks.engine import TaskEngine
from ..tasks.models import (
    ContentStyle,
    Device,
    GenerationConfig,
    PublishConfig,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
)
from .devices import DeviceRegistry
from .notifier import Notifier

logger = logging.getLogger(__name__)


class CommandType(str, Enum):
    """Commands a device can send."""
    REGISTER = "register"
    GENERATE_CONTENT = "generate_content"
    BATCH_GENERATE = "batch_generate"
    PUBLISH = "publish"
    CANCEL = "cancel"
    GET_STATUS = "get_status"


# Push payload type per terminal status
RESULT_EVENTS = {
    TaskStatus.COMPLETED: "task_completed",
    TaskStatus.FAILED: "task_failed",
    TaskStatus.CANCELLED: "task_cancelled",
}


@dataclass
class Command:
    """Inbound request from a device. Never persisted."""
    device_id: str
    command_type: CommandType
    params: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Command":
        """
        Create from a request body.

        Accepts ``deviceId``/``device_id`` and ``commandType``/``command``.

        Raises:
            ValidationError: If the device id or command type is missing or unknown
        """
        device_id = data.get("deviceId") or data.get("device_id")
        if not device_id:
            raise ValidationError("deviceId is required")

        raw_type = data.get("commandType") or data.get("command_type") or data.get("command")
        try:
            command_type = CommandType(raw_type)
        except ValueError:
            raise ValidationError(f"Unsupported command: {raw_type}")

        params = dict(data.get("params") or {})
        if data.get("platform") and "platform" not in params:
            params["platform"] = data["platform"]

        return cls(device_id=device_id, command_type=command_type, params=params)


@dataclass
class CommandAck:
    """Immediate answer to a command."""
    accepted: bool
    task_id: Optional[str] = None
    status: Optional[str] = None
    error_message: Optional[str] = None
    data: dict = field(default_factory=dict)

    @classmethod
    def rejected(cls, message: str) -> "CommandAck":
        return cls(accepted=False, error_message=message)

    def to_dict(self) -> dict:
        """Convert to the camelCase shape devices expect."""
        return {
            "accepted": self.accepted,
            "taskId": self.task_id,
            "status": self.status,
            "errorMessage": self.error_message,
            "data": self.data,
        }


def _param(params: dict, camel: str, snake: str, default: Any = None) -> Any:
    if camel in params:
        return params[camel]
    return params.get(snake, default)


_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


def _flag(params: dict, camel: str, snake: str, default: bool) -> bool:
    """Read a boolean param; devices may send booleans or their string forms."""
    value = _param(params, camel, snake, default)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValidationError(f"{camel} must be a boolean, got {value!r}")


def _as_keywords(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(k).strip() for k in value if str(k).strip()]


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid scheduleTime: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CommandRelay:
    """
    Single entry point for device commands.

    Ownership is recorded on each task as ``origin_device_id``, so a device
    can only cancel or query its own tasks, across restarts too.
    """

    def __init__(self, engine: TaskEngine, registry: DeviceRegistry, notifier: Notifier):
        self._engine = engine
        self._registry = registry
        self._notifier = notifier

    async def handle(self, command: Command) -> CommandAck:
        """
        Handle one command.

        Validation and lookup errors become rejected acks; nothing a device
        sends raises out of here except engine-level failures.
        """
        handlers = {
            CommandType.REGISTER: self._handle_register,
            CommandType.GENERATE_CONTENT: self._handle_generate,
            CommandType.BATCH_GENERATE: self._handle_batch_generate,
            CommandType.PUBLISH: self._handle_publish,
            CommandType.CANCEL: self._handle_cancel,
            CommandType.GET_STATUS: self._handle_get_status,
        }

        try:
            return await handlers[command.command_type](command)
        except (ValidationError, NotFoundError) as e:
            logger.info(
                f"Rejected {command.command_type.value} from {command.device_id}: {e.message}"
            )
            return CommandAck.rejected(e.message)

    # --- commands ---

    async def _handle_register(self, command: Command) -> CommandAck:
        params = command.params
        device = await self._registry.register(
            command.device_id,
            params.get("platform", ""),
            device_name=_param(params, "deviceName", "device_name", ""),
            app_version=_param(params, "appVersion", "app_version")
            or params.get("version"),
            push_channel=_param(params, "pushChannel", "push_channel"),
        )
        return CommandAck(accepted=True, status="registered", data=device.to_dict())

    async def _handle_generate(self, command: Command) -> CommandAck:
        await self._require_device(command.device_id)
        params = command.params

        account_id = _param(params, "accountId", "account_id")
        auto_publish = _flag(params, "autoPublish", "auto_publish", False)
        task_type = (
            TaskType.GENERATE_AND_PUBLISH if account_id and auto_publish else TaskType.GENERATE
        )
        return await self._submit(command, self._build_spec(command, task_type))

    async def _handle_batch_generate(self, command: Command) -> CommandAck:
        """One generate task per entry of params.themes."""
        await self._require_device(command.device_id)

        themes = _as_keywords(command.params.get("themes"))
        if not themes:
            raise ValidationError("themes must not be empty")

        # Build every spec first so a bad param rejects the whole batch
        specs = [
            self._build_spec(command, TaskType.GENERATE, theme=theme) for theme in themes
        ]
        task_ids = []
        for spec in specs:
            task_ids.append(await self._submit_spec(command, spec))

        return CommandAck(accepted=True, status="accepted", data={"taskIds": task_ids})

    async def _handle_publish(self, command: Command) -> CommandAck:
        await self._require_device(command.device_id)
        params = command.params

        if _param(params, "contentId", "content_id"):
            task_type = TaskType.PUBLISH
        else:
            task_type = TaskType.GENERATE_AND_PUBLISH
        return await self._submit(command, self._build_spec(command, task_type))

    async def _handle_cancel(self, command: Command) -> CommandAck:
        await self._require_device(command.device_id)
        task_id = await self._require_own_task(command)

        task = await self._engine.cancel_task(task_id)
        logger.info(f"Device {command.device_id} cancelled task {task_id}")
        return CommandAck(accepted=True, task_id=task_id, status=task.status.value)

    async def _handle_get_status(self, command: Command) -> CommandAck:
        await self._require_device(command.device_id)
        task_id = await self._require_own_task(command)

        task = await self._engine.get_status(task_id)
        return CommandAck(
            accepted=True,
            task_id=task_id,
            status=task.status.value,
            data=task.to_dict(),
        )

    # --- helpers ---

    async def _require_device(self, device_id: str) -> None:
        """Reject unknown devices and refresh last_seen_at for known ones."""
        if await self._registry.touch(device_id) is None:
            raise UnknownDeviceError(device_id)

    async def _require_own_task(self, command: Command) -> str:
        """Resolve params.taskId to a task this device issued."""
        task_id = _param(command.params, "taskId", "task_id")
        if not task_id:
            raise ValidationError("taskId is required")

        task = await self._engine.get_status(task_id)
        if task.origin_device_id != command.device_id:
            raise NotFoundError(f"Task not found: {task_id}")
        return task_id

    def _build_spec(
        self,
        command: Command,
        task_type: TaskType,
        theme: Optional[str] = None,
    ) -> TaskSpec:
        params = command.params
        if theme is None:
            theme = str(params.get("theme") or "")

        try:
            style = ContentStyle(params.get("style", ContentStyle.CASUAL.value))
        except ValueError:
            raise ValidationError(f"Unknown style: {params.get('style')}")

        try:
            word_count = int(_param(params, "wordCount", "word_count", 500))
            max_retries = int(_param(params, "maxRetries", "max_retries", 3))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid numeric parameter: {e}")

        return TaskSpec(
            type=task_type,
            generation_config=GenerationConfig(
                theme=theme,
                keywords=_as_keywords(params.get("keywords")),
                target_audience=str(_param(params, "targetAudience", "target_audience", "")),
                style=style,
                word_count=word_count,
                platform=params.get("platform") or "xiaohongshu",
            ),
            publish_config=PublishConfig(
                schedule_time=_as_datetime(_param(params, "scheduleTime", "schedule_time")),
                auto_retry=_flag(params, "autoRetry", "auto_retry", True),
                max_retries=max_retries,
                notify_on_complete=_flag(
                    params, "notifyOnComplete", "notify_on_complete", True
                ),
            ),
            account_id=_param(params, "accountId", "account_id"),
            content_id=_param(params, "contentId", "content_id"),
            title=str(params.get("title") or ""),
            origin_device_id=command.device_id,
        )

    async def _submit(self, command: Command, spec: TaskSpec) -> CommandAck:
        task_id = await self._submit_spec(command, spec)
        return CommandAck(accepted=True, task_id=task_id, status="accepted")

    async def _submit_spec(self, command: Command, spec: TaskSpec) -> str:
        on_complete = None
        if spec.publish_config.notify_on_complete:
            on_complete = self._deliver_result

        task_id = await self._engine.submit(spec, on_complete=on_complete)
        logger.info(
            f"Device {command.device_id} issued {spec.type.value} task {task_id}"
        )
        return task_id

    async def _deliver_result(self, task: Task) -> None:
        """Completion watcher: push the outcome to the issuing device."""
        device = await self._registry.lookup(task.origin_device_id)
        if device is None:
            logger.warning(f"Task {task.id} finished but device {task.origin_device_id} is gone")
            return

        payload = {
            "type": RESULT_EVENTS[task.status],
            "taskId": task.id,
            "status": task.status.value,
            "progress": task.progress,
            "contentId": task.content_id,
            "errorMessage": task.error_message,
        }
        try:
            await self._notifier.push(device.push_channel, payload)
        except OrchestratorError as e:
            logger.error(f"Result push for task {task.id} to {device.device_id} failed: {e}")

    # --- status ---

    async def _known_device(self, device_id: str) -> Device:
        device = await self._registry.lookup(device_id)
        if device is None:
            raise UnknownDeviceError(device_id)
        return device

    async def device_status(self, device_id: str) -> dict:
        """
        Device snapshot with online flag and task counts.

        Raises:
            UnknownDeviceError: If the device never registered
        """
        device = await self._known_device(device_id)
        tasks = await self._engine.list_tasks(origin_device_id=device_id, limit=None)

        return {
            "device": device.to_dict(),
            "is_online": self._registry.is_online(device),
            "active_tasks": sum(1 for t in tasks if not t.is_terminal),
            "completed_tasks": sum(1 for t in tasks if t.status == TaskStatus.COMPLETED),
        }

    async def device_contents(self, device_id: str, page: int = 1, page_size: int = 20) -> dict:
        """
        Content generated by a device's tasks, newest first.

        Returns:
            Dict with the page of ``contents`` and the ``total`` count

        Raises:
            UnknownDeviceError: If the device never registered
            ValidationError: If page or page_size is below 1
        """
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be at least 1")
        await self._known_device(device_id)

        tasks = await self._engine.list_tasks(origin_device_id=device_id, limit=None)
        content_ids = [t.content_id for t in tasks if t.content_id]

        start = (page - 1) * page_size
        contents = []
        for content_id in content_ids[start:start + page_size]:
            try:
                contents.append((await self._engine.get_content(content_id)).to_dict())
            except NotFoundError:
                logger.warning(f"Content {content_id} of device {device_id} is missing")

        return {"contents": contents, "total": len(content_ids)}
