"""Tests for the mobile command relay."""
import asyncio
import pytest

from src.core.errors import UnknownDeviceError, ValidationError
from src.mobile.relay import Command, CommandAck, CommandRelay, CommandType
from src.tasks.models import Content, TaskStatus, TaskType

from .conftest import wait_until


def command(command_type: CommandType, device_id: str = "phone-1", **params) -> Command:
    return Command(device_id=device_id, command_type=command_type, params=params)


async def register(relay, device_id: str = "phone-1", **params) -> CommandAck:
    params.setdefault("platform", "ios")
    return await relay.handle(command(CommandType.REGISTER, device_id, **params))


class TestCommandParsing:
    """Request bodies into commands."""

    def test_from_dict_camel_case(self):
        cmd = Command.from_dict({
            "deviceId": "phone-1",
            "commandType": "generate_content",
            "params": {"theme": "美食"},
            "platform": "xiaohongshu",
        })
        assert cmd.device_id == "phone-1"
        assert cmd.command_type == CommandType.GENERATE_CONTENT
        assert cmd.params == {"theme": "美食", "platform": "xiaohongshu"}

    def test_from_dict_snake_case(self):
        cmd = Command.from_dict({"device_id": "phone-1", "command": "cancel"})
        assert cmd.command_type == CommandType.CANCEL
        assert cmd.params == {}

    def test_unknown_command_rejected(self):
        with pytest.raises(ValidationError, match="Unsupported command"):
            Command.from_dict({"deviceId": "phone-1", "commandType": "generate_video"})

    def test_missing_device_rejected(self):
        with pytest.raises(ValidationError):
            Command.from_dict({"commandType": "register"})

    def test_ack_shape(self):
        ack = CommandAck(accepted=True, task_id="t1", status="accepted")
        assert ack.to_dict() == {
            "accepted": True,
            "taskId": "t1",
            "status": "accepted",
            "errorMessage": None,
            "data": {},
        }


class TestRegister:

    async def test_register_returns_device(self, relay):
        ack = await register(relay, deviceName="Pixel", appVersion="1.2.0")

        assert ack.accepted
        assert ack.status == "registered"
        assert ack.data["device_id"] == "phone-1"
        assert ack.data["device_name"] == "Pixel"
        assert ack.data["app_version"] == "1.2.0"

    async def test_register_without_platform_rejected(self, relay):
        ack = await relay.handle(command(CommandType.REGISTER))
        assert not ack.accepted
        assert "platform" in ack.error_message


class TestTaskCommands:
    """generate_content and publish."""

    async def test_unknown_device_creates_no_task(self, relay, store):
        ack = await relay.handle(
            command(CommandType.GENERATE_CONTENT, "unregistered-1", theme="美食")
        )

        assert not ack.accepted
        assert ack.task_id is None
        assert "Unknown device" in ack.error_message
        assert await store.list_tasks() == []

    async def test_generate_content_is_accepted_immediately(self, relay, engine):
        await register(relay)
        ack = await relay.handle(
            command(CommandType.GENERATE_CONTENT, theme="美食", keywords="火锅, 成都")
        )

        assert ack.accepted
        assert ack.status == "accepted"

        task = await engine.get_status(ack.task_id)
        assert task.type == TaskType.GENERATE
        assert task.origin_device_id == "phone-1"
        assert task.generation_config.keywords == ["火锅", "成都"]

    async def test_result_is_pushed_to_device(self, relay, engine, notifier):
        await register(relay, pushChannel="apns:abc")
        ack = await relay.handle(command(CommandType.GENERATE_CONTENT, theme="美食"))
        await engine.wait_for(ack.task_id, timeout=2)

        async def pushed():
            return bool(notifier.history("apns:abc"))

        await wait_until(pushed)
        payload = notifier.history("apns:abc")[0].payload
        assert payload["type"] == "task_completed"
        assert payload["taskId"] == ack.task_id
        assert payload["status"] == "completed"
        assert payload["progress"] == 100
        assert payload["contentId"] is not None
        assert payload["errorMessage"] is None

    async def test_no_push_when_notify_disabled(self, relay, engine, notifier):
        await register(relay)
        ack = await relay.handle(
            command(CommandType.GENERATE_CONTENT, theme="美食", notifyOnComplete=False)
        )
        await engine.wait_for(ack.task_id, timeout=2)
        await asyncio.sleep(0.05)

        assert notifier.history("phone-1") == []

    async def test_generate_with_auto_publish(self, relay, engine, account, publisher):
        await register(relay)
        ack = await relay.handle(command(
            CommandType.GENERATE_CONTENT,
            theme="美食",
            accountId=account.id,
            autoPublish=True,
        ))

        task = await engine.wait_for(ack.task_id, timeout=2)
        assert task.type == TaskType.GENERATE_AND_PUBLISH
        assert task.status == TaskStatus.COMPLETED
        assert publisher.calls == 1

    async def test_publish_existing_content(self, relay, engine, store, account):
        await register(relay)
        content = await store.create_content(Content(title="t", text="body"))
        ack = await relay.handle(
            command(CommandType.PUBLISH, contentId=content.id, accountId=account.id)
        )

        task = await engine.wait_for(ack.task_id, timeout=2)
        assert task.type == TaskType.PUBLISH
        assert task.status == TaskStatus.COMPLETED

    async def test_publish_with_inactive_account_rejected(self, relay, inactive_account):
        await register(relay)
        ack = await relay.handle(
            command(CommandType.PUBLISH, theme="美食", accountId=inactive_account.id)
        )
        assert not ack.accepted
        assert "not active" in ack.error_message

    async def test_bad_params_rejected(self, relay):
        await register(relay)
        ack = await relay.handle(
            command(CommandType.GENERATE_CONTENT, theme="美食", style="shouty")
        )
        assert not ack.accepted
        assert "style" in ack.error_message

        ack = await relay.handle(
            command(CommandType.GENERATE_CONTENT, theme="美食", scheduleTime="tomorrow")
        )
        assert not ack.accepted

    async def test_command_refreshes_last_seen(self, relay, registry):
        first = (await register(relay)).data["last_seen_at"]
        await asyncio.sleep(0.01)
        await relay.handle(command(CommandType.GENERATE_CONTENT, theme="美食"))

        device = await registry.lookup("phone-1")
        assert device.last_seen_at.isoformat() > first


class TestCancelAndStatus:
    """Commands about previously issued tasks."""

    async def test_cancel_own_task(self, relay, engine, account, publisher):
        await register(relay)
        ack = await relay.handle(command(
            CommandType.PUBLISH,
            theme="美食",
            accountId=account.id,
            scheduleTime="2999-01-01T00:00:00Z",
        ))

        cancel = await relay.handle(command(CommandType.CANCEL, taskId=ack.task_id))
        assert cancel.accepted

        task = await engine.wait_for(ack.task_id, timeout=2)
        assert task.status == TaskStatus.CANCELLED
        assert publisher.calls == 0

    async def test_cannot_cancel_other_devices_task(self, relay):
        await register(relay, "phone-1")
        await register(relay, "phone-2")
        ack = await relay.handle(command(CommandType.GENERATE_CONTENT, "phone-1", theme="x"))

        cancel = await relay.handle(
            command(CommandType.CANCEL, "phone-2", taskId=ack.task_id)
        )
        assert not cancel.accepted
        assert "not found" in cancel.error_message

    async def test_cancel_requires_task_id(self, relay):
        await register(relay)
        ack = await relay.handle(command(CommandType.CANCEL))
        assert not ack.accepted
        assert "taskId" in ack.error_message

    async def test_get_status(self, relay, engine):
        await register(relay)
        ack = await relay.handle(command(CommandType.GENERATE_CONTENT, theme="美食"))
        await engine.wait_for(ack.task_id, timeout=2)

        status = await relay.handle(command(CommandType.GET_STATUS, taskId=ack.task_id))
        assert status.accepted
        assert status.status == "completed"
        assert status.data["id"] == ack.task_id

    async def test_device_status(self, relay, engine):
        await register(relay)
        ack = await relay.handle(command(CommandType.GENERATE_CONTENT, theme="美食"))
        await engine.wait_for(ack.task_id, timeout=2)

        status = await relay.device_status("phone-1")
        assert status["device"]["device_id"] == "phone-1"
        assert status["is_online"]
        assert status["completed_tasks"] == 1
        assert status["active_tasks"] == 0


class TestBatchGenerate:
    """One generate task per theme."""

    async def test_batch_submits_one_task_per_theme(self, relay, engine, generator):
        await register(relay)
        ack = await relay.handle(command(
            CommandType.BATCH_GENERATE, themes=["美食", "旅行", "咖啡"], keywords=["周末"]
        ))

        assert ack.accepted
        assert ack.status == "accepted"
        task_ids = ack.data["taskIds"]
        assert len(task_ids) == 3

        themes = []
        for task_id in task_ids:
            task = await engine.wait_for(task_id, timeout=2)
            assert task.type == TaskType.GENERATE
            assert task.status == TaskStatus.COMPLETED
            assert task.origin_device_id == "phone-1"
            assert task.generation_config.keywords == ["周末"]
            themes.append(task.generation_config.theme)
        assert sorted(themes) == sorted(["美食", "旅行", "咖啡"])

        status = await relay.handle(command(CommandType.GET_STATUS, taskId=task_ids[1]))
        assert status.accepted

    @pytest.mark.parametrize("themes", [None, [], "", [" "]])
    async def test_empty_themes_rejected(self, relay, store, themes):
        await register(relay)
        ack = await relay.handle(command(CommandType.BATCH_GENERATE, themes=themes))

        assert not ack.accepted
        assert "themes" in ack.error_message
        assert await store.list_tasks() == []

    async def test_bad_param_rejects_whole_batch(self, relay, store):
        await register(relay)
        ack = await relay.handle(
            command(CommandType.BATCH_GENERATE, themes=["a", "b"], style="shouty")
        )
        assert not ack.accepted
        assert await store.list_tasks() == []

    async def test_unknown_device_rejected(self, relay):
        ack = await relay.handle(
            command(CommandType.BATCH_GENERATE, "ghost", themes=["美食"])
        )
        assert not ack.accepted
        assert "Unknown device" in ack.error_message


class TestFlags:
    """Boolean params sent as strings."""

    async def test_string_false_disables_notification(self, relay, engine, notifier):
        await register(relay)
        ack = await relay.handle(command(
            CommandType.GENERATE_CONTENT,
            theme="美食",
            notifyOnComplete="false",
            autoRetry="false",
        ))
        task = await engine.wait_for(ack.task_id, timeout=2)
        await asyncio.sleep(0.05)

        assert task.publish_config.notify_on_complete is False
        assert task.publish_config.auto_retry is False
        assert notifier.history("phone-1") == []

    async def test_string_false_auto_publish_only_generates(self, relay, engine, account):
        await register(relay)
        ack = await relay.handle(command(
            CommandType.GENERATE_CONTENT,
            theme="美食",
            accountId=account.id,
            autoPublish="false",
        ))
        task = await engine.get_status(ack.task_id)
        assert task.type == TaskType.GENERATE

    async def test_string_true_auto_publish(self, relay, engine, account):
        await register(relay)
        ack = await relay.handle(command(
            CommandType.GENERATE_CONTENT,
            theme="美食",
            accountId=account.id,
            autoPublish="True",
        ))
        task = await engine.get_status(ack.task_id)
        assert task.type == TaskType.GENERATE_AND_PUBLISH

    @pytest.mark.parametrize("value", ["maybe", 1, [True]])
    async def test_non_boolean_rejected(self, relay, store, value):
        await register(relay)
        ack = await relay.handle(
            command(CommandType.GENERATE_CONTENT, theme="美食", autoRetry=value)
        )
        assert not ack.accepted
        assert "autoRetry" in ack.error_message
        assert await store.list_tasks() == []


class TestDeviceState:
    """Per-device views come from storage, not relay memory."""

    async def test_rogue_devices_leave_no_state(self, relay, registry):
        for i in range(100):
            ack = await relay.handle(
                command(CommandType.GENERATE_CONTENT, f"rogue-{i}", theme="美食")
            )
            assert not ack.accepted

        assert len(registry._locks) == 0

    async def test_ownership_survives_a_new_relay(self, relay, engine, registry, notifier):
        await register(relay)
        ack = await relay.handle(command(CommandType.GENERATE_CONTENT, theme="美食"))
        await engine.wait_for(ack.task_id, timeout=2)

        fresh = CommandRelay(engine, registry, notifier)
        status = await fresh.handle(command(CommandType.GET_STATUS, taskId=ack.task_id))
        assert status.accepted
        assert (await fresh.device_status("phone-1"))["completed_tasks"] == 1

    async def test_device_status_counts_only_own_tasks(self, relay, engine):
        await register(relay, "phone-1")
        await register(relay, "phone-2")
        mine = await relay.handle(command(CommandType.GENERATE_CONTENT, "phone-1", theme="a"))
        theirs = await relay.handle(command(CommandType.GENERATE_CONTENT, "phone-2", theme="b"))
        await engine.wait_for(mine.task_id, timeout=2)
        await engine.wait_for(theirs.task_id, timeout=2)

        status = await relay.device_status("phone-1")
        assert status["completed_tasks"] == 1
        assert status["active_tasks"] == 0

    async def test_device_status_unknown_device(self, relay):
        with pytest.raises(UnknownDeviceError):
            await relay.device_status("ghost")

    async def test_device_contents(self, relay, engine):
        await register(relay)
        await register(relay, "phone-2")
        ack = await relay.handle(
            command(CommandType.BATCH_GENERATE, themes=["美食", "旅行", "咖啡"])
        )
        for task_id in ack.data["taskIds"]:
            await engine.wait_for(task_id, timeout=2)
        other = await relay.handle(command(CommandType.GENERATE_CONTENT, "phone-2", theme="x"))
        await engine.wait_for(other.task_id, timeout=2)

        result = await relay.device_contents("phone-1")
        assert result["total"] == 3
        assert sorted(c["title"] for c in result["contents"]) == sorted(["美食", "旅行", "咖啡"])

        page = await relay.device_contents("phone-1", page=2, page_size=2)
        assert page["total"] == 3
        assert len(page["contents"]) == 1

    async def test_device_contents_without_tasks(self, relay):
        await register(relay)
        assert await relay.device_contents("phone-1") == {"contents": [], "total": 0}

    async def test_device_contents_validates_paging(self, relay):
        await register(relay)
        with pytest.raises(ValidationError):
            await relay.device_contents("phone-1", page=0)
