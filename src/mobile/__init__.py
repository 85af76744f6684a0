"""Mobile devices: registry, notification capability and command relay."""
from .devices import DeviceRegistry
from .notifier import HttpPushNotifier, InboxNotifier, Notifier, PushMessage
from .relay import Command, CommandAck, CommandRelay, CommandType

__all__ = [
    "DeviceRegistry",
    "Notifier",
    "InboxNotifier",
    "HttpPushNotifier",
    "PushMessage",
    "Command",
    "CommandAck",
    "CommandRelay",
    "CommandType",
]
