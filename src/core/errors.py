"""
Error taxonomy shared by the engine, the relay and the HTTP layer.

Each error carries the HTTP status the API layer maps it to.
"""
from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        """Convert to an error payload."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "code": self.status_code,
        }


class ValidationError(OrchestratorError):
    """Task spec or command rejected before any state was created."""

    status_code = 400


class NotFoundError(OrchestratorError):
    """Unknown task, content, account or device."""

    status_code = 404


class UnknownDeviceError(NotFoundError):
    """Command issued by a device that never registered."""

    def __init__(self, device_id: str):
        super().__init__(f"Unknown device: {device_id}")
        self.device_id = device_id


class ConflictError(OrchestratorError):
    """Concurrent mutation detected by storage."""

    status_code = 409


class InvalidTransitionError(OrchestratorError):
    """Task state machine asked for a transition it does not allow."""

    status_code = 409


class CapabilityError(OrchestratorError):
    """Generation, publishing or notification capability failed."""

    status_code = 502

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class EngineError(OrchestratorError):
    """Fatal engine-level failure; the task needs manual recovery."""

    status_code = 500
