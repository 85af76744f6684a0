"""Core modules for Post Orchestrator."""
from .clock import Clock, SystemClock, utcnow
from .config import Settings, settings
from .errors import (
    CapabilityError,
    ConflictError,
    EngineError,
    InvalidTransitionError,
    NotFoundError,
    OrchestratorError,
    UnknownDeviceError,
    ValidationError,
)

__all__ = [
    "Clock",
    "SystemClock",
    "utcnow",
    "Settings",
    "settings",
    "OrchestratorError",
    "ValidationError",
    "NotFoundError",
    "UnknownDeviceError",
    "ConflictError",
    "InvalidTransitionError",
    "CapabilityError",
    "EngineError",
]
