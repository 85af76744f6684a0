"""
Capability interfaces the engine consumes.

Implementations live elsewhere (``src.content``) and are injected into the
engine; nothing in ``src.tasks`` depends on a concrete provider.
"""
from abc import ABC, abstractmethod

from .models import Account, Content, GenerationConfig, PublishReceipt


class GenerationCapability(ABC):
    """Produces a Content from a GenerationConfig, or raises CapabilityError."""

    @abstractmethod
    async def generate(self, config: GenerationConfig) -> Content:
        """Generate content. Must be safe to call again after a failure."""


class PublishingCapability(ABC):
    """Publishes a Content to an Account, or raises CapabilityError."""

    @abstractmethod
    async def publish(self, content: Content, account: Account) -> PublishReceipt:
        """Publish content. At-least-once: retries may duplicate a post."""
