"""
Publishing capability.

The engine only sees ``PublishingCapability.publish(content, account)``.
``HttpPublisher`` forwards posts to a platform gateway over HTTP; the gateway
speaks the actual platform protocol.

Usage:
    publisher = HttpPublisher(base_url="http://gateway:9100")
    receipt = await publisher.publish(content, account)
"""
import logging
from typing import Optional

import httpx

from ..core.config import settings
from ..core.errors import CapabilityError
from ..tasks.capabilities import PublishingCapability
from ..tasks.models import Account, Content, PublishReceipt

logger = logging.getLogger(__name__)

# Gateway statuses worth another attempt
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


class HttpPublisher(PublishingCapability):
    """Client for a platform publishing gateway."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the publisher.

        Args:
            base_url: Gateway base URL (defaults to settings.publisher_base_url)
            timeout: Per-request HTTP timeout in seconds
            transport: Custom httpx transport (optional, used in tests)
        """
        self.base_url = base_url or settings.publisher_base_url
        self.timeout = timeout
        self._transport = transport

    def _build_payload(self, content: Content, account: Account) -> dict:
        return {
            "platform": account.platform,
            "content_id": content.id,
            "title": content.title,
            "text": content.text,
            "images": content.images,
            "videos": content.videos,
            "tags": content.tags,
        }

    async def publish(self, content: Content, account: Account) -> PublishReceipt:
        """
        Publish content through the gateway.

        Args:
            content: Content to publish
            account: Target account

        Returns:
            PublishReceipt with the platform post id and URL

        Raises:
            CapabilityError: On transport errors or gateway rejections
        """
        url = f"/accounts/{account.id}/posts"

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=self._build_payload(content, account))
        except httpx.TimeoutException as e:
            # The platform may have accepted the post; retrying can duplicate it.
            raise CapabilityError(f"Publish to {account.platform} timed out") from e
        except httpx.HTTPError as e:
            raise CapabilityError(f"Publish to {account.platform} failed: {e}") from e

        if response.status_code >= 400:
            retryable = response.status_code in RETRYABLE_STATUS_CODES
            raise CapabilityError(
                f"Gateway rejected post for {account.platform}: "
                f"HTTP {response.status_code} {response.text[:200]}",
                retryable=retryable,
            )

        try:
            data = response.json()
            receipt = PublishReceipt(post_id=str(data["id"]), post_url=data.get("url"))
        except (ValueError, KeyError, TypeError) as e:
            raise CapabilityError(f"Malformed gateway response: {e}") from e

        logger.info(f"Published content {content.id} to {account.platform}: {receipt.post_id}")
        return receipt
