"""
Clients for the services this backend talks to but does not own.

- NotificationDispatcher: tells the notification service that a user rated
  a title, so followers can be notified. Best effort: a failed delivery is
  logged and never fails the ranking operation.
- IdentityClient: asks the identity service to finalize removal of a user's
  sign-in records after their rankings were deleted.

Either collaborator is disabled when its URL is not configured.
"""

import logging
from typing import Any

import httpx

from cannes.config import get_settings
from cannes.core.retry import RetryConfig, retry_async
from cannes.middleware.correlation import get_correlation_id

logger = logging.getLogger(__name__)
settings = get_settings()


class _HTTPCollaborator:
    """Lazily created httpx client shared by the collaborator clients."""

    def __init__(self, base_url: str | None, timeout: float | None = None):
        self.base_url = base_url
        self.timeout = timeout or settings.collaborator_timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        headers = {}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response


class NotificationDispatcher(_HTTPCollaborator):
    """Posts rating events to the notification webhook."""

    def __init__(self, webhook_url: str | None = None, timeout: float | None = None):
        super().__init__(webhook_url or settings.notification_webhook_url, timeout)

    async def title_rated(self, user_id: str, title_id: str, new_score: float) -> bool:
        """Announce a (re-)rating. Returns whether the event was delivered."""
        return await self._send({
            "event": "title_rated",
            "userId": user_id,
            "titleId": title_id,
            "newScore": new_score,
        })

    async def title_removed(self, user_id: str, title_id: str) -> bool:
        return await self._send({
            "event": "title_removed",
            "userId": user_id,
            "titleId": title_id,
        })

    async def _send(self, payload: dict[str, Any]) -> bool:
        if not self.enabled:
            return False
        try:
            await self._post(self.base_url, payload)
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Notification {payload['event']} for {payload['userId']} not delivered: {e}")
            return False


class IdentityClient(_HTTPCollaborator):
    """Finalizes account removal in the identity service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        super().__init__(base_url or settings.identity_service_url, timeout)
        self.retry_config = RetryConfig.for_collaborator()

    async def remove_user(self, user_id: str) -> bool:
        """Request removal of the user's identity. Returns False when disabled.

        Network errors and 5xx answers are retried; anything else propagates.
        """
        if not self.enabled:
            logger.info(f"Identity service not configured; skipping removal of {user_id}")
            return False
        url = f"{self.base_url.rstrip('/')}/users/{user_id}/remove"
        await retry_async(self._post, url, {"userId": user_id}, config=self.retry_config)
        logger.info(f"Identity removal requested for {user_id}")
        return True
