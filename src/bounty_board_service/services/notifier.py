"""Best-effort activity pings for live dashboards."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx

from bounty_board_service.logging import get_logger


class ActivityNotifier:
    """
    Posts activity events to a webhook.

    Notifications never fail the operation that sent them: delivery errors
    are logged and dropped. With no webhook configured every call is a no-op.
    """

    def __init__(self, webhook_url: str | None, timeout_seconds: int) -> None:
        self._webhook_url = webhook_url
        self._client: httpx.AsyncClient | None = None
        if webhook_url is not None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def update_activity(
        self,
        user_id: str,
        activity_type: str,
        task_id: str | None = None,
    ) -> bool:
        """Send one activity event; return True if the webhook accepted it."""
        if self._client is None or self._webhook_url is None:
            return False

        logger = get_logger(__name__)
        event: dict[str, str] = {
            "user_id": user_id,
            "type": activity_type,
            "last_activity_at": datetime.now(UTC).isoformat(timespec="seconds").replace(
                "+00:00", "Z"
            ),
        }
        if task_id is not None:
            event["task_id"] = task_id

        try:
            response = await self._client.post(self._webhook_url, json=event)
        except httpx.HTTPError as exc:
            logger.warning(
                "Activity notification failed",
                extra={"activity_type": activity_type, "task_id": task_id, "error": str(exc)},
            )
            return False

        if response.status_code >= 400:
            logger.warning(
                "Activity notification rejected",
                extra={
                    "activity_type": activity_type,
                    "task_id": task_id,
                    "status_code": response.status_code,
                },
            )
            return False
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
