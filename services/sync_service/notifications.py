"""User-visible notices raised by the sync scheduler."""

import logging
from typing import Optional

import httpx

from shared.config import get_bool_env, get_env

logger = logging.getLogger(__name__)


class NotificationService:
    """Logs notices and forwards them to an optional webhook."""

    def __init__(
        self,
        enabled: Optional[bool] = None,
        webhook_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize notification service.

        Args:
            enabled: Forward notices to the webhook (defaults to ENABLE_NOTIFICATIONS)
            webhook_url: Target URL (defaults to NOTIFICATION_WEBHOOK_URL)
            http_client: Client used for webhook delivery
        """
        self.notification_enabled = (
            enabled if enabled is not None else get_bool_env("ENABLE_NOTIFICATIONS", False)
        )
        self.notification_webhook = webhook_url or get_env("NOTIFICATION_WEBHOOK_URL")
        self.http_client = http_client
        self.last_notice: Optional[str] = None

    async def notify(self, message: str, level: str = "info") -> None:
        """
        Surface a notice to the user.

        Webhook delivery failures are logged, not raised.

        Args:
            message: Text shown to the user
            level: "info", "warning" or "error"
        """
        self.last_notice = message
        logger.log(logging.WARNING if level in ("warning", "error") else logging.INFO, f"NOTICE: {message}")

        if not self.notification_enabled or not self.notification_webhook:
            return

        payload = {"text": message, "level": level}
        try:
            if self.http_client is not None:
                await self.http_client.post(self.notification_webhook, json=payload, timeout=10.0)
            else:
                async with httpx.AsyncClient() as client:
                    await client.post(self.notification_webhook, json=payload, timeout=10.0)
            logger.info("Notice delivered to webhook")
        except httpx.HTTPError as e:
            logger.error(f"Failed to send notification: {e}")
