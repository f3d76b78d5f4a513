"""Webhook client that announces group changes to subscribers."""

import logging

import httpx

from ..exceptions import WebhookError

logger = logging.getLogger(__name__)


class WebhookClient:
    """Posts ``{"groupId", "version"}`` to a URL whenever a group changes.

    Subscribers (e.g. mobile client stores) compare the version against the
    one they hold to decide whether to re-fetch balances.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the webhook client."""
        if not url:
            raise WebhookError("Webhook URL must not be empty")
        self.url = url
        self.client = httpx.Client(
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def notify_group_changed(self, group_id: str, version: int) -> bool:
        """
        Announce a new version of a group.

        The mutation has already been applied when this runs, so failures are
        logged rather than raised.

        Args:
            group_id: The group that changed
            version: Its new version

        Returns:
            True if the subscriber accepted the notification, False otherwise
        """
        try:
            response = self.client.post(
                self.url, json={"groupId": group_id, "version": version}
            )
            response.raise_for_status()
            logger.debug(f"Notified {self.url} of group {group_id} v{version}")
            return True

        except httpx.HTTPStatusError as e:
            logger.error(f"Webhook error for group {group_id}: {e}")
            logger.error(f"Response body: {e.response.text}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"HTTP error notifying group {group_id}: {e}")
            return False

    def as_listener(self):
        """Adapt this client to the ``LedgerService`` listener signature."""

        def listener(group_id: str, version: int):
            self.notify_group_changed(group_id, version)

        return listener
