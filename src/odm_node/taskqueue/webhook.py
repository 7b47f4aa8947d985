"""Best-effort completion notifications."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2


class WebhookNotifier:
    """POSTs task info to caller-supplied URLs; delivery failures are only logged."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        client: httpx.Client | None = None,
    ) -> None:
        if client is None:
            client = httpx.Client(
                timeout=httpx.Timeout(timeout_seconds, connect=5.0),
                transport=httpx.HTTPTransport(retries=max_retries),
                follow_redirects=True,
            )
        self._client = client

    def notify(self, url: str, payload: dict[str, Any]) -> bool:
        try:
            response = self._client.post(url, json=payload)
        except httpx.TimeoutException:
            logger.warning("Timeout calling webhook %s", url)
            return False
        except httpx.HTTPError as exc:
            logger.warning("Webhook %s failed: %s", url, exc)
            return False
        if not response.is_success:
            logger.warning("Webhook %s returned HTTP %s", url, response.status_code)
            return False
        logger.info("Webhook %s notified for task %s", url, payload.get("uuid"))
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> WebhookNotifier:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
