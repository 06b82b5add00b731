"""
Webhook Notifier — fire-and-forget security notifications over HTTP.

``notify_ip_change`` starts a daemon thread and returns at once; the caller
never waits for the POST and never sees its failure. Failures are logged
and dropped (no retry).
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

import httpx

from docvault.engine.logging import log, log_security_event

logger = logging.getLogger("docvault.integrations.webhook")


class WebhookNotifier:

    def __init__(self, url: str = "", timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self._url = url
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, config) -> "WebhookNotifier":
        return cls(url=config.webhook.url, timeout=config.webhook.timeout_seconds)

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def notify_ip_change(self, user_id: str, new_ip: Optional[str], old_ip: Optional[str]) -> Optional[threading.Thread]:
        """
        Dispatch ``{user_id, new_ip, old_ip}`` in the background.

        Returns:
            The started thread (tests join it), or None when disabled.
        """
        payload = {"user_id": user_id, "new_ip": new_ip, "old_ip": old_ip}
        return self.dispatch(payload)

    def dispatch(self, payload: Dict[str, Any]) -> Optional[threading.Thread]:
        if not self.enabled:
            logger.debug("Webhook disabled — notification skipped")
            return None
        thread = threading.Thread(
            target=self.send,
            args=(payload,),
            name="docvault-webhook",
            daemon=True,
        )
        thread.start()
        return thread

    def send(self, payload: Dict[str, Any]) -> bool:
        """POST synchronously. Returns True on a 2xx response; never raises."""
        try:
            if self._client is not None:
                response = self._client.post(self._url, json=payload, timeout=self._timeout)
            else:
                response = httpx.post(self._url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            logger.info(f"Webhook delivered for user {payload.get('user_id')}")
            return True
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Webhook delivery failed ({self._url}): {e}")
            log(log_security_event(
                "webhook_failed",
                stream="system",
                user_id=payload.get("user_id"),
                url=self._url,
                error=str(e),
            ))
            return False
