"""
Telegram client wrapper using httpx sync client.
Provides sync interface for Celery workers (no event loop issues).
"""
import time
import logging

import httpx

from proxyshop.core.config import settings
from proxyshop.utils.metrics import (
    telegram_requests_total,
    telegram_request_duration_seconds,
)


logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramAPIError(Exception):
    def __init__(self, error_code: int, description: str) -> None:
        super().__init__(f"{error_code}: {description}")
        self.error_code = error_code
        self.description = description


class TelegramClient:
    """
    Sync Telegram client for Celery workers.
    Uses httpx sync client - no event loop issues.
    """

    def __init__(self, token: str | None = None, client: httpx.Client | None = None) -> None:
        self._token = token or settings.telegram_bot_token
        self._base_url = f"{TELEGRAM_API_BASE}/bot{self._token}"
        self._client = client

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=30.0)
        return self._client

    def _record_request(self, method: str, status: str, duration: float) -> None:
        telegram_requests_total.labels(method=method, status=status).inc()
        telegram_request_duration_seconds.labels(method=method).observe(duration)

    def _api_call(self, method: str, data: dict | None = None) -> dict:
        """Make API call to Telegram."""
        url = f"{self._base_url}/{method}"
        resp = self.client.post(url, json=data)
        result = resp.json()
        if not result.get("ok"):
            error_desc = result.get("description", "Unknown error")
            error_code = result.get("error_code", 0)
            logger.warning(f"Telegram API error: {method} -> {error_code}: {error_desc}")
            raise TelegramAPIError(error_code, error_desc)
        return result

    def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: dict | None = None,
        parse_mode: str | None = "HTML",
    ) -> dict:
        """Send text message to chat."""
        start = time.time()
        try:
            data = {"chat_id": int(chat_id), "text": text}
            if reply_markup:
                data["reply_markup"] = reply_markup
            if parse_mode:
                data["parse_mode"] = parse_mode
            result = self._api_call("sendMessage", data)
            self._record_request("sendMessage", "success", time.time() - start)
            return result
        except (httpx.HTTPError, TelegramAPIError, ValueError) as e:
            self._record_request("sendMessage", "error", time.time() - start)
            logger.error("Failed to send message", extra={"error": str(e), "user_id": str(chat_id)})
            raise

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
