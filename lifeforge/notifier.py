from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request

logger = logging.getLogger(__name__)

REMINDER_TEXT = (
    "🚀 Hi! Remember to check in on LifeForge today and secure your XP! "
    "Consistency builds your empire."
)


class Notifier:
    def send(self, destination: str, text: str) -> bool:
        raise NotImplementedError


class NoopNotifier(Notifier):
    def send(self, destination: str, text: str) -> bool:
        logger.info("No notifier configured, dropping message to %s", destination)
        return False


class _HttpNotifier(Notifier):
    max_attempts = 3
    timeout_s = 5

    def _send_with_retry(self, req: urllib.request.Request) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                urllib.request.urlopen(req, timeout=self.timeout_s).read()
                return True
            except (urllib.error.URLError, TimeoutError, OSError) as exc:
                if attempt >= self.max_attempts:
                    logger.warning("Notifier send failed after retries: %s", exc)
                    return False
                time.sleep(0.25 * attempt)
        return False


class WhatsAppNotifier(_HttpNotifier):
    """Posts a text message through an Evolution-style WhatsApp gateway."""

    def __init__(self, api_url: str, api_key: str) -> None:
        self.api_url = api_url
        self.api_key = api_key

    def send(self, destination: str, text: str) -> bool:
        payload = {
            "number": destination,
            "options": {"delay": 1200, "presence": "composing"},
            "textMessage": {"text": text},
            "text": text,
        }
        req = urllib.request.Request(
            self.api_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "apikey": self.api_key},
            method="POST",
        )
        return self._send_with_retry(req)


def build_notifier(api_url: str, api_key: str) -> Notifier:
    if api_url and api_key:
        return WhatsAppNotifier(api_url, api_key)
    return NoopNotifier()
