"""
WeCom (WeChat Work) group bot notifier.

See https://developer.work.weixin.qq.com/document/path/91770.
"""

import logging
from typing import Any
from urllib.parse import urlsplit

import requests

from acme_cert_orchestrator import utils
from acme_cert_orchestrator.notification import Notifier

logger = logging.getLogger(__name__)

WEBHOOK_HOSTNAME = "qyapi.weixin.qq.com"
USER_AGENT = "acme-cert-orchestrator"


class WeComBotNotifier(Notifier, utils.LoggerMixin):
    """
    Posts text messages to a WeCom group bot webhook.

    Args:
        webhook_url: The bot's webhook URL.
        timeout: Request timeout in seconds.
    """

    provider_name = "wecombot"

    def __init__(self, webhook_url: str, timeout: float = 30, logger: logging.Logger | None = None):
        parts = urlsplit(webhook_url)
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"Invalid webhook url: {webhook_url!r}")

        self.webhook_url = webhook_url
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.http = requests.Session()
        self.http.headers.update({"Content-Type": "application/json", "User-Agent": USER_AGENT})

    def send(self, subject: str, body: str) -> None:
        """
        Send a text message.

        Raises:
            RuntimeError: If WeCom rejects the message.
            requests.exceptions.RequestException: On transport errors.
        """
        if urlsplit(self.webhook_url).hostname != WEBHOOK_HOSTNAME:
            self.logger.warning(
                f"The webhook url hostname is not '{WEBHOOK_HOSTNAME}', please make sure it is correct"
            )

        payload = {"msgtype": "text", "text": {"content": f"{subject}\n\n{body}"}}
        r = self.http.post(self.webhook_url, json=payload, timeout=self.timeout)
        if r.status_code >= 400:
            raise RuntimeError(f"wecom api error: unexpected status code: {r.status_code}, resp: {r.text}")

        try:
            result = r.json()
        except ValueError:
            raise RuntimeError(f"wecom api error: failed to parse response: {r.text}") from None

        if result.get("errcode", 0) != 0:
            raise RuntimeError(f"wecom api error: errcode='{result.get('errcode')}', errmsg='{result.get('errmsg', '')}'")

        self.logger.debug(f"wecom message sent: {subject}")


def create_notifier(access_config: dict[str, Any], extended_config: dict[str, Any]) -> WeComBotNotifier:
    """Access config: webhook_url."""
    return WeComBotNotifier(utils.get_str(access_config, "webhook_url"))
