"""
Webhook notifications.

Webhooks are fire-and-forget: delivery is retried a few times, and any
error is logged and swallowed so notification problems never change the
outcome of a backup or restore.
"""

import logging
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry


logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 10
WEBHOOK_RETRIES = 3


def _session() -> requests.Session:
    retry = Retry(
        total=WEBHOOK_RETRIES,
        backoff_factor=1,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=None
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    return session


def send_webhook(url: Optional[str], message: Optional[str] = None) -> bool:
    """
    POST message to url.

    Args:
        url: Webhook URL (nothing is sent if empty)
        message: Plain text body

    Returns:
        True if the webhook was delivered
    """
    if not url:
        return False

    try:
        with _session() as session:
            response = session.post(
                url,
                data=(message or '').encode('utf-8'),
                headers={'Content-Type': 'text/plain; charset=utf-8'},
                timeout=WEBHOOK_TIMEOUT
            )
            response.raise_for_status()
        return True
    except requests.RequestException as e:
        logger.warning(f"Webhook delivery failed: {e}")
        return False


class Notifier:
    """Success and failure webhooks of a run."""

    def __init__(self, success_url: Optional[str] = None, failure_url: Optional[str] = None):
        self.success_url = success_url
        self.failure_url = failure_url

    @classmethod
    def from_config(cls, config) -> 'Notifier':
        return cls(config.success_webhook, config.failure_webhook)

    def success(self, message: str):
        logger.info(message)
        send_webhook(self.success_url, message)

    def failure(self, message: str):
        send_webhook(self.failure_url, message)


def report_failure(notifier: Notifier, message: str):
    """
    Single exit point for fatal errors: log and fire the failure webhook.
    """
    logger.error(message)
    notifier.failure(message)
