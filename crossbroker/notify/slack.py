"""
Notification Sink - best-effort Slack alerts for failed jobs

Delivery is fire-and-forget: a failed delivery is logged and never changes
the pipeline outcome.
"""
import logging
import os
import threading
from typing import Dict, Optional
import httpx
from ..interfaces import INotificationSink

logger = logging.getLogger(__name__)


def basic_fail_message(title: str, fields: Dict[str, object]) -> dict:
    """Slack block payload modelled on the basic failure template"""
    field_blocks = [
        {"type": "mrkdwn", "text": f"*{name}*: {value}"}
        for name, value in fields.items()
        if value not in (None, "", [])
    ]
    blocks = [
        {"type": "header", "text": {"type": "plain_text", "text": f":red_circle: {title}"}},
    ]
    if field_blocks:
        blocks.append({"type": "section", "fields": field_blocks[:10]})
    return {"text": title, "blocks": blocks}


class SlackNotificationSink(INotificationSink):
    """Posts to a Slack incoming webhook"""

    def __init__(self, webhook_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def notify_failure(self, title: str, fields: dict) -> bool:
        try:
            response = self._client.post(self.webhook_url, json=basic_fail_message(title, fields),
                                         timeout=self.timeout)
            if response.status_code == 200:
                logger.info(f"Failure notification sent: {title}")
                return True
            logger.warning(f"Slack webhook rejected notification with status {response.status_code}")
            return False
        except httpx.HTTPError as exc:
            logger.error(f"Failure notification not delivered: {exc}")
            return False

    def close(self) -> None:
        self._client.close()


class NullNotificationSink(INotificationSink):
    """Used when no webhook is configured"""

    def notify_failure(self, title: str, fields: dict) -> bool:
        logger.info(f"No notification sink configured, dropping: {title}")
        return False


class FailureNotifier:
    """Sends at most one notification per scope key (campaign or run)"""

    def __init__(self, sink: INotificationSink):
        self.sink = sink
        self._sent = set()
        self._lock = threading.Lock()

    def notify_once(self, scope_key: str, title: str, fields: dict) -> bool:
        with self._lock:
            if scope_key in self._sent:
                logger.debug(f"Notification for {scope_key} already sent")
                return False
            self._sent.add(scope_key)
        return self.sink.notify_failure(title, fields)

    @property
    def sent(self) -> int:
        return len(self._sent)


def sink_from_config(config: Optional[dict]) -> INotificationSink:
    """Build a sink from the `notifications` section of a pipeline definition"""
    config = config or {}
    slack = config.get('slack') or {}
    webhook = slack.get('webhook_url') or os.environ.get(slack.get('webhook_url_env', 'SLACK_WEBHOOK_URL'))
    if webhook:
        return SlackNotificationSink(webhook, timeout=float(slack.get('timeout', 10.0)))
    return NullNotificationSink()
