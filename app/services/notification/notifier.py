# app/services/notification/notifier.py
"""Outbound notifications for committed event transitions (thin adapters, never raise)"""
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

import httpx

from app.config.settings import Settings, get_settings
from app.models import CalendarEvent

logger = logging.getLogger(__name__)


class Transition(str, Enum):
    CREATED = "created"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"
    UPDATED = "updated"


LABELS = {
    Transition.CREATED: (":calendar:", "New Meeting Scheduled"),
    Transition.CONFIRMED: (":white_check_mark:", "Meeting Confirmed"),
    Transition.CANCELLED: (":x:", "Meeting Cancelled"),
    Transition.COMPLETED: (":checkered_flag:", "Meeting Completed"),
    Transition.NO_SHOW: (":warning:", "No-Show Detected"),
    Transition.RESCHEDULED: (":arrows_counterclockwise:", "Meeting Rescheduled"),
    Transition.UPDATED: (":pencil2:", "Meeting Updated"),
}


class Notifier(ABC):
    @abstractmethod
    def notify(self, transition: Transition, event: CalendarEvent) -> None:
        """Deliver one committed transition"""


class LoggingNotifier(Notifier):
    def notify(self, transition: Transition, event: CalendarEvent) -> None:
        logger.info(
            f"Event {event.id} {transition.value}: '{event.title}' "
            f"{event.start_time.isoformat()} status={event.status}"
        )


class SlackNotifier(Notifier):
    """Posts a Block Kit message to an incoming-webhook URL"""

    def __init__(self, webhook_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.webhook_url = webhook_url
        self.http_client = client or httpx.Client(timeout=timeout)

    def build_message(self, transition: Transition, event: CalendarEvent) -> dict:
        emoji, label = LABELS.get(transition, (":speech_balloon:", "Notification"))
        start_ts = int(event.start_time.timestamp())
        end_ts = int(event.end_time.timestamp())
        event_type = (event.event_type or "").replace("_", " ").title()
        fields = [
            {
                "type": "mrkdwn",
                "text": (
                    f"*When:*\n<!date^{start_ts}^{{date_long}} at {{time}}|{event.start_time.isoformat()}>"
                    f"  -  <!date^{end_ts}^{{time}}|{event.end_time.isoformat()}>"
                ),
            },
        ]
        if event.timezone:
            fields.append({"type": "mrkdwn", "text": f"*Timezone:*\n{event.timezone}"})
        if event.location:
            fields.append({"type": "mrkdwn", "text": f"*Location:*\n{event.location}"})

        return {
            "text": f"{label}: {event.title}",
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": f"{emoji}  {label}", "emoji": True}},
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*{event.title}*\n_{event_type}_  |  Status: *{event.status}*"},
                    "fields": fields,
                },
            ],
        }

    def notify(self, transition: Transition, event: CalendarEvent) -> None:
        try:
            response = self.http_client.post(self.webhook_url, json=self.build_message(transition, event))
            if response.status_code >= 300:
                logger.warning(f"Slack notification for event {event.id} returned HTTP {response.status_code}")
        except httpx.TimeoutException:
            logger.warning(f"Slack notification for event {event.id} timed out")
        except httpx.HTTPError as e:
            logger.warning(f"Slack notification for event {event.id} failed: {e}")


def build_notifier(settings: Optional[Settings] = None) -> Notifier:
    settings = settings or get_settings()
    if settings.SLACK_WEBHOOK_URL:
        return SlackNotifier(settings.SLACK_WEBHOOK_URL)
    return LoggingNotifier()
