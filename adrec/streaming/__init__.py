"""Event consumption and outcome dispatch"""

from .event_log import EventLog, InMemoryEventLog, KafkaEventLog
from .consumer import StreamConsumer
from .dispatcher import OutcomeDispatcher
from .notifications import NotificationSink, InMemoryNotificationSink, WebhookNotificationSink

__all__ = [
    "EventLog", "InMemoryEventLog", "KafkaEventLog", "StreamConsumer",
    "OutcomeDispatcher", "NotificationSink", "InMemoryNotificationSink", "WebhookNotificationSink"
]
