import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import requests

from efiling.config.settings import AppSettings
from efiling.shared.clock import utc_now


@dataclass(frozen=True)
class HandoffEvent:
    instruction_id: str
    action: str
    from_status: str
    to_status: str
    acting_user_id: str
    assigned_user_id: Optional[str]
    occurred_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


class Notifier(Protocol):
    def notify(self, event: HandoffEvent) -> None:
        ...


@dataclass
class NoopNotifier:
    def notify(self, event: HandoffEvent) -> None:
        return None


@dataclass
class RecordingNotifier:
    events: List[HandoffEvent] = field(default_factory=list)

    def notify(self, event: HandoffEvent) -> None:
        self.events.append(event)


@dataclass
class WebhookNotifier:
    url: str
    timeout_seconds: float = 5

    def notify(self, event: HandoffEvent) -> None:
        response = requests.post(self.url, json=event.to_payload(), timeout=self.timeout_seconds)
        response.raise_for_status()


@dataclass
class ServiceBusNotifier:
    connection_string: str
    topic: str

    def notify(self, event: HandoffEvent) -> None:
        from azure.servicebus import ServiceBusClient, ServiceBusMessage

        message = ServiceBusMessage(
            json.dumps(event.to_payload()),
            subject=event.action,
            application_properties={"instruction_id": event.instruction_id},
        )
        with ServiceBusClient.from_connection_string(self.connection_string) as client:
            sender = client.get_topic_sender(topic_name=self.topic)
            with sender:
                sender.send_messages(message)


def build_notifier(settings: AppSettings) -> Notifier:
    backend = settings.notify_backend
    if backend == "noop":
        return NoopNotifier()
    if backend == "webhook":
        if not settings.notify_webhook_url:
            raise RuntimeError("EFILING_NOTIFY_WEBHOOK_URL is required for webhook notifications")
        return WebhookNotifier(settings.notify_webhook_url)
    if backend == "servicebus":
        if not settings.service_bus_connection:
            raise RuntimeError("EFILING_SERVICEBUS_CONNECTION is required for servicebus notifications")
        return ServiceBusNotifier(settings.service_bus_connection, settings.notify_topic)
    raise RuntimeError(f"Unsupported notify backend: {backend}")
