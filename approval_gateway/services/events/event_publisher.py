"""
Azure Service Bus event publishing for approval workflow events.

Every state transition of an operation or transfer is published so that
downstream systems can react to it:
- Audit systems keep an independent trail of who approved what and when
- Notification systems can alert the remaining signers
- Analytics systems can monitor approval latency
"""

import json
from datetime import datetime, UTC
from typing import Any, Optional
from dataclasses import dataclass, asdict, field
from loguru import logger


@dataclass
class WorkflowEvent:
    """
    Event published when an operation or transfer changes state.

    event_type is one of OperationCreated, OperationSigned, OperationApproved,
    OperationRejected, OperationExecuted, OperationFailed, OperationExpired,
    TransferCreated, TransferApproved, TransferRejected, TransferCompleted,
    TransferFailed.
    """

    event_type: str
    entity_id: str
    status: str
    actor: Optional[str] = None
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[str] = None

    def __post_init__(self):
        """Set timestamp if not provided"""
        if self.timestamp is None:
            self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class EventPublisher:
    """
    Publishes events to an Azure Service Bus queue.

    Usage:
        from azure.servicebus import ServiceBusClient
        client = ServiceBusClient.from_connection_string(conn_str)
        sender = client.get_queue_sender(queue_name="approval-events")
        publisher = EventPublisher(service_bus_sender=sender)

        # Disabled mode (no Service Bus configured)
        publisher = EventPublisher(service_bus_sender=None)
    """

    def __init__(
        self,
        service_bus_sender: Optional[object] = None,
        entity_name: str = "approval-events"
    ):
        self.service_bus_sender = service_bus_sender
        self.entity_name = entity_name

    def publish(self, event: WorkflowEvent) -> None:
        """
        Publish a workflow event to Service Bus.

        If service_bus_sender is None, this is a no-op (disabled mode).
        """
        if self.service_bus_sender is None:
            return

        from azure.servicebus import ServiceBusMessage

        message = ServiceBusMessage(event.to_json(), content_type="application/json")
        self.service_bus_sender.send_messages(message)

    def try_publish(self, event: WorkflowEvent) -> bool:
        """
        Publish without letting a messaging failure fail the workflow step
        that already committed.
        """
        try:
            self.publish(event)
            return True
        except Exception as e:
            logger.warning(
                "Failed to publish workflow event",
                event_type=event.event_type,
                entity_id=event.entity_id,
                error=str(e),
            )
            return False


def create_event_publisher(connection_string: Optional[str], queue_name: str) -> EventPublisher:
    """
    Build a publisher from configuration (disabled when no connection string is set).
    """
    if not connection_string:
        return EventPublisher(service_bus_sender=None, entity_name=queue_name)

    from azure.servicebus import ServiceBusClient

    client = ServiceBusClient.from_connection_string(connection_string)
    sender = client.get_queue_sender(queue_name=queue_name)
    return EventPublisher(service_bus_sender=sender, entity_name=queue_name)
