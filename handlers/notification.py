"""
Notification handler: tells customers about their order's progress.

Subscribes to order and payment events, renders the matching template and
sends it by email and/or SMS using the contact details carried in the event
payload. A successful send is recorded by appending NotificationSent.

Key points:
- Contact details travel in the payload; the handler does no lookups
- A payload without any contact detail can never be delivered and is
  dead-lettered
- A failed channel send is transient and retried; a redelivery after a
  successful send is collapsed by the idempotency key
"""

import logging
from typing import Any, Optional

from broker.adapter import Ack
from broker.event_store import EventStore
from broker.idempotency import IdempotencyCache
from handlers.channels import ChannelType, NotificationChannels
from handlers.templates import get_template
from shared.errors import PermanentHandlerError, TransientHandlerError
from shared.models import EventKind, OrderEvent

logger = logging.getLogger("notification_handler")


class NotificationHandler:
    """
    Sends customer notifications for order events.

    Example:
        channels = NotificationChannels()
        handler = NotificationHandler(channels, producer=store)
        catalog.bind(handler)
        await registry.register(
            "notification",
            [EventKind.CREATED, EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED],
        )
    """

    def __init__(
        self,
        channels: NotificationChannels,
        producer: Optional[EventStore] = None,
        idempotency: Optional[IdempotencyCache] = None,
        handler_id: str = "notification",
    ):
        self.handler_id = handler_id
        self.channels = channels
        self.producer = producer
        self.idempotency = idempotency

    async def handle(self, event: OrderEvent) -> Ack:
        template = get_template(event.kind)
        if template is None:
            return Ack(detail=f"no template for {event.kind.value}")

        try:
            data = event.payload_json()
        except ValueError as e:
            raise PermanentHandlerError(f"Notification payload is not JSON: {e}", self.handler_id) from e
        if not isinstance(data, dict):
            raise PermanentHandlerError("Notification payload must be a JSON object", self.handler_id)

        email = data.get("customer_email")
        phone = data.get("customer_phone")
        if not email and not phone:
            raise PermanentHandlerError(
                f"No contact details for order {event.order_id}", self.handler_id
            )

        key = f"{self.handler_id}:{event.event_id}"
        if self.idempotency is not None and self.idempotency.seen(key):
            logger.info(f"Skipping duplicate notification for {event}")
            return Ack(idempotency_key=key, detail="duplicate")

        context: dict[str, Any] = {"customer_name": "there", **data, "order_id": event.order_id}
        sent: list[str] = []
        errors: list[str] = []
        if email:
            subject, body = template.render_email(context)
            result = self.channels.send(ChannelType.EMAIL, email, subject, body)
            (sent if result.success else errors).append(result.error or ChannelType.EMAIL.value)
        if phone:
            result = self.channels.send(ChannelType.SMS, phone, None, template.render_sms(context))
            (sent if result.success else errors).append(result.error or ChannelType.SMS.value)

        if errors:
            raise TransientHandlerError("; ".join(errors), self.handler_id)

        if self.producer is not None:
            await self.producer.append(
                event.order_id,
                EventKind.NOTIFICATION_SENT,
                {"trigger": event.kind.value, "trigger_event_id": str(event.event_id), "channels": sent},
            )
        logger.info(f"Notified order {event.order_id} about {event.kind.value} via {sent}")
        return Ack(idempotency_key=key, detail=f"sent via {', '.join(sent)}")
