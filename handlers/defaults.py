"""Default handler wiring for the API server, CLI and demos."""

from typing import Optional

from broker.service import OrderBroker
from handlers.channels import NotificationChannels
from handlers.notification import NotificationHandler
from handlers.payment import PaymentGateway, PaymentHandler


def bind_default_handlers(
    broker: OrderBroker,
    gateway: Optional[PaymentGateway] = None,
    channels: Optional[NotificationChannels] = None,
) -> tuple[PaymentHandler, NotificationHandler]:
    """
    Bind the payment and notification handlers to a broker's catalog.

    Both handlers append their outcome events to the broker's store and share
    its idempotency cache. Subscriptions are not created here.
    """
    payment = PaymentHandler(
        gateway or PaymentGateway(),
        producer=broker.store,
        idempotency=broker.idempotency,
    )
    notification = NotificationHandler(
        channels or NotificationChannels(),
        producer=broker.store,
        idempotency=broker.idempotency,
    )
    broker.bind(payment)
    broker.bind(notification)
    return payment, notification
