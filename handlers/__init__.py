"""
Downstream consumers of order events.

Each handler implements the broker's handler capability (handler_id plus an
async handle(event) returning an Ack). They share no base class:
- PaymentHandler: charges orders and emits payment outcome events
- NotificationHandler: emails / texts customers about their order
"""

from handlers.channels import NotificationChannels
from handlers.defaults import bind_default_handlers
from handlers.notification import NotificationHandler
from handlers.payment import PaymentGateway, PaymentHandler

__all__ = [
    "NotificationChannels",
    "NotificationHandler",
    "PaymentGateway",
    "PaymentHandler",
    "bind_default_handlers",
]
