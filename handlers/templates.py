"""
Notification message templates, one per order event kind.

Templates use {variable} placeholders filled from the event payload plus the
event's order_id. Missing variables render as "?" rather than failing the
delivery: a notification with a blank field is better than none.
"""

from dataclasses import dataclass
from typing import Any, Optional

from shared.models import EventKind


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return "?"


@dataclass(frozen=True)
class NotificationTemplate:
    """Email and SMS variants of one notification."""
    email_subject: str
    email_body: str
    sms_body: str

    def render_email(self, context: dict[str, Any]) -> tuple[str, str]:
        values = _Defaulting(context)
        return (
            self.email_subject.format_map(values),
            self.email_body.format_map(values),
        )

    def render_sms(self, context: dict[str, Any]) -> str:
        return self.sms_body.format_map(_Defaulting(context))


TEMPLATES: dict[EventKind, NotificationTemplate] = {
    EventKind.CREATED: NotificationTemplate(
        email_subject="Order Received - #{order_id}",
        email_body="""Hi {customer_name},

Thank you for your order! We've received order #{order_id} and are processing it now.

Order Total: {amount}

We'll let you know as soon as your payment is confirmed.
""",
        sms_body="Order #{order_id} received! Total: {amount}. We'll confirm payment shortly.",
    ),
    EventKind.PAYMENT_SUCCEEDED: NotificationTemplate(
        email_subject="Payment Confirmed - #{order_id}",
        email_body="""Hi {customer_name},

Your payment of {amount} for order #{order_id} was successful (payment {payment_id}).

Thanks for shopping with us!
""",
        sms_body="Payment of {amount} for order #{order_id} confirmed. Thank you!",
    ),
    EventKind.PAYMENT_FAILED: NotificationTemplate(
        email_subject="Action Required: Payment Failed - #{order_id}",
        email_body="""Hi {customer_name},

We couldn't process your payment of {amount} for order #{order_id}.

Reason: {failure_reason}

Please update your payment method to complete the order.
""",
        sms_body="Payment for order #{order_id} failed: {failure_reason}. Please update your payment method.",
    ),
}


def get_template(kind: EventKind) -> Optional[NotificationTemplate]:
    return TEMPLATES.get(kind)
