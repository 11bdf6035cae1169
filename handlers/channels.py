"""
Mock notification channels used by the NotificationHandler.

These channels simulate sending emails and SMS messages by logging the output.
In a real deployment they would wrap an email provider or SMS gateway.

Design decisions:
- All sends are logged for visibility
- Channels keep the messages they sent for test assertions
- Failures can be simulated with a fail rate (0.0 never, 1.0 always); a
  failed send is reported in the result, not raised
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from shared.models import utcnow

logger = logging.getLogger("notifications")


class ChannelType(str, Enum):
    """Supported notification channels."""
    EMAIL = "email"
    SMS = "sms"


@dataclass
class NotificationResult:
    """Outcome of one send attempt on one channel."""
    success: bool
    channel: ChannelType
    recipient: str
    subject: Optional[str]  # Email only
    body: str
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def __str__(self) -> str:
        status = "ok" if self.success else "FAILED"
        if self.channel == ChannelType.EMAIL:
            return f"[{status}] EMAIL to {self.recipient}: {self.subject}"
        return f"[{status}] SMS to {self.recipient}: {self.body[:50]}"


class _MockChannel:
    channel_type: ChannelType

    def __init__(self, fail_rate: float = 0.0, rng: Optional[random.Random] = None):
        """
        Args:
            fail_rate: Probability of send failure (0.0 to 1.0), for testing.
            rng: Random source for simulated failures
        """
        self.fail_rate = fail_rate
        self._rng = rng or random.Random()
        self.sent_messages: list[NotificationResult] = []

    def _deliver(self, to: str, subject: Optional[str], body: str) -> NotificationResult:
        failed = self.fail_rate > 0 and self._rng.random() < self.fail_rate
        result = NotificationResult(
            success=not failed,
            channel=self.channel_type,
            recipient=to,
            subject=subject,
            body=body,
            error=f"Simulated {self.channel_type.value} delivery failure" if failed else None,
        )
        if failed:
            logger.error(f"[{self.channel_type.value.upper()} FAILED] To: {to} | Error: {result.error}")
        else:
            logger.info(f"[{self.channel_type.value.upper()}] To: {to} | {subject or body}")
        self.sent_messages.append(result)
        return result

    def get_successful_sends(self) -> list[NotificationResult]:
        return [m for m in self.sent_messages if m.success]

    def clear_history(self) -> None:
        self.sent_messages.clear()


class EmailChannel(_MockChannel):
    """Mock email channel."""

    channel_type = ChannelType.EMAIL

    def send(self, to: str, subject: str, body: str) -> NotificationResult:
        return self._deliver(to, subject, body)


class SMSChannel(_MockChannel):
    """Mock SMS channel. Messages over MAX_LENGTH are sent but logged as a warning."""

    channel_type = ChannelType.SMS
    MAX_LENGTH = 160

    def send(self, to: str, message: str) -> NotificationResult:
        if len(message) > self.MAX_LENGTH:
            logger.warning(
                f"[SMS] Message length ({len(message)}) exceeds {self.MAX_LENGTH} chars, "
                "may be split into multiple messages"
            )
        return self._deliver(to, None, message)


class NotificationChannels:
    """Facade over the email and SMS channels."""

    def __init__(self, email_fail_rate: float = 0.0, sms_fail_rate: float = 0.0):
        self.email = EmailChannel(fail_rate=email_fail_rate)
        self.sms = SMSChannel(fail_rate=sms_fail_rate)

    def send(self, channel: ChannelType, recipient: str, subject: Optional[str], body: str) -> NotificationResult:
        """
        Send via a named channel.

        Raises:
            ValueError: If channel is not recognized
        """
        channel = ChannelType(channel)
        if channel == ChannelType.EMAIL:
            return self.email.send(recipient, subject or "(no subject)", body)
        return self.sms.send(recipient, body)

    def get_all_sent_messages(self) -> list[NotificationResult]:
        return self.email.sent_messages + self.sms.sent_messages

    def get_successful_sends(self) -> list[NotificationResult]:
        return self.email.get_successful_sends() + self.sms.get_successful_sends()

    def clear_all_history(self) -> None:
        self.email.clear_history()
        self.sms.clear_history()
