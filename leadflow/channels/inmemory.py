"""In-memory channel sender for testing."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel

from ..models import new_id
from .base import BaseChannelSender, SendResult


class OutboundMessage(BaseModel):
    destination: str
    subject: str
    body: str
    message_id: str


class InMemoryChannelSender(BaseChannelSender):
    """Collect messages in an outbox instead of sending them.

    ``fail_with`` makes every send report failure, and ``fail_times`` limits
    that to the first N sends, which lets tests exercise retries.
    """

    def __init__(self, fail_with: Optional[str] = None, fail_times: Optional[int] = None) -> None:
        self.outbox: List[OutboundMessage] = []
        self.attempts = 0
        self.fail_with = fail_with
        self.fail_times = fail_times

    async def send(self, destination: str, subject: str, body: str) -> SendResult:
        self.attempts += 1
        if self.fail_with is not None and (
            self.fail_times is None or self.attempts <= self.fail_times
        ):
            return SendResult(success=False, error=self.fail_with)
        message = OutboundMessage(
            destination=destination, subject=subject, body=body, message_id=new_id()
        )
        self.outbox.append(message)
        return SendResult(success=True, message_id=message.message_id)
