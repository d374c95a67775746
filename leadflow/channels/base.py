"""Base sender interface for outbound notification channels."""

from __future__ import annotations

import abc
from typing import Optional

from pydantic import BaseModel


class SendResult(BaseModel):
    """Outcome reported by a channel sender."""

    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class BaseChannelSender(metaclass=abc.ABCMeta):
    """Abstract sender for a single delivery channel."""

    async def close(self) -> None:
        """Release network resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(self, destination: str, subject: str, body: str) -> SendResult:
        """Deliver ``body`` to ``destination``.

        Senders report provider rejections through the returned
        :class:`SendResult` rather than raising.
        """
        raise NotImplementedError
