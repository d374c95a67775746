"""Channel sender factory and initialization."""

from __future__ import annotations

from typing import Dict, Optional

from ..config import LeadflowConfig, load_config
from ..models import Channel
from .base import BaseChannelSender, SendResult
from .inmemory import InMemoryChannelSender


def get_channel_senders(
    config: Optional[LeadflowConfig] = None,
) -> Dict[Channel, BaseChannelSender]:
    """Build the email and SMS senders named in configuration.

    In-app delivery needs no sender; it is written to the repository.
    """

    config = config or load_config()
    senders: Dict[Channel, BaseChannelSender] = {}

    email = config.notifications.email
    if email.provider == "resend":
        from .resend import ResendEmailSender

        if not email.api_key:
            raise ValueError("Resend email provider requires an api_key")
        senders[Channel.EMAIL] = ResendEmailSender(
            api_key=email.api_key,
            from_email=email.from_email,
            from_name=email.from_name,
            api_url=email.api_url,
        )
    else:
        senders[Channel.EMAIL] = InMemoryChannelSender()

    sms = config.notifications.sms
    if sms.provider == "twilio":
        from .twilio import TwilioSmsSender

        if not (sms.account_sid and sms.auth_token and sms.from_number):
            raise ValueError("Twilio SMS provider requires account_sid, auth_token and from_number")
        senders[Channel.SMS] = TwilioSmsSender(
            account_sid=sms.account_sid,
            auth_token=sms.auth_token,
            from_number=sms.from_number,
            api_url=sms.api_url,
        )
    else:
        senders[Channel.SMS] = InMemoryChannelSender()

    return senders


__all__ = [
    "BaseChannelSender",
    "InMemoryChannelSender",
    "SendResult",
    "get_channel_senders",
]
