from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .models import Channel


class SchedulerConfig(BaseModel):
    """Timing and retry settings for the workflow scheduler."""

    poll_interval: float = 30.0
    max_attempts: int = 3
    backoff_base: float = 1.5
    backoff_jitter: float = 0.5
    concurrency: int = 10


class EmailConfig(BaseModel):
    """Outbound email sender settings."""

    provider: Literal["inmemory", "resend"] = "inmemory"
    api_key: Optional[str] = None
    api_url: str = "https://api.resend.com"
    from_email: str = "onboarding@resend.dev"
    from_name: str = "Notifications"


class SmsConfig(BaseModel):
    """Outbound SMS sender settings."""

    provider: Literal["inmemory", "twilio"] = "inmemory"
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    from_number: Optional[str] = None
    api_url: str = "https://api.twilio.com"


class NotificationConfig(BaseModel):
    default_channels: List[Channel] = Field(
        default_factory=lambda: [Channel.IN_APP, Channel.EMAIL]
    )
    default_timezone: str = "UTC"
    email: EmailConfig = EmailConfig()
    sms: SmsConfig = SmsConfig()


class LeadflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    scheduler: SchedulerConfig = SchedulerConfig()
    notifications: NotificationConfig = NotificationConfig()


def load_config(path: Optional[str] = None) -> LeadflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LEADFLOW_CONFIG env
            variable or 'leadflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEADFLOW_CONFIG", "leadflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LeadflowConfig(**data)
    else:
        config = LeadflowConfig()

    env_db_url = os.getenv("LEADFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    email = config.notifications.email
    if os.getenv("RESEND_API_KEY"):
        email.api_key = os.environ["RESEND_API_KEY"]
        email.provider = "resend"

    sms = config.notifications.sms
    if os.getenv("TWILIO_ACCOUNT_SID") and os.getenv("TWILIO_AUTH_TOKEN"):
        sms.account_sid = os.environ["TWILIO_ACCOUNT_SID"]
        sms.auth_token = os.environ["TWILIO_AUTH_TOKEN"]
        sms.from_number = os.getenv("TWILIO_PHONE_NUMBER", sms.from_number)
        sms.provider = "twilio"
    return config
