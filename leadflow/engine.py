"""Wiring of the scheduler, the stage evaluator and the dispatcher."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from .channels import BaseChannelSender, get_channel_senders
from .config import LeadflowConfig, load_config
from .models import Channel, utcnow
from .notifications import NotificationDispatcher
from .persistence import AutomationRepository, get_repository
from .scheduler import WorkflowScheduler
from .transitions import StageTransitionEvaluator

logger = logging.getLogger(__name__)


@dataclass
class AutomationEngine:
    config: LeadflowConfig
    repository: AutomationRepository
    dispatcher: NotificationDispatcher
    scheduler: WorkflowScheduler
    evaluator: StageTransitionEvaluator

    async def run_once(self, now: datetime) -> int:
        """One worker pass: wake due enrollments, then check elapsed-time triggers."""
        advanced = await self.scheduler.tick(now)
        fired = await self.evaluator.sweep_elapsed(now)
        if advanced or fired:
            logger.info(f"Worker pass at {now.isoformat()}: {advanced} advanced, {len(fired)} transitioned")
        return advanced + len(fired)

    async def run_worker(
        self,
        interval: Optional[float] = None,
        lifespan: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Poll until ``lifespan`` seconds have passed, or forever if it is None."""
        interval = interval if interval is not None else self.config.scheduler.poll_interval
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while True:
            await self.run_once(clock())
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break
            await asyncio.sleep(interval)


def build_engine(
    config: Optional[LeadflowConfig] = None,
    repository: Optional[AutomationRepository] = None,
    senders: Optional[Dict[Channel, BaseChannelSender]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AutomationEngine:
    """Assemble an engine from configuration, with optional overrides for tests."""
    config = config or load_config()
    repository = repository or get_repository()
    senders = senders if senders is not None else get_channel_senders(config)

    dispatcher = NotificationDispatcher(
        repository,
        senders,
        default_channels=config.notifications.default_channels,
        default_timezone=config.notifications.default_timezone,
    )
    scheduler = WorkflowScheduler(
        repository,
        dispatcher,
        max_attempts=config.scheduler.max_attempts,
        backoff_base=config.scheduler.backoff_base,
        backoff_jitter=config.scheduler.backoff_jitter,
        concurrency=config.scheduler.concurrency,
        sleep=sleep,
    )
    evaluator = StageTransitionEvaluator(repository, dispatcher, scheduler=scheduler)
    scheduler.transitions = evaluator
    return AutomationEngine(
        config=config,
        repository=repository,
        dispatcher=dispatcher,
        scheduler=scheduler,
        evaluator=evaluator,
    )
