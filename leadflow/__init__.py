"""leadflow: lead lifecycle automation for prospective-student pipelines."""

from .definitions import parse_workflow_definition
from .engine import AutomationEngine, build_engine
from .notifications import NotificationDispatcher
from .persistence import get_repository
from .scheduler import WorkflowScheduler
from .transitions import StageTransitionEvaluator

__version__ = "0.1.0"
__all__ = [
    "AutomationEngine",
    "NotificationDispatcher",
    "StageTransitionEvaluator",
    "WorkflowScheduler",
    "build_engine",
    "get_repository",
    "parse_workflow_definition",
]
