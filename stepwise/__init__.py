"""Stepwise: durable coordination of long-running, multi-party workflows."""

from .collaborators import Collaborators
from .config import StepwiseConfig, load_config
from .contracts import (
    ActivityFailed,
    RetryPolicy,
    RunResult,
    StepOutcome,
    StepSpec,
    UnknownQuery,
    WorkflowMessage,
    WorkflowNotFound,
    WorkflowRun,
)
from .engine import SignalRelay, WorkflowEngine, WorkflowRegistry, publish_signal
from .persistence import get_repository
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActivityFailed",
    "Collaborators",
    "RetryPolicy",
    "RunResult",
    "SignalRelay",
    "StepOutcome",
    "StepSpec",
    "StepwiseConfig",
    "UnknownQuery",
    "WorkflowEngine",
    "WorkflowMessage",
    "WorkflowNotFound",
    "WorkflowRegistry",
    "WorkflowRun",
    "get_repository",
    "get_transport",
    "load_config",
    "publish_signal",
]
