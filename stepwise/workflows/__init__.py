"""Coordination protocols runnable by the workflow engine."""

from .base import Completion, Workflow
from .draft import DraftWorkflow
from .listing import ListingWorkflow
from .purchase import PurchaseWorkflow
from .resolution import ResolutionWorkflow
from .saga import InvariantViolation, Saga, SagaCancelled
from .waiver import WaiverWorkflow

BUILTIN_WORKFLOWS = (
    PurchaseWorkflow,
    ListingWorkflow,
    DraftWorkflow,
    WaiverWorkflow,
    ResolutionWorkflow,
)

__all__ = [
    "BUILTIN_WORKFLOWS",
    "Completion",
    "DraftWorkflow",
    "InvariantViolation",
    "ListingWorkflow",
    "PurchaseWorkflow",
    "ResolutionWorkflow",
    "Saga",
    "SagaCancelled",
    "Workflow",
    "WaiverWorkflow",
]
