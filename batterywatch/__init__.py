__version__ = "0.1.0"

from .background import BackgroundBudgetTracker, ExecutionHost, GrantSnapshot, SimulatedExecutionHost
from .channels import Broadcast
from .dispatch import ManualDispatcher, ThreadDispatcher
from .models import (
    CollectionStatistics,
    CollectionStatus,
    CollectionSummary,
    Collecting,
    Failed,
    Idle,
    PowerState,
    Sample,
    Succeeded,
    Transmitting,
)
from .orchestrator import CollectionOrchestrator
from .sampler import SampleSource
from .transmitter import SendOutcome, Transmitter

__all__ = [
    "BackgroundBudgetTracker",
    "Broadcast",
    "Collecting",
    "CollectionOrchestrator",
    "CollectionStatistics",
    "CollectionStatus",
    "CollectionSummary",
    "ExecutionHost",
    "Failed",
    "GrantSnapshot",
    "Idle",
    "ManualDispatcher",
    "PowerState",
    "Sample",
    "SampleSource",
    "SendOutcome",
    "SimulatedExecutionHost",
    "Succeeded",
    "ThreadDispatcher",
    "Transmitter",
    "Transmitting",
    "__version__",
]
