"""Run orchestration, incremental scheduling, and the watch loop."""

from spec_compliance.control_plane.runner import (
    ComplianceRunner,
    CorpusSource,
    ProviderUnavailableError,
    RunnerSettings,
)
from spec_compliance.control_plane.scheduler import (
    IncrementalScheduler,
    ModuleState,
    SchedulerTransition,
    TransitionListener,
    TransitionReason,
)
from spec_compliance.control_plane.watch import ChangeEvent, PollingChangeSource, WatchService

__all__ = [
    "ChangeEvent",
    "ComplianceRunner",
    "CorpusSource",
    "IncrementalScheduler",
    "ModuleState",
    "PollingChangeSource",
    "ProviderUnavailableError",
    "RunnerSettings",
    "SchedulerTransition",
    "TransitionListener",
    "TransitionReason",
    "WatchService",
]
