"""Status and phase enumerations."""

from enum import Enum


class OrchestrationStatus(Enum):
    """Lifecycle status of an orchestration."""
    CREATED = "created"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    CONFIRMING = "confirming"      # task list ready, waiting for confirm()
    SPAWNING = "spawning"
    RUNNING = "running"
    AGGREGATING = "aggregating"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class Phase(Enum):
    """Workflow phase of an orchestration."""
    ANALYSIS = "analysis"
    TASK_PLANNING = "taskPlanning"
    WORKER_EXECUTION = "workerExecution"
    AGGREGATION = "aggregation"
    VERIFICATION = "verification"


class WorkerStatus(Enum):
    """Status of a single worker session."""
    PENDING = "pending"            # queued, waiting for an admission slot
    SPAWNING = "spawning"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class SubSessionStatus(Enum):
    """Status of a parent -> child session relation."""
    ACTIVE = "active"
    COMPLETING = "completing"      # inactive, waiting out the confirmation delay
    COMPLETED = "completed"
    RETURNED = "returned"
    ORPHANED = "orphaned"          # parent gone, result not delivered
    ERROR = "error"


TERMINAL_STATUSES = frozenset({
    OrchestrationStatus.COMPLETED.value,
    OrchestrationStatus.CANCELLED.value,
    OrchestrationStatus.ERROR.value,
})

PHASE_STATUS = {
    Phase.ANALYSIS.value: OrchestrationStatus.ANALYZING.value,
    Phase.TASK_PLANNING.value: OrchestrationStatus.PLANNING.value,
    Phase.WORKER_EXECUTION.value: OrchestrationStatus.RUNNING.value,
    Phase.AGGREGATION.value: OrchestrationStatus.AGGREGATING.value,
    Phase.VERIFICATION.value: OrchestrationStatus.VERIFYING.value,
}

ACTIVE_WORKER_STATUSES = frozenset({
    WorkerStatus.SPAWNING.value,
    WorkerStatus.RUNNING.value,
    WorkerStatus.PAUSED.value,
})

TERMINAL_WORKER_STATUSES = frozenset({
    WorkerStatus.COMPLETED.value,
    WorkerStatus.FAILED.value,
    WorkerStatus.TIMEOUT.value,
    WorkerStatus.CANCELLED.value,
})
