"""Data models for orchestrations, workers and sub-sessions."""

from session_orchestrator.models.enums import (
    OrchestrationStatus, Phase, WorkerStatus, SubSessionStatus,
    TERMINAL_STATUSES, PHASE_STATUS,
    ACTIVE_WORKER_STATUSES, TERMINAL_WORKER_STATUSES,
)
from session_orchestrator.models.task import Task
from session_orchestrator.models.tool_stats import ToolStats
from session_orchestrator.models.phase_data import (
    AnalysisData, TaskListData, ProgressData, CompletionData,
    AggregationData, VerificationData, PhaseData, decode_phase_data,
)
from session_orchestrator.models.parsed_response import (
    ParsedResponse, ValidationResult, FallbackDetection,
)
from session_orchestrator.models.orchestration import Orchestration
from session_orchestrator.models.worker_state import WorkerState
from session_orchestrator.models.subsession import SubSessionRelation

__all__ = [
    "OrchestrationStatus",
    "Phase",
    "WorkerStatus",
    "SubSessionStatus",
    "TERMINAL_STATUSES",
    "PHASE_STATUS",
    "ACTIVE_WORKER_STATUSES",
    "TERMINAL_WORKER_STATUSES",
    "Task",
    "ToolStats",
    "AnalysisData",
    "TaskListData",
    "ProgressData",
    "CompletionData",
    "AggregationData",
    "VerificationData",
    "PhaseData",
    "decode_phase_data",
    "ParsedResponse",
    "ValidationResult",
    "FallbackDetection",
    "Orchestration",
    "WorkerState",
    "SubSessionRelation",
]
