"""Typed payloads carried by response envelopes, one class per phase.

``decode_phase_data`` maps the envelope's ``phase`` tag onto the matching
class. Unknown phases decode to ``None``; callers then fall back to the
raw ``data`` dict.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from session_orchestrator.models.task import Task


def _as_list(value) -> List:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@dataclass
class AnalysisData:
    summary: str
    recommended_splits: Any
    key_files: List[str] = field(default_factory=list)
    estimated_complexity: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    notes: Optional[str] = None
    components: List[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict) -> "AnalysisData":
        return cls(
            summary=data.get('summary') or '',
            recommended_splits=data.get('recommended_splits'),
            key_files=_as_list(data.get('key_files')),
            estimated_complexity=data.get('estimated_complexity'),
            warnings=_as_list(data.get('warnings')),
            notes=data.get('notes'),
            components=_as_list(data.get('components')),
        )


@dataclass
class TaskListData:
    tasks: List[Task]
    total_tasks: Optional[int] = None
    parallelizable_groups: Optional[List[List[str]]] = None
    execution_order: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "TaskListData":
        tasks = [Task.from_dict(t) for t in data.get('tasks') or []
                 if isinstance(t, dict)]
        groups = data.get('parallelizable_groups')
        if groups is not None:
            groups = [[str(t) for t in _as_list(g)] for g in _as_list(groups)]
        return cls(
            tasks=tasks,
            total_tasks=data.get('total_tasks'),
            parallelizable_groups=groups,
            execution_order=data.get('execution_order'),
        )


@dataclass
class ProgressData:
    task_id: str
    status: str
    progress_percent: Optional[float] = None
    current_action: Optional[str] = None
    files_processed: Optional[int] = None
    files_total: Optional[int] = None
    output_preview: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "ProgressData":
        pct = data.get('progress_percent')
        if not isinstance(pct, (int, float)) or isinstance(pct, bool):
            pct = None
        return cls(
            task_id=str(data.get('task_id', '')),
            status=data.get('status') or '',
            progress_percent=pct,
            current_action=data.get('current_action'),
            files_processed=data.get('files_processed'),
            files_total=data.get('files_total'),
            output_preview=data.get('output_preview'),
        )


@dataclass
class CompletionData:
    task_id: str
    status: str
    summary: Optional[str] = None
    output_files: List[str] = field(default_factory=list)
    output: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict) -> "CompletionData":
        return cls(
            task_id=str(data.get('task_id', '')),
            status=data.get('status') or '',
            summary=data.get('summary'),
            output_files=_as_list(data.get('output_files')),
            output=data.get('output'),
            error=data.get('error'),
            warnings=_as_list(data.get('warnings')),
            metrics=data.get('metrics') if isinstance(data.get('metrics'), dict) else {},
        )


@dataclass
class AggregationData:
    status: str
    summary: Optional[str] = None
    conflicts: List[Any] = field(default_factory=list)
    merged_output: Optional[str] = None
    output_files: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict) -> "AggregationData":
        return cls(
            status=data.get('status') or '',
            summary=data.get('summary'),
            conflicts=_as_list(data.get('conflicts')),
            merged_output=data.get('merged_output'),
            output_files=_as_list(data.get('output_files')),
        )


@dataclass
class VerificationData:
    status: str
    summary: Optional[str] = None
    issues: List[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict) -> "VerificationData":
        return cls(
            status=data.get('status') or '',
            summary=data.get('summary'),
            issues=_as_list(data.get('issues')),
        )


PhaseData = Union[AnalysisData, TaskListData, ProgressData, CompletionData,
                  AggregationData, VerificationData]

PHASE_DATA_TYPES = {
    'analysis': AnalysisData,
    'task_list': TaskListData,
    'progress': ProgressData,
    'completion': CompletionData,
    'aggregation': AggregationData,
    'verification': VerificationData,
}


def decode_phase_data(phase: str, data: Dict) -> Optional[PhaseData]:
    cls = PHASE_DATA_TYPES.get(phase)
    if cls is None or not isinstance(data, dict):
        return None
    return cls.from_dict(data)
