"""Orchestration dataclass: persistent state for one coordinated big task."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from session_orchestrator.models.enums import (
    OrchestrationStatus, Phase, TERMINAL_STATUSES,
)
from session_orchestrator.models.phase_data import AnalysisData
from session_orchestrator.models.task import Task
from session_orchestrator.models.tool_stats import ToolStats

_DATE_FIELDS = ('created_at', 'updated_at', 'started_at', 'completed_at')


def _parse_date(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Orchestration:
    id: str
    template_id: str
    cwd: str
    user_request: str
    template: Dict[str, Any] = field(default_factory=dict)
    main_session_id: Optional[str] = None
    status: str = OrchestrationStatus.CREATED.value
    current_phase: str = Phase.ANALYSIS.value
    analysis: Optional[AnalysisData] = None
    tasks: List[Task] = field(default_factory=list)
    parallel_groups: List[List[str]] = field(default_factory=list)
    workers: Dict[str, str] = field(default_factory=dict)     # task id -> session id
    stats: ToolStats = field(default_factory=ToolStats)
    custom_variables: Dict[str, Any] = field(default_factory=dict)
    aggregation: Optional[Dict[str, Any]] = None
    verification: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    previous_status: Optional[str] = None
    previous_phase: Optional[str] = None
    transcript_watermark: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def active_tasks(self) -> List[Task]:
        return [t for t in self.tasks if not t.skipped]

    def record_error(self, phase: Optional[str], error: str) -> Dict:
        entry = {
            'phase': phase,
            'error': error,
            'timestamp': datetime.now().isoformat(),
        }
        self.errors.append(entry)
        return entry

    # -- serialization --------------------------------------------------------

    def to_dict(self) -> Dict:
        data = {
            'id': self.id,
            'template_id': self.template_id,
            'template': self.template,
            'main_session_id': self.main_session_id,
            'cwd': self.cwd,
            'user_request': self.user_request,
            'status': self.status,
            'current_phase': self.current_phase,
            'analysis': asdict(self.analysis) if self.analysis else None,
            'tasks': [t.to_dict() for t in self.tasks],
            'parallel_groups': [list(g) for g in self.parallel_groups],
            'workers': dict(self.workers),
            'stats': self.stats.to_dict(),
            'custom_variables': self.custom_variables,
            'aggregation': self.aggregation,
            'verification': self.verification,
            'errors': list(self.errors),
            'previous_status': self.previous_status,
            'previous_phase': self.previous_phase,
            'transcript_watermark': self.transcript_watermark,
        }
        for name in _DATE_FIELDS:
            value = getattr(self, name)
            data[name] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "Orchestration":
        kwargs = {
            k: v for k, v in data.items()
            if k in cls.__dataclass_fields__
        }
        for name in _DATE_FIELDS:
            if name in kwargs:
                kwargs[name] = _parse_date(kwargs[name])
        if kwargs.get('created_at') is None:
            kwargs.pop('created_at', None)
        if kwargs.get('updated_at') is None:
            kwargs.pop('updated_at', None)
        if kwargs.get('analysis'):
            kwargs['analysis'] = AnalysisData.from_dict(kwargs['analysis'])
        kwargs['tasks'] = [Task.from_dict(t) for t in kwargs.get('tasks') or []]
        kwargs['parallel_groups'] = [list(g) for g in
                                     kwargs.get('parallel_groups') or []]
        kwargs['workers'] = dict(kwargs.get('workers') or {})
        kwargs['stats'] = ToolStats.from_dict(kwargs.get('stats'))
        kwargs['custom_variables'] = dict(kwargs.get('custom_variables') or {})
        kwargs['errors'] = list(kwargs.get('errors') or [])
        return cls(**kwargs)
