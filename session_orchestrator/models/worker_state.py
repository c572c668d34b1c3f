"""WorkerState dataclass: one spawned task execution."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from session_orchestrator.models.enums import (
    ACTIVE_WORKER_STATUSES, TERMINAL_WORKER_STATUSES, WorkerStatus,
)
from session_orchestrator.models.task import Task
from session_orchestrator.models.tool_stats import ToolStats


def _iso(ts: Optional[float]) -> Optional[str]:
    return datetime.fromtimestamp(ts).isoformat() if ts else None


@dataclass
class WorkerState:
    session_id: str
    orchestration_id: str
    task_id: str
    task: Task
    status: str = WorkerStatus.PENDING.value
    progress: int = 0
    current_action: Optional[str] = None
    tool_stats: ToolStats = field(default_factory=ToolStats)
    output: Optional[str] = None
    output_files: List[str] = field(default_factory=list)
    error: Optional[str] = None
    retry_count: int = 0
    message_count: int = 0
    created_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    last_poll_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_WORKER_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKER_STATUSES

    def to_dict(self) -> Dict:
        return {
            'session_id': self.session_id,
            'orchestration_id': self.orchestration_id,
            'task_id': self.task_id,
            'task_title': self.task.title,
            'status': self.status,
            'progress': self.progress,
            'current_action': self.current_action,
            'tool_stats': self.tool_stats.to_dict(),
            'output': self.output,
            'output_files': list(self.output_files),
            'error': self.error,
            'retry_count': self.retry_count,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'last_poll_at': _iso(self.last_poll_at),
        }
