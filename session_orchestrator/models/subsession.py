"""SubSessionRelation dataclass: one parent -> child session link."""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from session_orchestrator.models.enums import SubSessionStatus


@dataclass
class SubSessionRelation:
    child_session_id: str
    parent_session_id: str
    spawn_tool_id: Optional[str] = None
    task_id: Optional[str] = None
    status: str = SubSessionStatus.ACTIVE.value
    created_at: float = 0.0
    last_activity_at: float = 0.0
    completing_since: Optional[float] = None
    returned_at: Optional[float] = None
    last_assistant_message: Optional[str] = None
    message_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        def iso(ts):
            return datetime.fromtimestamp(ts).isoformat() if ts else None

        return {
            'child_session_id': self.child_session_id,
            'parent_session_id': self.parent_session_id,
            'spawn_tool_id': self.spawn_tool_id,
            'task_id': self.task_id,
            'status': self.status,
            'created_at': iso(self.created_at),
            'last_activity_at': iso(self.last_activity_at),
            'returned_at': iso(self.returned_at),
            'message_count': self.message_count,
            'has_result': self.last_assistant_message is not None,
            'error': self.error,
        }
