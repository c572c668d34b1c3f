"""Task dataclass: one unit of work planned by the main agent."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    description: str
    scope: Tuple[str, ...] = field(default_factory=tuple)
    priority: Any = None
    dependencies: Tuple[str, ...] = field(default_factory=tuple)
    estimated_tokens: Optional[int] = None
    type: Optional[str] = None
    skipped: bool = False

    @classmethod
    def from_dict(cls, data: Dict) -> "Task":
        scope = data.get('scope') or ()
        if isinstance(scope, str):
            scope = (scope,)
        return cls(
            id=str(data['id']),
            title=data['title'],
            description=data['description'],
            scope=tuple(scope),
            priority=data.get('priority'),
            dependencies=tuple(str(d) for d in data.get('dependencies') or ()),
            estimated_tokens=data.get('estimated_tokens'),
            type=data.get('type'),
            skipped=bool(data.get('skipped', False)),
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'scope': list(self.scope),
            'priority': self.priority,
            'dependencies': list(self.dependencies),
            'estimated_tokens': self.estimated_tokens,
            'type': self.type,
            'skipped': self.skipped,
        }
