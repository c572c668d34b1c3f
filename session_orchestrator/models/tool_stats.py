"""Tool-usage tally shared by workers and orchestrations."""

from dataclasses import asdict, dataclass, fields
from typing import Dict, Optional


@dataclass
class ToolStats:
    reads: int = 0
    writes: int = 0
    edits: int = 0
    shell: int = 0
    search: int = 0
    web: int = 0
    spawns: int = 0

    @property
    def total(self) -> int:
        return sum(getattr(self, f.name) for f in fields(self))

    def add(self, other: "ToolStats"):
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def to_dict(self) -> Dict[str, int]:
        data = asdict(self)
        data['total'] = self.total
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "ToolStats":
        data = data or {}
        return cls(**{
            k: int(v) for k, v in data.items()
            if k in cls.__dataclass_fields__
        })
