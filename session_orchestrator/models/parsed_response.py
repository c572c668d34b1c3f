"""Value objects returned by the response parser. Never persisted."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from session_orchestrator.models.phase_data import PhaseData, decode_phase_data


@dataclass
class ParsedResponse:
    found: bool
    phase: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    before_text: Optional[str] = None
    after_text: Optional[str] = None
    raw: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True for a found envelope with a decodable phase and data."""
        return self.found and self.error is None and self.phase is not None

    def payload(self) -> Optional[PhaseData]:
        if not self.ok:
            return None
        return decode_phase_data(self.phase, self.data)


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def fail(self, message: str):
        self.valid = False
        self.errors.append(message)


@dataclass
class FallbackDetection:
    detected: bool
    probable_phase: Optional[str] = None
    confidence: float = 0.0
