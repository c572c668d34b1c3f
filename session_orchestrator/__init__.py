"""Session orchestrator: coordinate a big task across a main agent session
and a pool of worker sessions, with inactivity-based sub-session tracking."""

from session_orchestrator.config import (
    ORCH_SESSION_API_URL, ORCH_STATE_DIR, ORCH_STATE_FILE,
    ORCH_TEMPLATES_DIR, ORCH_CUSTOM_TEMPLATES_DIR,
    ORCH_MAX_WORKERS, ORCH_WORKER_TIMEOUT, ORCH_RETRY_LIMIT,
)
from session_orchestrator.errors import (
    OrchestratorError, NotFoundError, LifecycleError, TemplateError,
    CircularInheritanceError, SubSessionError, TransportError,
)
from session_orchestrator.events import EventEmitter
from session_orchestrator.models import (
    OrchestrationStatus, Phase, WorkerStatus, SubSessionStatus,
    Task, ToolStats, Orchestration, WorkerState, SubSessionRelation,
    ParsedResponse, ValidationResult, FallbackDetection,
)
from session_orchestrator.response_parser import ResponseParser
from session_orchestrator.templates import TemplateManager
from session_orchestrator.session_api import SessionController, HttpSessionAPI
from session_orchestrator.worker_manager import WorkerManager, WorkerPoolConfig
from session_orchestrator.subsessions import SubSessionManager, SubSessionConfig
from session_orchestrator.orchestrator import OrchestratorManager
from session_orchestrator.coordinator import OrchestratorModule
from session_orchestrator.cli import main
