"""Minimal publish/subscribe emitter shared by all components."""

import traceback
from typing import Any, Callable, Dict, List

Handler = Callable[[Any], None]

# -- event names --------------------------------------------------------------

TEMPLATE_CREATED = 'template:created'
TEMPLATE_UPDATED = 'template:updated'
TEMPLATE_DELETED = 'template:deleted'

ORCHESTRATOR_CREATED = 'orchestrator:created'
ORCHESTRATOR_STARTED = 'orchestrator:started'
ORCHESTRATOR_PHASE_CHANGED = 'orchestrator:phaseChanged'
ORCHESTRATOR_ANALYSIS_COMPLETE = 'orchestrator:analysisComplete'
ORCHESTRATOR_TASKS_READY = 'orchestrator:tasksReady'
ORCHESTRATOR_PROGRESS = 'orchestrator:progress'
ORCHESTRATOR_COMPLETED = 'orchestrator:completed'
ORCHESTRATOR_ERROR = 'orchestrator:error'
ORCHESTRATOR_CANCELLED = 'orchestrator:cancelled'
ORCHESTRATOR_PAUSED = 'orchestrator:paused'
ORCHESTRATOR_RESUMED = 'orchestrator:resumed'
ORCHESTRATOR_CLEANUP = 'orchestrator:cleanup'
ORCHESTRATOR_VALIDATION_FAILED = 'orchestrator:validationFailed'

WORKER_QUEUED = 'worker:queued'
WORKER_SPAWNING = 'worker:spawning'
WORKER_SPAWNED = 'worker:spawned'
WORKER_PROGRESS = 'worker:progress'
WORKER_COMPLETED = 'worker:completed'
WORKER_FAILED = 'worker:failed'
WORKER_TIMEOUT = 'worker:timeout'
WORKER_PAUSED = 'worker:paused'
WORKER_RESUMED = 'worker:resumed'
WORKER_CANCELLED = 'worker:cancelled'
WORKER_RETRYING = 'worker:retrying'
WORKERS_ARCHIVED = 'workers:archived'

SUBSESSION_REGISTERED = 'subsession:registered'
SUBSESSION_STATUS_CHANGED = 'subsession:statusChanged'
SUBSESSION_ACTIVITY = 'subsession:activity'
SUBSESSION_RESULT_RETURNED = 'subsession:resultReturned'
SUBSESSION_ORPHANED = 'subsession:orphaned'
SUBSESSION_ERROR = 'subsession:error'
SUBSESSION_ARCHIVED = 'subsession:archived'
SUBSESSION_UNREGISTERED = 'subsession:unregistered'
SUBSESSION_MONITORING_STARTED = 'subsession:monitoring:started'
SUBSESSION_MONITORING_STOPPED = 'subsession:monitoring:stopped'

TEMPLATE_EVENTS = (TEMPLATE_CREATED, TEMPLATE_UPDATED, TEMPLATE_DELETED)
ORCHESTRATOR_EVENTS = (
    ORCHESTRATOR_CREATED, ORCHESTRATOR_STARTED, ORCHESTRATOR_PHASE_CHANGED,
    ORCHESTRATOR_ANALYSIS_COMPLETE, ORCHESTRATOR_TASKS_READY,
    ORCHESTRATOR_PROGRESS, ORCHESTRATOR_COMPLETED, ORCHESTRATOR_ERROR,
    ORCHESTRATOR_CANCELLED, ORCHESTRATOR_PAUSED, ORCHESTRATOR_RESUMED,
    ORCHESTRATOR_CLEANUP, ORCHESTRATOR_VALIDATION_FAILED,
)
WORKER_EVENTS = (
    WORKER_QUEUED, WORKER_SPAWNING, WORKER_SPAWNED, WORKER_PROGRESS,
    WORKER_COMPLETED, WORKER_FAILED, WORKER_TIMEOUT, WORKER_PAUSED,
    WORKER_RESUMED, WORKER_CANCELLED, WORKER_RETRYING, WORKERS_ARCHIVED,
)
SUBSESSION_EVENTS = (
    SUBSESSION_REGISTERED, SUBSESSION_STATUS_CHANGED, SUBSESSION_ACTIVITY,
    SUBSESSION_RESULT_RETURNED, SUBSESSION_ORPHANED, SUBSESSION_ERROR,
    SUBSESSION_ARCHIVED, SUBSESSION_UNREGISTERED,
    SUBSESSION_MONITORING_STARTED, SUBSESSION_MONITORING_STOPPED,
)


class EventEmitter:
    """Synchronous event emitter.

    Handlers run in registration order. A handler that raises is reported
    and the remaining handlers still run.
    """

    def __init__(self, tag: str = "EVENTS"):
        self._handlers: Dict[str, List[Handler]] = {}
        self._tag = tag

    def on(self, event: str, handler: Handler):
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Handler):
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def emit(self, event: str, payload: Any = None):
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception as exc:
                print(f"[{self._tag}] Warning: listener for '{event}' "
                      f"raised {exc!r}")
                traceback.print_exc()
