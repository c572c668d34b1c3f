"""Worker pool: spawn, pace, poll, time out and retry worker sessions.

Each task of a confirmed plan runs in its own worker session. The pool
caps how many run at once, queues the rest in FIFO order and drains the
queue into freed slots after every poll sweep.
"""

import asyncio
import re
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from session_orchestrator.config import (
    ORCH_MAX_WORKERS, ORCH_RETRY_LIMIT, ORCH_SPAWN_DELAY,
    ORCH_WORKER_POLL_INTERVAL, ORCH_WORKER_TIMEOUT,
)
from session_orchestrator.errors import (
    LifecycleError, NotFoundError, OrchestratorError, TemplateError,
)
from session_orchestrator.events import (
    EventEmitter, WORKER_CANCELLED, WORKER_COMPLETED, WORKER_FAILED,
    WORKER_PAUSED, WORKER_PROGRESS, WORKER_QUEUED, WORKER_RESUMED,
    WORKER_RETRYING, WORKER_SPAWNED, WORKER_SPAWNING, WORKER_TIMEOUT,
    WORKERS_ARCHIVED,
)
from session_orchestrator.models import (
    CompletionData, ProgressData, Task, ToolStats, WorkerState, WorkerStatus,
)
from session_orchestrator.response_parser import ResponseParser
from session_orchestrator.session_api import SessionController
from session_orchestrator.templates import TemplateManager, substitute_variables
from session_orchestrator.transcript import ASSISTANT, transcript_text

# Keyword classes used to re-derive a tool-usage tally from raw text.
TOOL_PATTERNS = {
    'reads': re.compile(r'(?:Read|Reading|read_file|ReadFile|Glob|glob)'),
    'writes': re.compile(r'(?:Write|Writing|write_file|WriteFile)'),
    'edits': re.compile(r'(?:Edit|Editing|edit_file|EditFile)'),
    'shell': re.compile(r'(?:Bash|bash|execute|shell|terminal)'),
    'search': re.compile(r'(?:Grep|grep|search|ripgrep|\brg\b)'),
    'web': re.compile(r'(?:WebFetch|WebSearch|web_fetch|web_search)'),
    'spawns': re.compile(r'(?:Task\s*\(|subagent|TodoWrite)'),
}

FALLBACK_COMPLETION_HINT = 'Possibly completed (format not detected)'
FALLBACK_MIN_CONFIDENCE = 0.7
SESSION_TITLE_LIMIT = 100
RETRY_SUFFIX = re.compile(r'_r(\d+)$')


def extract_tool_stats(text: str) -> ToolStats:
    return ToolStats(**{name: len(pattern.findall(text or ''))
                        for name, pattern in TOOL_PATTERNS.items()})


def worker_session_id(orchestration_id: str, task_id: str,
                      attempt: int = 0) -> str:
    """Deterministic, externally filterable worker session id."""
    session_id = f"local___orch_{orchestration_id}_worker_{task_id}"
    if attempt:
        session_id += f"_r{attempt}"
    return session_id


@dataclass
class WorkerPoolConfig:
    max_workers: int = ORCH_MAX_WORKERS
    poll_interval: float = ORCH_WORKER_POLL_INTERVAL
    worker_timeout: float = ORCH_WORKER_TIMEOUT
    retry_limit: int = ORCH_RETRY_LIMIT
    spawn_delay: float = ORCH_SPAWN_DELAY

    @classmethod
    def from_template(cls, template: Dict, base: "WorkerPoolConfig" = None
                      ) -> "WorkerPoolConfig":
        base = base or cls()
        config = template.get('config') or {}
        return cls(
            max_workers=int(config.get('maxWorkers', base.max_workers)),
            poll_interval=base.poll_interval,
            worker_timeout=float(config.get('workerTimeout', base.worker_timeout)),
            retry_limit=int(config.get('retryLimit', base.retry_limit)),
            spawn_delay=base.spawn_delay,
        )


@dataclass
class _SpawnContext:
    template: Dict[str, Any]
    variables: Dict[str, Any] = field(default_factory=dict)


class WorkerManager:
    """Owns every WorkerState. Other layers only read them."""

    def __init__(self, sessions: SessionController,
                 parser: Optional[ResponseParser] = None,
                 config: Optional[WorkerPoolConfig] = None,
                 clock: Callable[[], float] = time.time,
                 debug: bool = False):
        self.sessions = sessions
        self.parser = parser or ResponseParser()
        self.config = config or WorkerPoolConfig()
        self.clock = clock
        self.debug = debug
        self.events = EventEmitter("WORKERS")

        self.workers: Dict[str, WorkerState] = {}               # session id -> state
        self._by_task: Dict[Tuple[str, str], str] = {}          # (orch, task) -> session id
        self._by_orchestration: Dict[str, List[str]] = {}       # orch -> session ids
        self._contexts: Dict[str, _SpawnContext] = {}           # session id -> spawn context
        self._queue: Deque[str] = deque()
        self._in_flight = set()
        self._sweeping = False
        self._monitor: Optional[asyncio.Task] = None

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[WORKERS] {msg}")

    def _payload(self, worker: WorkerState, **extra) -> Dict:
        payload = {
            'session_id': worker.session_id,
            'orchestration_id': worker.orchestration_id,
            'task_id': worker.task_id,
        }
        payload.update(extra)
        return payload

    # -- indexes --------------------------------------------------------------

    def _register(self, orchestration_id: str, task: Task,
                  context: _SpawnContext) -> WorkerState:
        key = (orchestration_id, task.id)
        if key in self._by_task:
            raise LifecycleError(f"Task '{task.id}' already has a worker "
                                 f"({self._by_task[key]}); use retry_worker")
        session_id = worker_session_id(orchestration_id, task.id)
        if session_id in self.workers:
            raise LifecycleError(f"Worker with session ID '{session_id}' "
                                 f"already exists")

        worker = WorkerState(session_id=session_id,
                             orchestration_id=orchestration_id,
                             task_id=task.id, task=task,
                             created_at=self.clock())
        self.workers[session_id] = worker
        self._contexts[session_id] = context
        self._by_task[key] = session_id
        self._by_orchestration.setdefault(orchestration_id, []).append(session_id)
        return worker

    def _rekey(self, old_id: str, new_id: str):
        """Move a worker to a new session id, updating every index together."""
        if old_id == new_id:
            return
        worker = self.workers.pop(old_id)
        worker.session_id = new_id
        self.workers[new_id] = worker
        self._contexts[new_id] = self._contexts.pop(old_id)
        self._by_task[(worker.orchestration_id, worker.task_id)] = new_id
        ids = self._by_orchestration[worker.orchestration_id]
        ids[ids.index(old_id)] = new_id
        self._queue = deque(new_id if s == old_id else s for s in self._queue)

    def _forget(self, session_id: str):
        worker = self.workers.pop(session_id, None)
        if worker is None:
            return
        self._contexts.pop(session_id, None)
        key = (worker.orchestration_id, worker.task_id)
        if self._by_task.get(key) == session_id:
            del self._by_task[key]
        ids = self._by_orchestration.get(worker.orchestration_id, [])
        if session_id in ids:
            ids.remove(session_id)
        if not ids:
            self._by_orchestration.pop(worker.orchestration_id, None)
        if session_id in self._queue:
            self._queue.remove(session_id)

    # -- queries --------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return sum(1 for w in self.workers.values() if w.is_active)

    @property
    def available_slots(self) -> int:
        return max(0, self.config.max_workers - self.active_count)

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def get_worker(self, session_id: str) -> WorkerState:
        worker = self.workers.get(session_id)
        if worker is None:
            raise NotFoundError(f"Worker {session_id} not found")
        return worker

    def get_worker_by_task(self, orchestration_id: str,
                           task_id: str) -> Optional[WorkerState]:
        session_id = self._by_task.get((orchestration_id, task_id))
        return self.workers.get(session_id) if session_id else None

    def get_workers(self, orchestration_id: str) -> List[WorkerState]:
        return [self.workers[s] for s in
                self._by_orchestration.get(orchestration_id, [])]

    def get_active_workers(self, orchestration_id: str) -> List[WorkerState]:
        return [w for w in self.get_workers(orchestration_id)
                if w.status in (WorkerStatus.RUNNING.value,
                                WorkerStatus.SPAWNING.value)]

    def get_completed_workers(self, orchestration_id: str) -> List[WorkerState]:
        return [w for w in self.get_workers(orchestration_id)
                if w.status == WorkerStatus.COMPLETED.value]

    def get_failed_workers(self, orchestration_id: str) -> List[WorkerState]:
        failed = (WorkerStatus.FAILED.value, WorkerStatus.TIMEOUT.value,
                  WorkerStatus.CANCELLED.value)
        return [w for w in self.get_workers(orchestration_id)
                if w.status in failed]

    def all_finished(self, orchestration_id: str) -> bool:
        workers = self.get_workers(orchestration_id)
        return bool(workers) and all(w.is_terminal for w in workers)

    # -- spawning -------------------------------------------------------------

    def build_worker_prompt(self, template: Dict, task: Task,
                            variables: Dict[str, Any]) -> str:
        prompts = (template.get('prompts') or {}).get('worker')
        if not prompts:
            raise TemplateError(f"Template '{template.get('id')}' is missing "
                                f"worker prompts")
        values = dict(variables)
        values.update({
            'TASK_ID': task.id,
            'TASK_TITLE': task.title,
            'TASK_DESCRIPTION': task.description,
            'TASK_SCOPE': list(task.scope),
            'TASK_TYPE': task.type or 'general',
            'TASK_PRIORITY': task.priority if task.priority is not None else 'medium',
            'TASK_DEPENDENCIES': list(task.dependencies),
            'ORIGINAL_REQUEST': variables.get('USER_REQUEST', ''),
        })
        return TemplateManager.combine_prompt({
            'system': substitute_variables(prompts.get('system') or '', values),
            'user': substitute_variables(prompts.get('user') or '', values),
        })

    def _enqueue(self, worker: WorkerState):
        self._queue.append(worker.session_id)
        self.events.emit(WORKER_QUEUED, self._payload(
            worker, queue_length=len(self._queue)))
        self._dbg(f"Queued {worker.session_id} (queue: {len(self._queue)})")

    async def spawn_worker(self, orchestration_id: str, task: Task,
                           template: Dict, variables: Optional[Dict] = None
                           ) -> WorkerState:
        """Spawn a worker for ``task``, or queue it when the pool is full.

        Raises if the session could not be created; the worker is then
        left in ``failed`` with the cause in ``error``.
        """
        worker = self._register(orchestration_id, task,
                                _SpawnContext(template, dict(variables or {})))
        if self.available_slots <= 0:
            self._enqueue(worker)
            return worker
        worker.status = WorkerStatus.SPAWNING.value
        return await self._spawn(worker)

    async def spawn_batch(self, orchestration_id: str, tasks: List[Task],
                          template: Dict, variables: Optional[Dict] = None
                          ) -> List[WorkerState]:
        """Register every task, then spawn as many as admission allows.

        The remainder stays queued for later sweeps.
        """
        context_vars = dict(variables or {})
        for task in tasks:
            worker = self._register(orchestration_id, task,
                                    _SpawnContext(template, context_vars))
            self._enqueue(worker)
        await self.process_queue()
        return [self.get_worker_by_task(orchestration_id, t.id) for t in tasks]

    async def process_queue(self) -> int:
        """Spawn queued workers into free slots. Returns the number spawned."""
        spawned = attempted = 0
        while self._queue and self.available_slots > 0:
            session_id = self._queue.popleft()
            worker = self.workers.get(session_id)
            if worker is None or worker.status != WorkerStatus.PENDING.value:
                continue
            # Claim the slot before the first suspension point.
            worker.status = WorkerStatus.SPAWNING.value
            if attempted and self.config.spawn_delay > 0:
                await asyncio.sleep(self.config.spawn_delay)
                if worker.status != WorkerStatus.SPAWNING.value:
                    continue
            attempted += 1
            try:
                await self._spawn(worker)
                spawned += 1
            except Exception as exc:
                print(f"[WORKERS] Failed to spawn worker for task "
                      f"{worker.task_id}: {exc}")
        return spawned

    async def _spawn(self, worker: WorkerState) -> WorkerState:
        context = self._contexts[worker.session_id]
        requested_id = worker.session_id
        self.events.emit(WORKER_SPAWNING, self._payload(worker))
        try:
            prompt = self.build_worker_prompt(context.template, worker.task,
                                              context.variables)
            title = f"[Worker] {worker.task.title}"[:SESSION_TITLE_LIMIT]
            session_id = await self.sessions.create_session(
                context.variables.get('CWD') or '.', prompt,
                title=title, session_id=requested_id)
        except Exception as exc:
            if worker.status != WorkerStatus.SPAWNING.value:
                self._dbg(f"Discarding spawn error for {requested_id} "
                          f"({worker.status}): {exc}")
                return worker
            self._fail(worker, str(exc))
            raise

        if worker.status != WorkerStatus.SPAWNING.value:
            # Cancelled while the session was being created.
            print(f"[WORKERS] Worker {requested_id} was {worker.status} during "
                  f"creation, archiving its session")
            try:
                await self.sessions.archive_session(session_id or requested_id)
            except OrchestratorError as exc:
                print(f"[WORKERS] Warning: could not archive "
                      f"{session_id or requested_id}: {exc}")
            return worker
        if session_id and session_id != requested_id:
            self._rekey(requested_id, session_id)
        worker.status = WorkerStatus.RUNNING.value
        worker.started_at = self.clock()
        worker.last_poll_at = worker.started_at
        print(f"[WORKERS] Spawned worker {worker.session_id} for "
              f"'{worker.task.title}'")
        self.events.emit(WORKER_SPAWNED, self._payload(
            worker, task=worker.task.to_dict()))
        return worker

    def adopt_worker(self, orchestration_id: str, task: Task, session_id: str,
                     template: Dict, variables: Optional[Dict] = None
                     ) -> WorkerState:
        """Re-attach to a worker session that survived a restart."""
        worker = self._register(orchestration_id, task,
                                _SpawnContext(template, dict(variables or {})))
        self._rekey(worker.session_id, session_id)
        attempt = RETRY_SUFFIX.search(session_id)
        if attempt:
            worker.retry_count = int(attempt.group(1))
        worker.status = WorkerStatus.RUNNING.value
        worker.started_at = self.clock()
        self._dbg(f"Adopted {session_id} for task {task.id}")
        return worker

    # -- terminal transitions -------------------------------------------------

    def _fail(self, worker: WorkerState, error: str):
        worker.status = WorkerStatus.FAILED.value
        worker.error = error
        worker.completed_at = self.clock()
        print(f"[WORKERS] Worker {worker.session_id} failed: {error}")
        self.events.emit(WORKER_FAILED, self._payload(worker, error=error))

    def _timeout(self, worker: WorkerState):
        worker.status = WorkerStatus.TIMEOUT.value
        worker.error = f"Worker timed out after {self.config.worker_timeout:g}s"
        worker.completed_at = self.clock()
        print(f"[WORKERS] Worker {worker.session_id} timed out")
        self.events.emit(WORKER_TIMEOUT, self._payload(worker, error=worker.error))

    def _is_timed_out(self, worker: WorkerState) -> bool:
        if worker.started_at is None:
            return False
        return self.clock() - worker.started_at > self.config.worker_timeout

    # -- polling --------------------------------------------------------------

    def _apply_progress(self, worker: WorkerState, data: ProgressData):
        if data.progress_percent is not None:
            worker.progress = max(0, min(99, int(data.progress_percent)))
        if data.current_action:
            worker.current_action = data.current_action

    def _apply_completion(self, worker: WorkerState, data: CompletionData):
        if data.status in ('success', 'partial'):
            worker.status = WorkerStatus.COMPLETED.value
            worker.progress = 100
            worker.output = data.output or data.summary
            worker.output_files = list(data.output_files)
            worker.completed_at = self.clock()
            if data.status == 'partial':
                worker.current_action = 'Partially completed'
        elif data.status in ('failed', 'timeout'):
            worker.status = WorkerStatus.FAILED.value
            worker.error = data.error or data.summary or 'Worker reported failure'
            worker.output = data.output
            worker.completed_at = self.clock()
        else:
            print(f"[WORKERS] Warning: ignoring completion with unknown "
                  f"status '{data.status}' from {worker.session_id}")

    @staticmethod
    def _snapshot(worker: WorkerState) -> tuple:
        return (worker.status, worker.progress, worker.current_action,
                worker.output, worker.error, tuple(worker.output_files))

    async def poll_worker(self, session_id: str) -> bool:
        """Poll one worker. Returns True when its state changed."""
        worker = self.workers.get(session_id)
        if worker is None or worker.status != WorkerStatus.RUNNING.value:
            return False
        if session_id in self._in_flight:
            return False

        if self._is_timed_out(worker):
            self._timeout(worker)
            return True

        self._in_flight.add(session_id)
        try:
            messages = await self.sessions.get_transcript(session_id)
        except OrchestratorError as exc:
            print(f"[WORKERS] Warning: error polling worker {session_id}: {exc}")
            return False
        finally:
            self._in_flight.discard(session_id)

        if worker.status != WorkerStatus.RUNNING.value:
            if worker.status == WorkerStatus.TIMEOUT.value:
                self._dbg(f"Discarding late transcript for timed-out "
                          f"{session_id}")
            return False
        if not messages or len(messages) == worker.message_count:
            return False
        worker.last_poll_at = self.clock()
        worker.message_count = len(messages)

        assistant_text = transcript_text(messages, role=ASSISTANT)
        before = self._snapshot(worker)
        for response in self.parser.parse_multiple(assistant_text):
            if not response.ok:
                if response.found:
                    self._dbg(f"Invalid envelope from {session_id}: "
                              f"{response.error}")
                continue
            if worker.status != WorkerStatus.RUNNING.value:
                break
            payload = response.payload()
            if isinstance(payload, ProgressData):
                self._apply_progress(worker, payload)
            elif isinstance(payload, CompletionData):
                self._apply_completion(worker, payload)

        changed = self._snapshot(worker) != before
        stats = extract_tool_stats(assistant_text)
        if stats != worker.tool_stats:
            worker.tool_stats = stats
            changed = True

        if worker.status == WorkerStatus.RUNNING.value and not changed:
            hint = self.parser.detect_fallback(assistant_text)
            if hint.detected and hint.probable_phase == 'completion' and \
                    hint.confidence > FALLBACK_MIN_CONFIDENCE and \
                    worker.current_action != FALLBACK_COMPLETION_HINT:
                worker.current_action = FALLBACK_COMPLETION_HINT
                changed = True

        if changed:
            self.events.emit(WORKER_PROGRESS, self._payload(
                worker, progress=worker.progress, status=worker.status,
                current_action=worker.current_action,
                tool_stats=worker.tool_stats.to_dict()))
        if worker.status == WorkerStatus.COMPLETED.value and before[0] != worker.status:
            print(f"[WORKERS] Worker {session_id} completed")
            self.events.emit(WORKER_COMPLETED, self._payload(
                worker, output=worker.output, output_files=worker.output_files))
        elif worker.status == WorkerStatus.FAILED.value and before[0] != worker.status:
            self.events.emit(WORKER_FAILED, self._payload(worker, error=worker.error))
        return changed

    async def poll_all_workers(self) -> List[str]:
        """One sweep over every running worker, then drain the queue.

        Returns the session ids whose state changed. A sweep that starts
        while another is still running does nothing.
        """
        if self._sweeping:
            return []
        self._sweeping = True
        try:
            updated = []
            for session_id in [s for s, w in self.workers.items()
                               if w.status in (WorkerStatus.RUNNING.value,
                                               WorkerStatus.SPAWNING.value)]:
                if await self.poll_worker(session_id):
                    updated.append(session_id)
            await self.process_queue()
            return updated
        finally:
            self._sweeping = False

    def start_monitoring(self):
        if self._monitor and not self._monitor.done():
            return
        self._monitor = asyncio.get_running_loop().create_task(self._run())
        print("[WORKERS] Monitoring started")

    async def stop_monitoring(self):
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None
        print("[WORKERS] Monitoring stopped")

    async def _run(self):
        while True:
            try:
                await self.poll_all_workers()
            except Exception as exc:
                print(f"[WORKERS] Polling error: {exc}")
                traceback.print_exc()
            await asyncio.sleep(self.config.poll_interval)

    # -- lifecycle ------------------------------------------------------------

    def pause_worker(self, session_id: str) -> WorkerState:
        worker = self.get_worker(session_id)
        if worker.status != WorkerStatus.RUNNING.value:
            raise LifecycleError(f"Cannot pause worker in status: {worker.status}")
        worker.status = WorkerStatus.PAUSED.value
        self.events.emit(WORKER_PAUSED, self._payload(worker))
        return worker

    def resume_worker(self, session_id: str) -> WorkerState:
        worker = self.get_worker(session_id)
        if worker.status != WorkerStatus.PAUSED.value:
            raise LifecycleError(f"Cannot resume worker in status: {worker.status}")
        worker.status = WorkerStatus.RUNNING.value
        # The timeout clock restarts on resume.
        worker.started_at = self.clock()
        self.events.emit(WORKER_RESUMED, self._payload(worker))
        return worker

    def cancel_worker(self, session_id: str) -> WorkerState:
        """Cancel a worker. Its slot is refilled on the next sweep."""
        worker = self.get_worker(session_id)
        if worker.is_terminal:
            raise LifecycleError(f"Cannot cancel worker in status: {worker.status}")
        if session_id in self._queue:
            self._queue.remove(session_id)
        worker.status = WorkerStatus.CANCELLED.value
        worker.completed_at = self.clock()
        self.events.emit(WORKER_CANCELLED, self._payload(worker))
        return worker

    def cancel_orchestration(self, orchestration_id: str) -> int:
        cancelled = 0
        for worker in self.get_workers(orchestration_id):
            if not worker.is_terminal:
                self.cancel_worker(worker.session_id)
                cancelled += 1
        return cancelled

    def retry_worker(self, session_id: str) -> WorkerState:
        """Re-queue a failed worker under a fresh session id."""
        worker = self.get_worker(session_id)
        retryable = (WorkerStatus.FAILED.value, WorkerStatus.TIMEOUT.value,
                     WorkerStatus.CANCELLED.value)
        if worker.status not in retryable:
            raise LifecycleError(f"Cannot retry worker in status: {worker.status}")
        if worker.retry_count >= self.config.retry_limit:
            raise LifecycleError(f"Worker has exceeded retry limit "
                                 f"({self.config.retry_limit})")

        worker.retry_count += 1
        self.events.emit(WORKER_RETRYING, self._payload(
            worker, retry_count=worker.retry_count))
        worker.status = WorkerStatus.PENDING.value
        worker.progress = 0
        worker.current_action = 'Retrying...'
        worker.error = None
        worker.output = None
        worker.output_files = []
        worker.message_count = 0
        worker.tool_stats = ToolStats()
        worker.started_at = None
        worker.completed_at = None
        self._rekey(session_id, worker_session_id(
            worker.orchestration_id, worker.task_id, worker.retry_count))
        self._enqueue(worker)
        return worker

    # -- results --------------------------------------------------------------

    def collect_outputs(self, orchestration_id: str) -> List[Dict]:
        """One record per worker, whatever its status."""
        return [{
            'task_id': w.task_id,
            'task_title': w.task.title,
            'session_id': w.session_id,
            'status': w.status,
            'output': w.output,
            'output_files': list(w.output_files),
            'error': w.error,
            'tool_stats': w.tool_stats.to_dict(),
        } for w in self.get_workers(orchestration_id)]

    def get_aggregated_stats(self, orchestration_id: str) -> Dict:
        workers = self.get_workers(orchestration_id)
        counts = {status.value: 0 for status in WorkerStatus}
        tools = ToolStats()
        for worker in workers:
            counts[worker.status] += 1
            tools.add(worker.tool_stats)
        progress = sum(w.progress for w in workers)
        return {
            'total_workers': len(workers),
            'by_status': counts,
            'running': counts['running'] + counts['spawning'],
            'completed': counts['completed'],
            'failed': counts['failed'] + counts['timeout'],
            'tool_stats': tools,
            'average_progress': round(progress / len(workers)) if workers else 0,
            'total_retries': sum(w.retry_count for w in workers),
        }

    # -- cleanup --------------------------------------------------------------

    async def archive_workers(self, orchestration_id: str) -> int:
        archived = 0
        for worker in self.get_workers(orchestration_id):
            if worker.started_at is None:
                continue
            try:
                await self.sessions.archive_session(worker.session_id)
                archived += 1
            except OrchestratorError as exc:
                print(f"[WORKERS] Warning: could not archive "
                      f"{worker.session_id}: {exc}")
        self.events.emit(WORKERS_ARCHIVED, {'orchestration_id': orchestration_id,
                                            'count': archived})
        return archived

    async def delete_workers(self, orchestration_id: str) -> int:
        """Delete every worker session and forget its state."""
        deleted = 0
        for worker in list(self.get_workers(orchestration_id)):
            if worker.started_at is not None:
                try:
                    await self.sessions.delete_session(worker.session_id)
                except OrchestratorError as exc:
                    print(f"[WORKERS] Warning: could not delete "
                          f"{worker.session_id}: {exc}")
            self._forget(worker.session_id)
            deleted += 1
        return deleted
