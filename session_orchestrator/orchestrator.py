"""Orchestrator state machine.

Drives one main session through analysis, task planning, worker
execution, aggregation and verification. Replies are read from the main
session's transcript, parsed for response envelopes and turned into
phase transitions. All orchestrations are persisted to a single JSON
file so a restart can pick up where it left off.
"""

import asyncio
import dataclasses
import json
import os
import traceback
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from session_orchestrator.config import (
    ORCH_POLL_INTERVAL, ORCH_SAVE_DEBOUNCE, ORCH_STATE_FILE,
)
from session_orchestrator.errors import (
    LifecycleError, NotFoundError, OrchestratorError,
)
from session_orchestrator.events import (
    EventEmitter, ORCHESTRATOR_ANALYSIS_COMPLETE, ORCHESTRATOR_CANCELLED,
    ORCHESTRATOR_CLEANUP, ORCHESTRATOR_COMPLETED, ORCHESTRATOR_CREATED,
    ORCHESTRATOR_ERROR, ORCHESTRATOR_PAUSED, ORCHESTRATOR_PHASE_CHANGED,
    ORCHESTRATOR_PROGRESS, ORCHESTRATOR_RESUMED, ORCHESTRATOR_STARTED,
    ORCHESTRATOR_TASKS_READY, ORCHESTRATOR_VALIDATION_FAILED,
)
from session_orchestrator.models import (
    AnalysisData, Orchestration, OrchestrationStatus, ParsedResponse,
    Phase, PHASE_STATUS, Task, TaskListData, ToolStats,
)
from session_orchestrator.response_parser import START_MARKER, ResponseParser
from session_orchestrator.session_api import SessionController
from session_orchestrator.templates import TemplateManager
from session_orchestrator.transcript import ASSISTANT, message_text

MODE_BADGE = "\U0001F3AD **ORCHESTRATOR MODE** - {name}\n\n"

# Envelope phase expected while the orchestration is in a given phase.
PHASE_RESPONSES = {
    Phase.ANALYSIS.value: 'analysis',
    Phase.TASK_PLANNING.value: 'task_list',
    Phase.AGGREGATION.value: 'aggregation',
    Phase.VERIFICATION.value: 'verification',
}

# Phases whose entry injects a new prompt into the main session.
PROMPTED_PHASES = (Phase.TASK_PLANNING.value, Phase.AGGREGATION.value,
                   Phase.VERIFICATION.value)

PAUSABLE_STATUSES = (
    OrchestrationStatus.ANALYZING.value,
    OrchestrationStatus.PLANNING.value,
    OrchestrationStatus.CONFIRMING.value,
    OrchestrationStatus.RUNNING.value,
    OrchestrationStatus.AGGREGATING.value,
    OrchestrationStatus.VERIFYING.value,
)

POLLED_STATUSES = (
    OrchestrationStatus.ANALYZING.value,
    OrchestrationStatus.PLANNING.value,
    OrchestrationStatus.CONFIRMING.value,
    OrchestrationStatus.AGGREGATING.value,
    OrchestrationStatus.VERIFYING.value,
)

SPAWN_TOOL_HINTS = ('Task tool', 'subagent_type')


def compute_parallel_groups(tasks: Iterable[Task]) -> List[List[str]]:
    """Layer tasks by dependency depth.

    Tasks whose dependencies can never be satisfied (cycles, unknown ids)
    end up together in a final group.
    """
    tasks = list(tasks)
    remaining = [t.id for t in tasks]
    deps = {t.id: set(t.dependencies) for t in tasks}
    done = set()
    groups = []
    while remaining:
        group = [tid for tid in remaining if deps[tid] <= done]
        if not group:
            groups.append(list(remaining))
            break
        groups.append(group)
        done.update(group)
        remaining = [tid for tid in remaining if tid not in done]
    return groups


def _is_partition(groups, task_ids: List[str]) -> bool:
    flat = [tid for group in groups for tid in group]
    return len(flat) == len(set(flat)) and set(flat) == set(task_ids)


class OrchestratorManager:
    """Owns every Orchestration and all of its transitions."""

    def __init__(self, templates: TemplateManager, sessions: SessionController,
                 parser: Optional[ResponseParser] = None,
                 state_file: Optional[str] = ORCH_STATE_FILE,
                 save_debounce: float = ORCH_SAVE_DEBOUNCE,
                 poll_interval: float = ORCH_POLL_INTERVAL,
                 prompt_delay: float = 1.5,
                 debug: bool = False):
        self.templates = templates
        self.sessions = sessions
        self.parser = parser or ResponseParser()
        self.state_file = state_file
        self.save_debounce = save_debounce
        self.poll_interval = poll_interval
        self.prompt_delay = prompt_delay
        self.debug = debug
        self.events = EventEmitter("ORCH")

        self.orchestrations: Dict[str, Orchestration] = {}
        self._in_flight = set()
        self._sweeping = False
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._monitor: Optional[asyncio.Task] = None

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[ORCH] {msg}")

    # -- state persistence ----------------------------------------------------

    def load_from_disk(self) -> int:
        """Load persisted orchestrations. A missing file means no prior state."""
        if not self.state_file or not os.path.exists(self.state_file):
            self._dbg("No persisted state, starting fresh")
            return 0
        with open(self.state_file, 'r') as f:
            try:
                records = json.load(f)
            except ValueError as exc:
                raise OrchestratorError(
                    f"Corrupt state file {self.state_file}: {exc}") from exc
        if not isinstance(records, list):
            raise OrchestratorError(
                f"Corrupt state file {self.state_file}: expected a list of "
                f"orchestrations, got {type(records).__name__}")

        loaded = 0
        for record in records:
            if not isinstance(record, dict):
                print(f"[ORCH] Warning: skipping non-object record: {record!r}")
                continue
            try:
                orch = Orchestration.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                print(f"[ORCH] Warning: skipping unreadable record "
                      f"{record.get('id', '?')}: {exc}")
                continue
            self.orchestrations[orch.id] = orch
            loaded += 1
            self._dbg(f"Loaded {orch.id} (status: {orch.status})")
        print(f"[ORCH] Loaded {loaded} orchestrations from {self.state_file}")
        return loaded

    def save_to_disk(self):
        if not self.state_file:
            return
        directory = os.path.dirname(self.state_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        records = [o.to_dict() for o in self.orchestrations.values()]
        tmp_path = f"{self.state_file}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(records, f, indent=2)
        os.replace(tmp_path, self.state_file)
        self._dbg(f"Saved {len(records)} orchestrations")

    def _schedule_save(self):
        """Coalesce rapid mutations into one write."""
        if not self.state_file:
            return
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.save_to_disk()
            return
        self._save_handle = loop.call_later(self.save_debounce,
                                            self._run_scheduled_save)

    def _run_scheduled_save(self):
        self._save_handle = None
        try:
            self.save_to_disk()
        except OSError as exc:
            print(f"[ORCH] Warning: debounced save failed: {exc}")

    @property
    def save_pending(self) -> bool:
        return self._save_handle is not None

    def flush(self):
        """Write any pending state now."""
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
            self.save_to_disk()

    def _touch(self, orch: Orchestration):
        orch.updated_at = datetime.now()
        self._schedule_save()

    # -- lookup ---------------------------------------------------------------

    def get(self, orchestration_id: str) -> Optional[Orchestration]:
        return self.orchestrations.get(orchestration_id)

    def get_all(self) -> List[Orchestration]:
        return list(self.orchestrations.values())

    def _require(self, orchestration_id: str) -> Orchestration:
        orch = self.orchestrations.get(orchestration_id)
        if orch is None:
            raise NotFoundError(f"Orchestration not found: {orchestration_id}")
        return orch

    def get_status(self, orchestration_id: str) -> Dict:
        orch = self._require(orchestration_id)
        return {
            'id': orch.id,
            'template_id': orch.template_id,
            'status': orch.status,
            'current_phase': orch.current_phase,
            'main_session_id': orch.main_session_id,
            'task_count': len(orch.active_tasks()),
            'skipped_tasks': len(orch.tasks) - len(orch.active_tasks()),
            'worker_count': len(orch.workers),
            'stats': orch.stats.to_dict(),
            'errors': len(orch.errors),
            'created_at': orch.created_at.isoformat(),
            'updated_at': orch.updated_at.isoformat(),
            'started_at': orch.started_at.isoformat() if orch.started_at else None,
            'completed_at': orch.completed_at.isoformat() if orch.completed_at else None,
        }

    # -- lifecycle ------------------------------------------------------------

    def create(self, template_id: str, cwd: str, message: str,
               custom_variables: Optional[Dict[str, Any]] = None) -> Orchestration:
        if not template_id:
            raise OrchestratorError('template_id is required')
        if not cwd:
            raise OrchestratorError('cwd is required')
        if not message:
            raise OrchestratorError('message is required')

        template = self.templates.resolve(template_id)
        orch = Orchestration(id=f"orch_{uuid.uuid4().hex[:12]}",
                             template_id=template_id, template=template,
                             cwd=cwd, user_request=message,
                             custom_variables=dict(custom_variables or {}))
        self.orchestrations[orch.id] = orch
        self._touch(orch)
        print(f"[ORCH] Created {orch.id} from template '{template_id}'")
        self.events.emit(ORCHESTRATOR_CREATED, {'id': orch.id,
                                                'template_id': template_id})
        return orch

    async def start(self, orchestration_id: str) -> Orchestration:
        """Open the main session and send the analysis prompt."""
        orch = self._require(orchestration_id)
        if orch.status == OrchestrationStatus.PAUSED.value:
            return self.resume(orchestration_id)
        if orch.status != OrchestrationStatus.CREATED.value:
            raise LifecycleError(f"Cannot start orchestration in status: "
                                 f"{orch.status}")

        try:
            pair = self.templates.generate_prompt(
                orch.template, Phase.ANALYSIS.value, self._build_variables(orch))
            system_prompt = pair['system']
            name = orch.template.get('name') or orch.template_id
            user_prompt = MODE_BADGE.format(name=name) + \
                (pair['user'] or orch.user_request)

            session_id = await self.sessions.create_session(
                orch.cwd, system_prompt or user_prompt,
                title=f"[Orchestrator] {name}")
            if system_prompt:
                # The new session needs a moment before it accepts a follow-up.
                await asyncio.sleep(self.prompt_delay)
                await self.sessions.send_message(session_id, user_prompt)
        except Exception as exc:
            self._fail(orch, 'start', exc)
            raise

        orch.main_session_id = session_id
        orch.current_phase = Phase.ANALYSIS.value
        orch.status = OrchestrationStatus.ANALYZING.value
        orch.started_at = datetime.now()
        orch.transcript_watermark = 2 if system_prompt else 1
        self._touch(orch)
        print(f"[ORCH] Started {orch.id} in session {session_id}")
        self.events.emit(ORCHESTRATOR_STARTED, {
            'id': orch.id,
            'main_session_id': session_id,
            'phase': orch.current_phase,
        })
        return orch

    def pause(self, orchestration_id: str) -> Orchestration:
        orch = self._require(orchestration_id)
        if orch.status not in PAUSABLE_STATUSES:
            raise LifecycleError(f"Cannot pause orchestration in status: "
                                 f"{orch.status}")
        orch.previous_status = orch.status
        orch.previous_phase = orch.current_phase
        orch.status = OrchestrationStatus.PAUSED.value
        self._touch(orch)
        self.events.emit(ORCHESTRATOR_PAUSED, {
            'id': orch.id, 'previous_status': orch.previous_status})
        return orch

    def resume(self, orchestration_id: str) -> Orchestration:
        orch = self._require(orchestration_id)
        if orch.status != OrchestrationStatus.PAUSED.value:
            raise LifecycleError(f"Cannot resume orchestration in status: "
                                 f"{orch.status}")
        orch.status = orch.previous_status or PHASE_STATUS[orch.current_phase]
        orch.current_phase = orch.previous_phase or orch.current_phase
        orch.previous_status = None
        orch.previous_phase = None
        self._touch(orch)
        self.events.emit(ORCHESTRATOR_RESUMED, {'id': orch.id,
                                                'status': orch.status})
        return orch

    def cancel(self, orchestration_id: str) -> Orchestration:
        orch = self._require(orchestration_id)
        if orch.is_terminal:
            raise LifecycleError(f"Cannot cancel orchestration in status: "
                                 f"{orch.status}")
        orch.status = OrchestrationStatus.CANCELLED.value
        orch.completed_at = datetime.now()
        self._touch(orch)
        print(f"[ORCH] Cancelled {orch.id}")
        self.events.emit(ORCHESTRATOR_CANCELLED, {'id': orch.id})
        return orch

    def complete(self, orchestration_id: str, outcome: str = 'success') -> Orchestration:
        orch = self._require(orchestration_id)
        if orch.is_terminal:
            raise LifecycleError(f"Cannot complete orchestration in status: "
                                 f"{orch.status}")
        orch.status = OrchestrationStatus.COMPLETED.value
        orch.completed_at = datetime.now()
        self._touch(orch)
        print(f"[ORCH] Completed {orch.id} ({outcome})")
        self.events.emit(ORCHESTRATOR_COMPLETED, {
            'id': orch.id, 'status': outcome, 'aggregation': orch.aggregation})
        return orch

    def fail(self, orchestration_id: str, operation: str, exc: BaseException):
        """Move an orchestration to ``error`` on behalf of a collaborator."""
        self._fail(self._require(orchestration_id), operation, exc)

    def _fail(self, orch: Orchestration, operation: str, exc: BaseException):
        orch.status = OrchestrationStatus.ERROR.value
        entry = orch.record_error(orch.current_phase, str(exc))
        self._touch(orch)
        print(f"[ORCH] {orch.id} failed during {operation}: {exc}")
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        self.events.emit(ORCHESTRATOR_ERROR, {
            'id': orch.id, 'operation': operation, 'error': str(exc),
            'timestamp': entry['timestamp'],
        })

    # -- polling --------------------------------------------------------------

    async def poll_orchestrator(self, orchestration_id: str) -> int:
        """Process main-session messages past the watermark.

        Returns the number of valid envelopes handled.
        """
        orch = self.orchestrations.get(orchestration_id)
        if orch is None or not orch.main_session_id or \
                orch.status not in POLLED_STATUSES:
            return 0
        if orchestration_id in self._in_flight:
            return 0

        self._in_flight.add(orchestration_id)
        try:
            try:
                messages = await self.sessions.get_transcript(orch.main_session_id)
            except OrchestratorError as exc:
                print(f"[ORCH] Warning: error polling {orch.id}: {exc}")
                return 0

            if orch.status not in POLLED_STATUSES:
                self._dbg(f"Discarding poll result for {orch.id} ({orch.status})")
                return 0
            messages = messages or []
            if len(messages) <= orch.transcript_watermark:
                return 0

            fresh = messages[orch.transcript_watermark:]
            orch.transcript_watermark = len(messages)
            self._touch(orch)
            self._dbg(f"{orch.id}: {len(fresh)} new message(s), status "
                      f"{orch.status}, phase {orch.current_phase}")

            handled = 0
            for message in fresh:
                if message.get('role') != ASSISTANT:
                    continue
                handled += await self._process_message(orch, message_text(message))
            return handled
        finally:
            self._in_flight.discard(orchestration_id)

    async def _process_message(self, orch: Orchestration, text: str) -> int:
        if START_MARKER not in text and \
                any(hint in text for hint in SPAWN_TOOL_HINTS):
            print(f"[ORCH] Warning: {orch.id} main agent seems to be using a "
                  f"sub-agent tool instead of replying with a response block")

        handled = 0
        results = self.parser.parse_multiple(text)
        for result in results:
            if result.found and result.error:
                print(f"[ORCH] Warning: invalid response block in {orch.id}: "
                      f"{result.error}")
                continue
            if not result.ok:
                continue
            if orch.is_terminal or orch.status == OrchestrationStatus.PAUSED.value:
                break
            if await self.process_phase(orch.id, result):
                handled += 1

        if not results:
            hint = self.parser.detect_fallback(text)
            expected = PHASE_RESPONSES.get(orch.current_phase)
            if hint.detected and hint.probable_phase == expected:
                print(f"[ORCH] {orch.id}: reply looks like '{expected}' "
                      f"(confidence {hint.confidence}) but carries no "
                      f"response block")
        return handled

    async def process_phase(self, orchestration_id: str,
                            response: ParsedResponse) -> bool:
        """Apply one parsed envelope. Returns True if it was consumed."""
        orch = self._require(orchestration_id)
        if orch.is_terminal or orch.status == OrchestrationStatus.PAUSED.value:
            return False
        expected = PHASE_RESPONSES.get(orch.current_phase)
        if expected is None or response.phase != expected:
            self._dbg(f"{orch.id}: ignoring '{response.phase}' block in phase "
                      f"{orch.current_phase}")
            return False

        try:
            if expected == 'analysis':
                self.handle_analysis_response(orch, response.data)
                await self.advance_to_phase(orch.id, Phase.TASK_PLANNING.value)
            elif expected == 'task_list':
                if not self.handle_task_list_response(orch, response.data):
                    return False
            elif expected == 'aggregation':
                self.handle_aggregation_response(orch, response.data)
                if self._phase_enabled(orch, Phase.VERIFICATION.value):
                    await self.advance_to_phase(orch.id, Phase.VERIFICATION.value)
                else:
                    self.complete(orch.id, response.data.get('status') or 'success')
            elif expected == 'verification':
                orch.verification = dict(response.data)
                self.complete(orch.id, response.data.get('status') or 'success')
        except Exception as exc:
            self._fail(orch, 'process_phase', exc)
            return False
        return True

    async def poll_all(self):
        """One sweep over every pollable orchestration."""
        if self._sweeping:
            return
        self._sweeping = True
        try:
            for orch in list(self.orchestrations.values()):
                if orch.status in POLLED_STATUSES and orch.main_session_id:
                    await self.poll_orchestrator(orch.id)
        finally:
            self._sweeping = False

    def start_monitoring(self):
        if self._monitor and not self._monitor.done():
            return
        self._monitor = asyncio.get_running_loop().create_task(self._run())
        print("[ORCH] Monitoring started")

    async def stop_monitoring(self):
        if self._monitor is None:
            return
        self._monitor.cancel()
        try:
            await self._monitor
        except asyncio.CancelledError:
            pass
        self._monitor = None
        print("[ORCH] Monitoring stopped")

    async def _run(self):
        while True:
            try:
                await self.poll_all()
            except Exception as exc:
                print(f"[ORCH] Polling error: {exc}")
                traceback.print_exc()
            await asyncio.sleep(self.poll_interval)

    # -- phases ---------------------------------------------------------------

    @staticmethod
    def _phase_enabled(orch: Orchestration, phase: str) -> bool:
        phases = orch.template.get('phases') or {}
        return bool((phases.get(phase) or {}).get('enabled', False))

    async def advance_to_phase(self, orchestration_id: str, phase: str,
                               extra_variables: Optional[Dict] = None) -> Orchestration:
        orch = self._require(orchestration_id)
        if phase not in PHASE_STATUS:
            raise OrchestratorError(f"Invalid phase: {phase}")

        previous = orch.current_phase
        orch.current_phase = phase
        orch.status = PHASE_STATUS[phase]
        self._touch(orch)
        if phase in PROMPTED_PHASES:
            await self._inject_phase_prompt(orch, phase, extra_variables)

        print(f"[ORCH] {orch.id}: {previous} -> {phase}")
        self.events.emit(ORCHESTRATOR_PHASE_CHANGED, {
            'id': orch.id,
            'previous_phase': previous,
            'current_phase': phase,
            'status': orch.status,
        })
        return orch

    def handle_analysis_response(self, orch: Orchestration, data: Dict):
        validation = self.parser.validate_phase('analysis', data)
        if not validation.valid:
            orch.record_error(Phase.ANALYSIS.value, "Invalid analysis data: "
                              + ', '.join(validation.errors))
        orch.analysis = AnalysisData.from_dict(data)
        self._touch(orch)
        self.events.emit(ORCHESTRATOR_ANALYSIS_COMPLETE, {
            'id': orch.id, 'analysis': dataclasses.asdict(orch.analysis)})

    def handle_task_list_response(self, orch: Orchestration, data: Dict) -> bool:
        """Store the planned tasks and wait for confirmation.

        An invalid list is recorded and the orchestration stays in
        planning so the agent can send a corrected one.
        """
        validation = self.parser.validate_phase('task_list', data)
        if not validation.valid:
            error = "Invalid task list: " + ', '.join(validation.errors)
            orch.record_error(Phase.TASK_PLANNING.value, error)
            self._touch(orch)
            print(f"[ORCH] {orch.id}: {error}")
            self.events.emit(ORCHESTRATOR_VALIDATION_FAILED, {
                'id': orch.id, 'phase': 'task_list',
                'errors': validation.errors})
            return False

        task_list = TaskListData.from_dict(data)
        orch.tasks = task_list.tasks
        task_ids = [t.id for t in orch.tasks]
        groups = task_list.parallelizable_groups
        if groups and _is_partition(groups, task_ids):
            orch.parallel_groups = groups
        else:
            if groups:
                print(f"[ORCH] Warning: {orch.id}: supplied parallel groups do "
                      f"not cover the task list, recomputing")
            orch.parallel_groups = compute_parallel_groups(orch.tasks)
        orch.status = OrchestrationStatus.CONFIRMING.value
        self._touch(orch)
        print(f"[ORCH] {orch.id}: {len(orch.tasks)} tasks ready for confirmation")
        self.events.emit(ORCHESTRATOR_TASKS_READY, {
            'id': orch.id,
            'task_count': len(orch.tasks),
            'parallel_groups': orch.parallel_groups,
            'tasks': [t.to_dict() for t in orch.tasks],
        })
        return True

    def handle_aggregation_response(self, orch: Orchestration, data: Dict):
        validation = self.parser.validate_phase('aggregation', data)
        if not validation.valid:
            orch.record_error(Phase.AGGREGATION.value, "Invalid aggregation "
                              "data: " + ', '.join(validation.errors))
        orch.aggregation = {
            'status': data.get('status'),
            'summary': data.get('summary'),
            'conflicts': data.get('conflicts') or [],
            'merged_output': data.get('merged_output'),
            'output_files': data.get('output_files') or [],
        }
        self._touch(orch)

    # -- confirmation and workers ---------------------------------------------

    def confirm_tasks(self, orchestration_id: str, skip: Iterable[str] = (),
                      priorities: Optional[Dict[str, Any]] = None) -> List[Task]:
        """Freeze the reviewed plan, applying skip/priority edits.

        Returns the tasks to spawn.
        """
        orch = self._require(orchestration_id)
        if orch.status != OrchestrationStatus.CONFIRMING.value:
            raise LifecycleError(f"Cannot confirm tasks in status: {orch.status}")
        skip = set(skip)
        priorities = priorities or {}
        known = {t.id for t in orch.tasks}
        unknown = (skip | set(priorities)) - known
        if unknown:
            raise NotFoundError(f"Unknown task id(s): {', '.join(sorted(unknown))}")

        edited = []
        for task in orch.tasks:
            changes = {}
            if task.id in skip:
                changes['skipped'] = True
            if task.id in priorities:
                changes['priority'] = priorities[task.id]
            edited.append(dataclasses.replace(task, **changes) if changes else task)
        orch.tasks = edited
        orch.parallel_groups = [
            [tid for tid in group if tid not in skip]
            for group in orch.parallel_groups]
        orch.parallel_groups = [g for g in orch.parallel_groups if g]
        orch.current_phase = Phase.WORKER_EXECUTION.value
        orch.status = OrchestrationStatus.SPAWNING.value
        self._touch(orch)
        return orch.active_tasks()

    def record_worker(self, orchestration_id: str, task_id: str, session_id: str):
        orch = self._require(orchestration_id)
        orch.workers[task_id] = session_id
        self._touch(orch)

    def update_stats(self, orchestration_id: str, stats: ToolStats):
        """Replace the orchestration's tally with the pool's current sum."""
        orch = self._require(orchestration_id)
        orch.stats = ToolStats.from_dict(stats.to_dict())
        self._touch(orch)
        self.events.emit(ORCHESTRATOR_PROGRESS, {'id': orch.id,
                                                 'stats': orch.stats.to_dict()})

    def build_worker_tasks(self, orchestration_id: str) -> List[Dict]:
        orch = self._require(orchestration_id)
        return [{
            'orchestration_id': orch.id,
            'task_id': task.id,
            'task': task,
            'dependencies': list(task.dependencies),
            'priority': task.priority or 'normal',
        } for task in orch.active_tasks()]

    # -- prompts --------------------------------------------------------------

    def build_variables(self, orchestration_id: str) -> Dict[str, Any]:
        return self._build_variables(self._require(orchestration_id))

    def _build_variables(self, orch: Orchestration) -> Dict[str, Any]:
        variables = dict(orch.template.get('variables') or {})
        variables.update({
            'USER_REQUEST': orch.user_request,
            'CWD': orch.cwd,
            'TEMPLATE_NAME': orch.template.get('name') or orch.template_id,
            'ORCHESTRATOR_ID': orch.id,
        })
        variables.update(orch.custom_variables)
        if orch.analysis:
            variables['ANALYSIS_SUMMARY'] = orch.analysis.summary
            variables['RECOMMENDED_SPLITS'] = orch.analysis.recommended_splits
            variables['KEY_FILES'] = orch.analysis.key_files
        if orch.tasks:
            active = orch.active_tasks()
            variables['TASK_COUNT'] = len(active)
            variables['TASKS_JSON'] = json.dumps([t.to_dict() for t in active],
                                                 indent=2)
        return variables

    def generate_prompt(self, template: Dict, phase: str,
                        variables: Dict[str, Any]) -> str:
        pair = self.templates.generate_prompt(template, phase, variables)
        prompt = TemplateManager.combine_prompt(pair)
        if not prompt:
            raise OrchestratorError(f"Template prompt for phase '{phase}' "
                                    f"has no content")
        return prompt

    async def _inject_phase_prompt(self, orch: Orchestration, phase: str,
                                   extra_variables: Optional[Dict] = None):
        if not orch.main_session_id:
            raise OrchestratorError('No main session to inject prompt into')
        variables = self._build_variables(orch)
        variables.update(extra_variables or {})
        prompt = self.generate_prompt(orch.template, phase, variables)
        await self.sessions.send_message(orch.main_session_id, prompt)

    # -- cleanup --------------------------------------------------------------

    async def cleanup(self, orchestration_id: str, archive_workers: bool = True,
                      remove_state: bool = False):
        orch = self.orchestrations.get(orchestration_id)
        if orch is None:
            return
        if archive_workers:
            for session_id in orch.workers.values():
                try:
                    await self.sessions.archive_session(session_id)
                except OrchestratorError as exc:
                    print(f"[ORCH] Warning: failed to archive worker "
                          f"{session_id}: {exc}")
        if remove_state:
            del self.orchestrations[orchestration_id]
            self._in_flight.discard(orchestration_id)
            self._schedule_save()
        self.events.emit(ORCHESTRATOR_CLEANUP, {
            'id': orchestration_id,
            'archived': archive_workers,
            'removed': remove_state,
        })
