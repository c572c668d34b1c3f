"""Top-level composition.

``OrchestratorModule`` wires the template resolver, the orchestrator
state machine, the worker pool and the sub-session tracker together. It
re-emits every component event on its own emitter and reacts to worker
completion by moving the orchestration on to aggregation.
"""

import asyncio
import functools
import json
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from session_orchestrator.config import ORCH_POLL_INTERVAL, ORCH_STATE_FILE
from session_orchestrator.errors import (
    LifecycleError, NotFoundError, OrchestratorError,
)
from session_orchestrator.events import (
    EventEmitter, ORCHESTRATOR_EVENTS, SUBSESSION_EVENTS, TEMPLATE_EVENTS,
    WORKER_CANCELLED, WORKER_COMPLETED, WORKER_EVENTS, WORKER_FAILED,
    WORKER_TIMEOUT,
)
from session_orchestrator.models import (
    Orchestration, OrchestrationStatus, Phase, WorkerState, WorkerStatus,
)
from session_orchestrator.orchestrator import OrchestratorManager
from session_orchestrator.response_parser import ResponseParser
from session_orchestrator.session_api import SessionController
from session_orchestrator.subsessions import SubSessionConfig, SubSessionManager
from session_orchestrator.templates import TemplateManager
from session_orchestrator.worker_manager import WorkerManager, WorkerPoolConfig

_FINISHING_EVENTS = (WORKER_COMPLETED, WORKER_FAILED, WORKER_TIMEOUT,
                     WORKER_CANCELLED)

_EXECUTING = (OrchestrationStatus.SPAWNING.value,
              OrchestrationStatus.RUNNING.value)


class OrchestratorModule:
    """Single entry point over the four orchestration components."""

    def __init__(self, sessions: SessionController,
                 templates: Optional[TemplateManager] = None,
                 parser: Optional[ResponseParser] = None,
                 worker_config: Optional[WorkerPoolConfig] = None,
                 subsession_config: Optional[SubSessionConfig] = None,
                 state_file: Optional[str] = ORCH_STATE_FILE,
                 poll_interval: float = ORCH_POLL_INTERVAL,
                 prompt_delay: float = 1.5,
                 template_pool_config: bool = True,
                 clock: Callable[[], float] = time.time,
                 debug: bool = False):
        self.sessions = sessions
        self.template_pool_config = template_pool_config
        self.debug = debug
        self.parser = parser or ResponseParser()
        self.templates = templates or TemplateManager(debug=debug)
        self.orchestrator = OrchestratorManager(
            self.templates, sessions, parser=self.parser,
            state_file=state_file, poll_interval=poll_interval,
            prompt_delay=prompt_delay, debug=debug)
        self.base_worker_config = worker_config or WorkerPoolConfig()
        self.workers = WorkerManager(sessions, parser=self.parser,
                                     config=self.base_worker_config,
                                     clock=clock, debug=debug)
        self.subsessions = SubSessionManager(sessions, config=subsession_config,
                                             clock=clock, debug=debug)
        self.events = EventEmitter("MODULE")
        self._pending: Set[asyncio.Task] = set()

        self._forward(self.templates.events, TEMPLATE_EVENTS)
        self._forward(self.orchestrator.events, ORCHESTRATOR_EVENTS)
        self._forward(self.workers.events, WORKER_EVENTS)
        self._forward(self.subsessions.events, SUBSESSION_EVENTS)
        for event in _FINISHING_EVENTS:
            self.workers.events.on(event, self._on_worker_finished)

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[MODULE] {msg}")

    def _forward(self, source: EventEmitter, names: Iterable[str]):
        for name in names:
            source.on(name, functools.partial(self.events.emit, name))

    # -- orchestration lifecycle ----------------------------------------------

    async def create_and_start(self, template_id: str, cwd: str, message: str,
                               custom_variables: Optional[Dict[str, Any]] = None
                               ) -> Orchestration:
        orch = self.orchestrator.create(template_id, cwd, message,
                                        custom_variables)
        return await self.orchestrator.start(orch.id)

    def _apply_pool_config(self, orch: Orchestration):
        """Adopt the template's pool settings while the pool is idle."""
        if not self.template_pool_config:
            return
        if self.workers.active_count or self.workers.queue_length:
            self._dbg(f"Pool busy, keeping current settings for {orch.id}")
            return
        self.workers.config = WorkerPoolConfig.from_template(
            orch.template, self.base_worker_config)

    async def confirm_tasks_and_spawn(self, orchestration_id: str,
                                      skip: Iterable[str] = (),
                                      priorities: Optional[Dict[str, Any]] = None
                                      ) -> List[WorkerState]:
        """Confirm the planned tasks and hand them to the worker pool."""
        tasks = self.orchestrator.confirm_tasks(orchestration_id, skip,
                                                priorities)
        orch = self.orchestrator.get(orchestration_id)
        self._apply_pool_config(orch)
        variables = self.orchestrator.build_variables(orchestration_id)

        workers = []
        try:
            if tasks:
                workers = await self.workers.spawn_batch(
                    orchestration_id, tasks, orch.template, variables)
            self._record_workers(orchestration_id)
            await self.orchestrator.advance_to_phase(
                orchestration_id, Phase.WORKER_EXECUTION.value)
        except Exception as exc:
            self.orchestrator.fail(orchestration_id, 'spawn', exc)
            raise

        print(f"[MODULE] {orchestration_id}: {len(workers)} workers handed "
              f"to the pool ({self.workers.queue_length} queued)")
        await self._check_execution(orchestration_id)
        return workers

    def pause(self, orchestration_id: str) -> Orchestration:
        return self.orchestrator.pause(orchestration_id)

    async def resume(self, orchestration_id: str) -> Orchestration:
        orch = self.orchestrator.resume(orchestration_id)
        await self._check_execution(orchestration_id)
        return orch

    async def cancel_and_cleanup(self, orchestration_id: str,
                                 archive: bool = True) -> Orchestration:
        orch = self.orchestrator.get(orchestration_id)
        if orch is None:
            raise NotFoundError(f"Orchestration not found: {orchestration_id}")
        if not orch.is_terminal:
            self.orchestrator.cancel(orchestration_id)
        cancelled = self.workers.cancel_orchestration(orchestration_id)
        self._dbg(f"Cancelled {cancelled} workers of {orchestration_id}")
        if orch.main_session_id:
            await self.subsessions.unregister_all_children(
                orch.main_session_id, archive_session=archive)
        if archive:
            await self.workers.archive_workers(orchestration_id)
        await self.orchestrator.cleanup(orchestration_id, archive_workers=False)
        return orch

    async def retry_worker(self, session_id: str) -> WorkerState:
        worker = self.workers.get_worker(session_id)
        orch = self.orchestrator.get(worker.orchestration_id)
        if orch is None or orch.status not in _EXECUTING + (
                OrchestrationStatus.PAUSED.value,):
            status = orch.status if orch else 'unknown'
            raise LifecycleError(f"Cannot retry worker while orchestration is "
                                 f"{status}")
        worker = self.workers.retry_worker(session_id)
        await self.workers.process_queue()
        self._record_workers(worker.orchestration_id)
        return worker

    # -- worker completion ----------------------------------------------------

    def _record_workers(self, orchestration_id: str):
        for worker in self.workers.get_workers(orchestration_id):
            if worker.status != WorkerStatus.PENDING.value:
                self.orchestrator.record_worker(orchestration_id, worker.task_id,
                                                worker.session_id)

    def _on_worker_finished(self, payload: Dict):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dbg("Worker finished outside the event loop, skipping check")
            return
        task = loop.create_task(
            self._check_execution(payload['orchestration_id']))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def settle(self):
        """Wait for every scheduled completion check to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def _check_execution(self, orchestration_id: str):
        orch = self.orchestrator.get(orchestration_id)
        if orch is None or orch.is_terminal:
            return
        self._record_workers(orchestration_id)
        stats = self.workers.get_aggregated_stats(orchestration_id)
        self.orchestrator.update_stats(orchestration_id, stats['tool_stats'])
        if orch.status != OrchestrationStatus.RUNNING.value:
            return
        if self.workers.get_workers(orchestration_id) and \
                not self.workers.all_finished(orchestration_id):
            return

        try:
            await self._finish_execution(orch, stats)
        except Exception as exc:
            self.orchestrator.fail(orchestration_id, 'aggregation', exc)

    async def _finish_execution(self, orch: Orchestration, stats: Dict):
        print(f"[MODULE] {orch.id}: all workers finished "
              f"({stats['completed']} completed, {stats['failed']} failed)")
        if OrchestratorManager._phase_enabled(orch, Phase.AGGREGATION.value):
            results = self.workers.collect_outputs(orch.id)
            await self.orchestrator.advance_to_phase(
                orch.id, Phase.AGGREGATION.value, {
                    'WORKER_RESULTS': json.dumps(results, indent=2),
                    'COMPLETED_COUNT': stats['completed'],
                    'FAILED_COUNT': stats['failed'],
                })
        else:
            outcome = 'partial' if stats['failed'] else 'success'
            self.orchestrator.complete(orch.id, outcome)

    # -- queries --------------------------------------------------------------

    def get_active_summary(self) -> List[Dict]:
        summary = []
        for orch in self.orchestrator.get_all():
            if orch.is_terminal:
                continue
            entry = self.orchestrator.get_status(orch.id)
            stats = self.workers.get_aggregated_stats(orch.id)
            stats['tool_stats'] = stats['tool_stats'].to_dict()
            entry['workers'] = stats
            summary.append(entry)
        return summary

    # -- monitoring and recovery ----------------------------------------------

    def start_monitoring(self):
        self.orchestrator.start_monitoring()
        self.workers.start_monitoring()

    async def restore(self) -> int:
        """Reload persisted orchestrations and re-attach their workers.

        Returns the number of orchestrations still in progress.
        """
        self.orchestrator.load_from_disk()
        in_progress = 0
        for orch in self.orchestrator.get_all():
            if orch.is_terminal:
                continue
            in_progress += 1
            executing = orch.status in _EXECUTING or (
                orch.status == OrchestrationStatus.PAUSED.value and
                orch.previous_status in _EXECUTING)
            if executing:
                await self._reattach(orch)
        self.start_monitoring()
        print(f"[MODULE] Restored {in_progress} in-progress orchestrations")
        return in_progress

    async def _reattach(self, orch: Orchestration):
        variables = self.orchestrator.build_variables(orch.id)
        missing = []
        for task in orch.active_tasks():
            session_id = orch.workers.get(task.id)
            if session_id:
                self.workers.adopt_worker(orch.id, task, session_id,
                                          orch.template, variables)
            else:
                missing.append(task)
        try:
            if missing:
                print(f"[MODULE] {orch.id}: spawning {len(missing)} workers "
                      f"that never started")
                await self.workers.spawn_batch(orch.id, missing, orch.template,
                                               variables)
                self._record_workers(orch.id)
            if orch.status == OrchestrationStatus.SPAWNING.value:
                await self.orchestrator.advance_to_phase(
                    orch.id, Phase.WORKER_EXECUTION.value)
        except OrchestratorError as exc:
            self.orchestrator.fail(orch.id, 'restore', exc)

    async def shutdown(self):
        await self.orchestrator.stop_monitoring()
        await self.workers.stop_monitoring()
        await self.subsessions.stop_monitoring()
        await self.settle()
        self.orchestrator.flush()
        print("[MODULE] Shut down")
