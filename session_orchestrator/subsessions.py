"""Protocol-free sub-session tracking.

Links child sessions to the parent that spawned them and decides that a
child is done purely from inactivity. Once done, the child's last
assistant message is posted back into the parent session.
"""

import asyncio
import time
import traceback
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from session_orchestrator.config import (
    ORCH_CONFIRMATION_DELAY, ORCH_INACTIVITY_THRESHOLD, ORCH_MAX_RESULT_LENGTH,
    ORCH_SUBSESSION_POLL_INTERVAL, ORCH_TASK_SPAWN_WINDOW,
)
from session_orchestrator.errors import (
    NotFoundError, OrchestratorError, SubSessionError,
)
from session_orchestrator.events import (
    EventEmitter, SUBSESSION_ACTIVITY, SUBSESSION_ARCHIVED, SUBSESSION_ERROR,
    SUBSESSION_MONITORING_STARTED, SUBSESSION_MONITORING_STOPPED,
    SUBSESSION_ORPHANED, SUBSESSION_REGISTERED, SUBSESSION_RESULT_RETURNED,
    SUBSESSION_STATUS_CHANGED, SUBSESSION_UNREGISTERED,
)
from session_orchestrator.models import SubSessionRelation, SubSessionStatus
from session_orchestrator.session_api import SessionController
from session_orchestrator.transcript import ASSISTANT, last_assistant_message

TRUNCATION_MARKER = '\n\n[... message truncated due to length ...]'
SPAWN_TOOL_NAMES = ('Task', 'Agent')
SPAWN_TEXT_HINTS = ('subagent_type', 'Task tool')

_SKIP_POLL = (SubSessionStatus.RETURNED.value, SubSessionStatus.ORPHANED.value,
              SubSessionStatus.ERROR.value, SubSessionStatus.COMPLETED.value)


@dataclass
class SubSessionConfig:
    poll_interval: float = ORCH_SUBSESSION_POLL_INTERVAL
    inactivity_threshold: float = ORCH_INACTIVITY_THRESHOLD
    confirmation_delay: float = ORCH_CONFIRMATION_DELAY
    result_prefix: str = '**[Sub-task result]**\n\n'
    result_suffix: str = ''
    max_message_length: int = ORCH_MAX_RESULT_LENGTH
    auto_archive_on_return: bool = False
    detect_task_spawn: bool = True
    task_spawn_window: float = ORCH_TASK_SPAWN_WINDOW


@dataclass
class _PendingSpawn:
    registered_at: float
    spawn_tool_id: Optional[str] = None


def find_spawn_invocations(messages: List[Dict]) -> List[Optional[str]]:
    """Return the tool-use ids of sub-agent spawns found in assistant turns.

    A textual mention of the spawn tool counts as one spawn with no id.
    """
    found = []
    for message in messages:
        if message.get('role') != ASSISTANT:
            continue
        content = message.get('content')
        parts = content if isinstance(content, list) else [content]
        ids = []
        mentioned = False
        for part in parts:
            if isinstance(part, dict) and part.get('type') == 'tool_use' and \
                    part.get('name') in SPAWN_TOOL_NAMES:
                ids.append(part.get('id'))
            elif isinstance(part, str) and any(h in part for h in SPAWN_TEXT_HINTS):
                mentioned = True
            elif isinstance(part, dict) and any(
                    h in (part.get('text') or '') for h in SPAWN_TEXT_HINTS):
                mentioned = True
        if mentioned and not ids:
            ids.append(None)
        found.extend(ids)
    return found


class SubSessionManager:
    """Tracks parent -> child session relations."""

    def __init__(self, sessions: SessionController,
                 config: Optional[SubSessionConfig] = None,
                 clock: Callable[[], float] = time.time,
                 debug: bool = False):
        self.sessions = sessions
        self.config = config or SubSessionConfig()
        self.clock = clock
        self.debug = debug
        self.events = EventEmitter("SUBSESSION")

        self.relations: Dict[str, SubSessionRelation] = {}      # child -> relation
        self._children: Dict[str, Set[str]] = {}                # parent -> children
        self._pending_spawns: Dict[str, _PendingSpawn] = {}     # parent -> spawn
        self._watched: Set[str] = set()
        self._seen_spawns: Dict[str, int] = {}                  # parent -> invocations seen
        self._known_sessions: Set[str] = set()
        self._polling = False
        self._monitor: Optional[asyncio.Task] = None

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[SUBSESSION] {msg}")

    # -- registration ---------------------------------------------------------

    def register_sub_session(self, child_session_id: str,
                             parent_session_id: str,
                             spawn_tool_id: Optional[str] = None,
                             task_id: Optional[str] = None) -> SubSessionRelation:
        if not child_session_id or not parent_session_id:
            raise SubSessionError('Both child and parent session ids are required')
        if child_session_id == parent_session_id:
            raise SubSessionError('A session cannot be its own parent')
        if child_session_id in self.relations:
            existing = self.relations[child_session_id]
            raise SubSessionError(
                f"Session {child_session_id} is already registered with "
                f"parent {existing.parent_session_id}")

        now = self.clock()
        relation = SubSessionRelation(child_session_id=child_session_id,
                                      parent_session_id=parent_session_id,
                                      spawn_tool_id=spawn_tool_id,
                                      task_id=task_id,
                                      created_at=now, last_activity_at=now)
        self.relations[child_session_id] = relation
        self._children.setdefault(parent_session_id, set()).add(child_session_id)
        print(f"[SUBSESSION] Registered {child_session_id} -> parent "
              f"{parent_session_id}")
        self.events.emit(SUBSESSION_REGISTERED, {
            'child_session_id': child_session_id,
            'parent_session_id': parent_session_id,
            'spawn_tool_id': spawn_tool_id,
        })
        self._ensure_monitoring()
        return relation

    def register_task_spawn(self, parent_session_id: str,
                            spawn_tool_id: Optional[str] = None):
        """Remember that ``parent_session_id`` just spawned a sub-agent."""
        self._pending_spawns[parent_session_id] = _PendingSpawn(
            self.clock(), spawn_tool_id)
        self._dbg(f"Pending spawn for parent {parent_session_id}")
        self._purge_pending_spawns()

    def try_link_to_task_spawn(self, new_session_id: str) -> bool:
        """Link a newly seen session to the first pending spawn still in
        its window."""
        now = self.clock()
        for parent_id, spawn in list(self._pending_spawns.items()):
            if parent_id == new_session_id:
                continue
            if now - spawn.registered_at <= self.config.task_spawn_window:
                del self._pending_spawns[parent_id]
                self.register_sub_session(new_session_id, parent_id,
                                          spawn_tool_id=spawn.spawn_tool_id)
                print(f"[SUBSESSION] Auto-linked {new_session_id} to spawn "
                      f"from {parent_id}")
                return True
        return False

    def _purge_pending_spawns(self):
        now = self.clock()
        for parent_id, spawn in list(self._pending_spawns.items()):
            if now - spawn.registered_at > self.config.task_spawn_window * 2:
                del self._pending_spawns[parent_id]

    @property
    def pending_spawns(self) -> Dict[str, Optional[str]]:
        return {p: s.spawn_tool_id for p, s in self._pending_spawns.items()}

    # -- queries --------------------------------------------------------------

    def get_relation(self, child_session_id: str) -> Optional[SubSessionRelation]:
        return self.relations.get(child_session_id)

    def get_children(self, parent_session_id: str) -> List[SubSessionRelation]:
        return [self.relations[c] for c in
                sorted(self._children.get(parent_session_id, ()))]

    def get_active_children(self, parent_session_id: str) -> List[SubSessionRelation]:
        live = (SubSessionStatus.ACTIVE.value, SubSessionStatus.COMPLETING.value)
        return [r for r in self.get_children(parent_session_id)
                if r.status in live]

    def get_by_status(self, status: str) -> List[SubSessionRelation]:
        return [r for r in self.relations.values() if r.status == status]

    def is_sub_session(self, session_id: str) -> bool:
        return session_id in self.relations

    def has_active_sub_sessions(self, session_id: str) -> bool:
        return bool(self.get_active_children(session_id))

    def get_stats(self) -> Dict:
        by_status = {s.value: 0 for s in SubSessionStatus}
        for relation in self.relations.values():
            by_status[relation.status] += 1
        return {
            'total': len(self.relations),
            'by_status': by_status,
            'parents': len(self._children),
            'pending_task_spawns': len(self._pending_spawns),
            'is_monitoring': self.is_monitoring,
        }

    # -- state machine --------------------------------------------------------

    def update_status(self, child_session_id: str, status: str,
                      error: Optional[str] = None):
        relation = self.relations.get(child_session_id)
        if relation is None:
            raise NotFoundError(f"SubSession not found: {child_session_id}")
        previous = relation.status
        relation.status = status
        if status == SubSessionStatus.COMPLETING.value:
            relation.completing_since = self.clock()
        elif status == SubSessionStatus.ACTIVE.value:
            relation.completing_since = None
        elif status == SubSessionStatus.RETURNED.value:
            relation.returned_at = self.clock()
        if error is not None:
            relation.error = error
        self.events.emit(SUBSESSION_STATUS_CHANGED, {
            'child_session_id': child_session_id,
            'parent_session_id': relation.parent_session_id,
            'previous_status': previous,
            'status': status,
        })

    def record_activity(self, child_session_id: str, message_count: int):
        relation = self.relations.get(child_session_id)
        if relation is None:
            return
        relation.message_count = message_count
        relation.last_activity_at = self.clock()
        if relation.status == SubSessionStatus.COMPLETING.value:
            self.update_status(child_session_id, SubSessionStatus.ACTIVE.value)
        self.events.emit(SUBSESSION_ACTIVITY, {
            'child_session_id': child_session_id,
            'message_count': message_count,
        })

    async def check_sub_session(self, child_session_id: str):
        """Advance one relation's inactivity state machine."""
        relation = self.relations.get(child_session_id)
        if relation is None or relation.status in _SKIP_POLL:
            return

        try:
            messages = await self.sessions.get_transcript(child_session_id)
        except OrchestratorError as exc:
            print(f"[SUBSESSION] Warning: error polling {child_session_id}: {exc}")
            if not await self._session_exists(child_session_id):
                self.update_status(child_session_id, SubSessionStatus.ERROR.value,
                                   error='Session no longer exists')
            return

        if self.relations.get(child_session_id) is not relation or \
                relation.status in _SKIP_POLL:
            return

        messages = messages or []
        if len(messages) != relation.message_count:
            self.record_activity(child_session_id, len(messages))
            return

        now = self.clock()
        last_is_assistant = bool(messages) and messages[-1].get('role') == ASSISTANT
        if relation.status == SubSessionStatus.ACTIVE.value:
            idle = now - relation.last_activity_at
            if idle >= self.config.inactivity_threshold and last_is_assistant:
                print(f"[SUBSESSION] Inactivity detected for {child_session_id} "
                      f"({idle:.0f}s)")
                self.update_status(child_session_id,
                                   SubSessionStatus.COMPLETING.value)
        elif relation.status == SubSessionStatus.COMPLETING.value:
            if now - relation.completing_since >= self.config.confirmation_delay:
                print(f"[SUBSESSION] Completion confirmed for {child_session_id}")
                self.update_status(child_session_id,
                                   SubSessionStatus.COMPLETED.value)
                try:
                    await self._deliver(child_session_id, messages)
                except OrchestratorError as exc:
                    print(f"[SUBSESSION] Failed to return result of "
                          f"{child_session_id}: {exc}")

    # -- result delivery ------------------------------------------------------

    def extract_result(self, messages: List[Dict]) -> Optional[str]:
        text = last_assistant_message(messages)
        if text is None:
            return None
        if len(text) > self.config.max_message_length:
            text = text[:self.config.max_message_length] + TRUNCATION_MARKER
        return text

    def format_result(self, message: str, relation: SubSessionRelation) -> str:
        formatted = self.config.result_prefix
        if relation.spawn_tool_id:
            formatted += f"*Task ID: {relation.spawn_tool_id}*\n\n"
        formatted += message
        return formatted + self.config.result_suffix

    async def _session_exists(self, session_id: str) -> bool:
        try:
            return await self.sessions.session_exists(session_id)
        except OrchestratorError as exc:
            self._dbg(f"Existence check failed for {session_id}: {exc}")
            return False

    async def _deliver(self, child_session_id: str,
                       messages: Optional[List[Dict]] = None) -> Dict:
        relation = self.relations[child_session_id]
        try:
            if messages is None:
                messages = await self.sessions.get_transcript(child_session_id)
            result = self.extract_result(messages or [])
            if result is None:
                raise SubSessionError('No assistant message found in sub-session')
            relation.last_assistant_message = result

            if not await self._session_exists(relation.parent_session_id):
                self.update_status(child_session_id,
                                   SubSessionStatus.ORPHANED.value,
                                   error='Parent session no longer exists')
                print(f"[SUBSESSION] Parent of {child_session_id} is gone, "
                      f"result not delivered")
                self.events.emit(SUBSESSION_ORPHANED, {
                    'child_session_id': child_session_id,
                    'parent_session_id': relation.parent_session_id,
                })
                return {'orphaned': True, 'message': result}

            formatted = self.format_result(result, relation)
            await self.sessions.send_message(relation.parent_session_id, formatted)
        except OrchestratorError as exc:
            self.update_status(child_session_id, SubSessionStatus.ERROR.value,
                               error=str(exc))
            self.events.emit(SUBSESSION_ERROR, {
                'child_session_id': child_session_id,
                'parent_session_id': relation.parent_session_id,
                'error': str(exc),
            })
            raise

        self.update_status(child_session_id, SubSessionStatus.RETURNED.value)
        print(f"[SUBSESSION] Returned result of {child_session_id} to "
              f"{relation.parent_session_id}")
        self.events.emit(SUBSESSION_RESULT_RETURNED, {
            'child_session_id': child_session_id,
            'parent_session_id': relation.parent_session_id,
            'message_length': len(formatted),
        })
        if self.config.auto_archive_on_return:
            try:
                await self.sessions.archive_session(child_session_id)
                self.events.emit(SUBSESSION_ARCHIVED,
                                 {'child_session_id': child_session_id})
            except OrchestratorError as exc:
                print(f"[SUBSESSION] Warning: failed to archive "
                      f"{child_session_id}: {exc}")
        return {'success': True, 'message': result, 'formatted': formatted}

    async def force_return(self, child_session_id: str) -> Dict:
        """Deliver the child's result now, skipping the inactivity wait."""
        relation = self.relations.get(child_session_id)
        if relation is None:
            raise NotFoundError(f"SubSession not found: {child_session_id}")
        if relation.status == SubSessionStatus.RETURNED.value:
            return {'already_returned': True,
                    'message': relation.last_assistant_message}
        if relation.status == SubSessionStatus.ACTIVE.value:
            self.update_status(child_session_id, SubSessionStatus.COMPLETING.value)
        return await self._deliver(child_session_id)

    # -- spawn detection ------------------------------------------------------

    async def scan_for_task_spawns(self, parent_session_id: str) -> List[Optional[str]]:
        if not self.config.detect_task_spawn:
            return []
        try:
            messages = await self.sessions.get_transcript(parent_session_id)
        except OrchestratorError as exc:
            print(f"[SUBSESSION] Warning: error scanning {parent_session_id} "
                  f"for spawns: {exc}")
            return []
        invocations = find_spawn_invocations(messages or [])
        fresh = invocations[self._seen_spawns.get(parent_session_id, 0):]
        self._seen_spawns[parent_session_id] = len(invocations)
        if fresh:
            self.register_task_spawn(parent_session_id, fresh[-1])
        return invocations

    async def _refresh_known_sessions(self) -> Optional[List[str]]:
        """List sessions and return those missing from the last listing."""
        try:
            session_ids = await self.sessions.list_sessions()
        except OrchestratorError as exc:
            print(f"[SUBSESSION] Warning: could not list sessions: {exc}")
            return None
        fresh = [s for s in session_ids if s not in self._known_sessions]
        self._known_sessions.update(session_ids)
        return fresh

    async def auto_detect_new_sessions(self) -> int:
        """Link sessions that appeared since the previous listing."""
        if not self.config.detect_task_spawn:
            return 0
        if not self._pending_spawns and not self._watched:
            return 0
        fresh = await self._refresh_known_sessions()
        if not fresh:
            return 0
        linked = 0
        for session_id in fresh:
            if session_id in self.relations or session_id in self._children \
                    or session_id in self._watched:
                continue
            if not self._pending_spawns:
                break
            if self.try_link_to_task_spawn(session_id):
                linked += 1
        return linked

    async def watch_parent_session(self, parent_session_id: str):
        """Auto-link sessions spawned by ``parent_session_id`` from now on."""
        print(f"[SUBSESSION] Watching parent session {parent_session_id}")
        self._watched.add(parent_session_id)
        # Spawns already in the history belong to sessions that exist.
        try:
            messages = await self.sessions.get_transcript(parent_session_id)
        except OrchestratorError as exc:
            print(f"[SUBSESSION] Warning: error reading {parent_session_id}: "
                  f"{exc}")
            messages = []
        self._seen_spawns[parent_session_id] = len(
            find_spawn_invocations(messages or []))
        # Baseline for new-child detection.
        await self._refresh_known_sessions()
        self._ensure_monitoring()

    def unwatch_parent_session(self, parent_session_id: str):
        self._watched.discard(parent_session_id)
        self._pending_spawns.pop(parent_session_id, None)
        self._seen_spawns.pop(parent_session_id, None)

    # -- polling --------------------------------------------------------------

    async def poll_all(self):
        """One monitoring tick. Skipped while a previous tick is running."""
        if self._polling:
            return
        self._polling = True
        try:
            for child_id in list(self.relations):
                await self.check_sub_session(child_id)
            for parent_id in list(self._watched):
                await self.scan_for_task_spawns(parent_id)
            self._purge_pending_spawns()
            await self.auto_detect_new_sessions()
        finally:
            self._polling = False

    @property
    def is_monitoring(self) -> bool:
        return self._monitor is not None and not self._monitor.done()

    def _ensure_monitoring(self):
        if self.is_monitoring:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dbg("No running event loop, monitoring deferred")
            return
        self._monitor = loop.create_task(self._run())
        print("[SUBSESSION] Monitoring started")
        self.events.emit(SUBSESSION_MONITORING_STARTED, None)

    def _stop_if_idle(self):
        if self.relations or self._watched or self._monitor is None:
            return
        self._monitor.cancel()
        self._monitor = None
        print("[SUBSESSION] Monitoring stopped")
        self.events.emit(SUBSESSION_MONITORING_STOPPED, None)

    async def stop_monitoring(self):
        if self._monitor is None:
            return
        monitor, self._monitor = self._monitor, None
        monitor.cancel()
        try:
            await monitor
        except asyncio.CancelledError:
            pass
        print("[SUBSESSION] Monitoring stopped")
        self.events.emit(SUBSESSION_MONITORING_STOPPED, None)

    async def _run(self):
        while True:
            await asyncio.sleep(self.config.poll_interval)
            try:
                await self.poll_all()
            except Exception as exc:
                print(f"[SUBSESSION] Polling error: {exc}")
                traceback.print_exc()

    # -- cleanup --------------------------------------------------------------

    async def unregister(self, child_session_id: str,
                         archive_session: bool = False):
        relation = self.relations.get(child_session_id)
        if relation is None:
            return
        if archive_session:
            try:
                await self.sessions.archive_session(child_session_id)
            except OrchestratorError as exc:
                print(f"[SUBSESSION] Warning: failed to archive "
                      f"{child_session_id}: {exc}")

        del self.relations[child_session_id]
        children = self._children.get(relation.parent_session_id)
        if children is not None:
            children.discard(child_session_id)
            if not children:
                del self._children[relation.parent_session_id]
        self.events.emit(SUBSESSION_UNREGISTERED, {
            'child_session_id': child_session_id,
            'parent_session_id': relation.parent_session_id,
        })
        self._stop_if_idle()

    async def unregister_all_children(self, parent_session_id: str,
                                      archive_session: bool = False):
        for relation in self.get_children(parent_session_id):
            await self.unregister(relation.child_session_id, archive_session)

    async def cleanup(self, max_age: float = 3600) -> Dict:
        """Drop orphaned relations and returned ones older than ``max_age``."""
        now = self.clock()
        stale = [
            child_id for child_id, r in self.relations.items()
            if r.status == SubSessionStatus.ORPHANED.value or (
                r.status == SubSessionStatus.RETURNED.value and
                r.returned_at is not None and now - r.returned_at > max_age)
        ]
        for child_id in stale:
            await self.unregister(child_id)
        print(f"[SUBSESSION] Cleanup: removed {len(stale)} sub-sessions")
        return {'removed': len(stale)}
