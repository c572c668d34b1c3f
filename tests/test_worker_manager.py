"""Tests for the worker pool: admission, queueing, polling, timeout, retry."""

import asyncio

import pytest

from session_orchestrator.errors import LifecycleError, NotFoundError, TransportError
from session_orchestrator.events import (
    WORKER_COMPLETED, WORKER_FAILED, WORKER_PROGRESS, WORKER_QUEUED,
    WORKER_TIMEOUT,
)
from session_orchestrator.models import Task, WorkerStatus
from session_orchestrator.worker_manager import (
    FALLBACK_COMPLETION_HINT, WorkerManager, WorkerPoolConfig,
    extract_tool_stats, worker_session_id,
)

from conftest import FakeSessions, envelope

VARIABLES = {'CWD': '/repo', 'USER_REQUEST': 'Document the project'}


def make_task(task_id, title=None, **extra):
    return Task(id=task_id, title=title or f"Task {task_id}",
                description=f"Do {task_id}", **extra)


@pytest.fixture
def template(templates):
    return templates.resolve('_default')


def make_pool(sessions, clock, **overrides):
    settings = dict(max_workers=1, worker_timeout=300, retry_limit=2,
                    spawn_delay=0, poll_interval=0.01)
    settings.update(overrides)
    return WorkerManager(sessions, config=WorkerPoolConfig(**settings),
                         clock=clock)


def record(pool, *names):
    seen = []
    for name in names:
        pool.events.on(name, lambda payload, name=name: seen.append((name, payload)))
    return seen


def test_worker_session_id_is_deterministic():
    assert worker_session_id('o1', 't1') == 'local___orch_o1_worker_t1'
    assert worker_session_id('o1', 't1', 2) == 'local___orch_o1_worker_t1_r2'


def test_extract_tool_stats_counts_tool_mentions():
    stats = extract_tool_stats('[tool_use Read] {}\n[tool_use Edit] {}\nRunning Bash')
    assert (stats.reads, stats.edits, stats.shell) == (1, 1, 1)
    assert stats.total == 3


def test_pool_config_from_template(template):
    config = WorkerPoolConfig.from_template(
        {'config': {'maxWorkers': 2, 'workerTimeout': 60}},
        WorkerPoolConfig(retry_limit=4, spawn_delay=0))
    assert config.max_workers == 2
    assert config.worker_timeout == 60
    assert config.retry_limit == 4
    assert config.spawn_delay == 0


@pytest.mark.asyncio
async def test_spawn_worker_creates_session(sessions, clock, template):
    pool = make_pool(sessions, clock)
    worker = await pool.spawn_worker('o1', make_task('t1', 'Parser docs'),
                                     template, VARIABLES)

    assert worker.status == WorkerStatus.RUNNING.value
    assert worker.started_at == clock.now
    created = sessions.created[0]
    assert created['session_id'] == 'local___orch_o1_worker_t1'
    assert created['cwd'] == '/repo'
    assert created['title'] == '[Worker] Parser docs'
    assert 'Task t1: Parser docs' in created['message']
    assert 'Document the project' in created['message']
    assert pool.active_count == 1
    assert pool.available_slots == 0


@pytest.mark.asyncio
async def test_worker_title_is_truncated(sessions, clock, template):
    pool = make_pool(sessions, clock)
    await pool.spawn_worker('o1', make_task('t1', 'x' * 200), template, VARIABLES)
    assert len(sessions.created[0]['title']) == 100


@pytest.mark.asyncio
async def test_full_pool_queues_and_cancel_frees_slot_on_next_sweep(
        sessions, clock, template):
    pool = make_pool(sessions, clock, max_workers=1)
    seen = record(pool, WORKER_QUEUED)

    first, second = await pool.spawn_batch(
        'o1', [make_task('t1'), make_task('t2')], template, VARIABLES)
    assert first.status == WorkerStatus.RUNNING.value
    assert second.status == WorkerStatus.PENDING.value
    assert pool.queue_length == 1
    assert len(seen) == 2

    pool.cancel_worker(first.session_id)
    assert first.status == WorkerStatus.CANCELLED.value
    assert second.status == WorkerStatus.PENDING.value

    await pool.poll_all_workers()
    assert second.status == WorkerStatus.RUNNING.value
    assert pool.queue_length == 0
    assert [c['session_id'] for c in sessions.created] == [
        'local___orch_o1_worker_t1', 'local___orch_o1_worker_t2']


@pytest.mark.asyncio
async def test_queue_is_fifo(sessions, clock, template):
    pool = make_pool(sessions, clock, max_workers=2)
    workers = await pool.spawn_batch(
        'o1', [make_task(t) for t in ('t1', 't2', 't3', 't4')], template, VARIABLES)
    assert [w.status for w in workers] == ['running', 'running', 'pending', 'pending']

    pool.cancel_worker(workers[0].session_id)
    await pool.process_queue()
    assert workers[2].status == WorkerStatus.RUNNING.value
    assert workers[3].status == WorkerStatus.PENDING.value


@pytest.mark.asyncio
async def test_duplicate_task_is_rejected(sessions, clock, template):
    pool = make_pool(sessions, clock)
    await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    with pytest.raises(LifecycleError):
        await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    # Same task id in another orchestration is fine.
    other = await pool.spawn_worker('o2', make_task('t1'), template, VARIABLES)
    assert other.status == WorkerStatus.PENDING.value


@pytest.mark.asyncio
async def test_spawn_failure_marks_worker_failed(sessions, clock, template):
    pool = make_pool(sessions, clock)
    seen = record(pool, WORKER_FAILED)
    sessions.fail_create.add('*')

    with pytest.raises(TransportError):
        await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    worker = pool.get_worker_by_task('o1', 't1')
    assert worker.status == WorkerStatus.FAILED.value
    assert 'cannot create' in worker.error
    assert pool.active_count == 0
    assert seen[0][1]['task_id'] == 't1'


@pytest.mark.asyncio
async def test_batch_spawn_failure_does_not_stop_queue(sessions, clock, template):
    pool = make_pool(sessions, clock, max_workers=2)
    sessions.fail_create.add('local___orch_o1_worker_t1')
    first, second = await pool.spawn_batch(
        'o1', [make_task('t1'), make_task('t2')], template, VARIABLES)
    assert first.status == WorkerStatus.FAILED.value
    assert second.status == WorkerStatus.RUNNING.value


@pytest.mark.asyncio
async def test_poll_applies_progress_and_is_idempotent(sessions, clock, template):
    pool = make_pool(sessions, clock)
    seen = record(pool, WORKER_PROGRESS)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)

    sessions.reply(worker.session_id, envelope('progress', {
        'task_id': 't1', 'status': 'in_progress', 'progress_percent': 40,
        'current_action': 'Reading parser.py'}))
    assert await pool.poll_worker(worker.session_id) is True
    assert worker.progress == 40
    assert worker.current_action == 'Reading parser.py'
    assert len(seen) == 1

    assert await pool.poll_worker(worker.session_id) is False
    assert worker.progress == 40
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_unchanged_transcript_leaves_worker_untouched(sessions, clock, template):
    pool = make_pool(sessions, clock)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    sessions.reply(worker.session_id, 'Reading the parser')
    await pool.poll_worker(worker.session_id)
    polled_at = worker.last_poll_at
    before = worker.to_dict()

    clock.advance(10)
    assert await pool.poll_worker(worker.session_id) is False
    assert worker.last_poll_at == polled_at
    assert worker.to_dict() == before


@pytest.mark.asyncio
async def test_progress_is_clamped_below_completion(sessions, clock, template):
    pool = make_pool(sessions, clock)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    sessions.reply(worker.session_id, envelope('progress', {
        'task_id': 't1', 'status': 'in_progress', 'progress_percent': 150}))
    await pool.poll_worker(worker.session_id)
    assert worker.progress == 99
    assert worker.status == WorkerStatus.RUNNING.value


@pytest.mark.asyncio
async def test_completion_envelope_completes_worker(sessions, clock, template):
    pool = make_pool(sessions, clock)
    seen = record(pool, WORKER_COMPLETED)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)

    sessions.reply(worker.session_id, envelope('completion', {
        'task_id': 't1', 'status': 'success', 'summary': 'Documented parser',
        'output_files': ['docs/parser.md']}))
    await pool.poll_worker(worker.session_id)

    assert worker.status == WorkerStatus.COMPLETED.value
    assert worker.progress == 100
    assert worker.output == 'Documented parser'
    assert worker.output_files == ['docs/parser.md']
    assert worker.completed_at == clock.now
    assert len(seen) == 1
    assert pool.all_finished('o1')

    sessions.reply(worker.session_id, 'anything else')
    assert await pool.poll_worker(worker.session_id) is False
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_failed_completion_fails_worker(sessions, clock, template):
    pool = make_pool(sessions, clock)
    seen = record(pool, WORKER_FAILED)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    sessions.reply(worker.session_id, envelope('completion', {
        'task_id': 't1', 'status': 'failed', 'error': 'File missing'}))
    await pool.poll_worker(worker.session_id)
    assert worker.status == WorkerStatus.FAILED.value
    assert worker.error == 'File missing'
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_envelopes_in_prompt_are_ignored(sessions, clock, template):
    pool = make_pool(sessions, clock)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    # The worker prompt itself contains example envelopes.
    sessions.reply(worker.session_id, 'Starting now.')
    await pool.poll_worker(worker.session_id)
    assert worker.status == WorkerStatus.RUNNING.value
    assert worker.progress == 0


@pytest.mark.asyncio
async def test_timeout_without_new_messages(sessions, clock, template):
    pool = make_pool(sessions, clock, worker_timeout=300)
    seen = record(pool, WORKER_TIMEOUT)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)

    clock.advance(299)
    await pool.poll_all_workers()
    assert worker.status == WorkerStatus.RUNNING.value

    clock.advance(2)
    await pool.poll_all_workers()
    assert worker.status == WorkerStatus.TIMEOUT.value
    assert 'timed out' in worker.error
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_late_completion_after_timeout_is_ignored(sessions, clock, template):
    pool = make_pool(sessions, clock, worker_timeout=10)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    clock.advance(11)
    await pool.poll_worker(worker.session_id)

    sessions.reply(worker.session_id, envelope('completion', {
        'task_id': 't1', 'status': 'success', 'summary': 'done late'}))
    assert await pool.poll_worker(worker.session_id) is False
    assert worker.status == WorkerStatus.TIMEOUT.value
    assert worker.output is None


@pytest.mark.asyncio
async def test_pause_and_resume_restart_timeout_clock(sessions, clock, template):
    pool = make_pool(sessions, clock, worker_timeout=100)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)

    pool.pause_worker(worker.session_id)
    assert worker.status == WorkerStatus.PAUSED.value
    assert pool.active_count == 1
    clock.advance(500)
    assert await pool.poll_worker(worker.session_id) is False

    pool.resume_worker(worker.session_id)
    assert worker.started_at == clock.now
    clock.advance(50)
    await pool.poll_worker(worker.session_id)
    assert worker.status == WorkerStatus.RUNNING.value

    with pytest.raises(LifecycleError):
        pool.resume_worker(worker.session_id)


@pytest.mark.asyncio
async def test_retry_uses_fresh_session_id(sessions, clock, template):
    pool = make_pool(sessions, clock, retry_limit=1)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    with pytest.raises(LifecycleError):
        pool.retry_worker(worker.session_id)

    sessions.reply(worker.session_id, envelope('completion', {
        'task_id': 't1', 'status': 'failed', 'error': 'boom'}))
    await pool.poll_worker(worker.session_id)
    old_id = worker.session_id

    retried = pool.retry_worker(old_id)
    assert retried is worker
    assert retried.session_id == 'local___orch_o1_worker_t1_r1'
    assert retried.status == WorkerStatus.PENDING.value
    assert retried.retry_count == 1
    assert retried.error is None
    assert pool.get_worker_by_task('o1', 't1') is worker
    with pytest.raises(NotFoundError):
        pool.get_worker(old_id)

    await pool.process_queue()
    assert worker.status == WorkerStatus.RUNNING.value
    assert sessions.created[-1]['session_id'] == 'local___orch_o1_worker_t1_r1'

    pool.cancel_worker(worker.session_id)
    with pytest.raises(LifecycleError):
        pool.retry_worker(worker.session_id)


@pytest.mark.asyncio
async def test_fallback_hint_only_sets_current_action(sessions, clock, template):
    pool = make_pool(sessions, clock)
    worker = await pool.spawn_worker('o1', make_task('t1'), template, VARIABLES)
    sessions.reply(worker.session_id,
                   'The task is complete. I successfully documented every module.')
    await pool.poll_worker(worker.session_id)
    assert worker.status == WorkerStatus.RUNNING.value
    assert worker.current_action == FALLBACK_COMPLETION_HINT


@pytest.mark.asyncio
async def test_tool_stats_and_aggregation(sessions, clock, template):
    pool = make_pool(sessions, clock, max_workers=2)
    first, second = await pool.spawn_batch(
        'o1', [make_task('t1'), make_task('t2')], template, VARIABLES)

    sessions.reply(first.session_id, [
        {'type': 'tool_use', 'name': 'Read', 'input': {'file_path': 'a.py'}},
        {'type': 'tool_use', 'name': 'Edit', 'input': {'file_path': 'b.py'}},
    ])
    sessions.reply(second.session_id, envelope('completion', {
        'task_id': 't2', 'status': 'success', 'summary': 'ok'}))
    await pool.poll_all_workers()

    assert first.tool_stats.reads == 1
    assert first.tool_stats.edits == 1
    stats = pool.get_aggregated_stats('o1')
    assert stats['total_workers'] == 2
    assert stats['completed'] == 1
    assert stats['running'] == 1
    assert stats['tool_stats'].reads == 1
    assert stats['average_progress'] == 50

    outputs = {o['task_id']: o for o in pool.collect_outputs('o1')}
    assert outputs['t2']['output'] == 'ok'
    assert outputs['t1']['status'] == 'running'
    assert [w.task_id for w in pool.get_completed_workers('o1')] == ['t2']
    assert [w.task_id for w in pool.get_active_workers('o1')] == ['t1']


@pytest.mark.asyncio
async def test_adopt_worker_keeps_session_id_and_retry_count(sessions, clock, template):
    pool = make_pool(sessions, clock)
    sessions.add_session('local___orch_o1_worker_t1_r2')
    worker = pool.adopt_worker('o1', make_task('t1'), 'local___orch_o1_worker_t1_r2',
                               template, VARIABLES)
    assert worker.status == WorkerStatus.RUNNING.value
    assert worker.retry_count == 2
    assert pool.get_worker('local___orch_o1_worker_t1_r2') is worker


@pytest.mark.asyncio
async def test_archive_and_delete_workers(sessions, clock, template):
    pool = make_pool(sessions, clock, max_workers=1)
    first, second = await pool.spawn_batch(
        'o1', [make_task('t1'), make_task('t2')], template, VARIABLES)

    assert await pool.archive_workers('o1') == 1
    assert sessions.archived == [first.session_id]

    assert await pool.delete_workers('o1') == 2
    assert sessions.deleted == [first.session_id]
    assert pool.get_workers('o1') == []
    assert pool.queue_length == 0


@pytest.mark.asyncio
async def test_cancel_orchestration(sessions, clock, template):
    pool = make_pool(sessions, clock, max_workers=1)
    await pool.spawn_batch('o1', [make_task('t1'), make_task('t2')],
                           template, VARIABLES)
    assert pool.cancel_orchestration('o1') == 2
    assert pool.queue_length == 0
    assert pool.all_finished('o1')


class GatedSessions(FakeSessions):
    """Holds every session creation until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def create_session(self, cwd, message, title=None, session_id=None):
        await self.gate.wait()
        return await super().create_session(cwd, message, title=title,
                                            session_id=session_id)


@pytest.mark.asyncio
async def test_spawn_error_after_cancel_keeps_worker_cancelled(clock, template):
    sessions = GatedSessions()
    pool = make_pool(sessions, clock)
    seen = record(pool, WORKER_FAILED)
    spawning = asyncio.create_task(
        pool.spawn_worker('o1', make_task('t1'), template, VARIABLES))
    await asyncio.sleep(0)

    worker = pool.get_worker_by_task('o1', 't1')
    assert worker.status == WorkerStatus.SPAWNING.value
    pool.cancel_worker(worker.session_id)
    sessions.fail_create.add('*')
    sessions.gate.set()

    assert await spawning is worker
    assert worker.status == WorkerStatus.CANCELLED.value
    assert worker.error is None
    assert seen == []


@pytest.mark.asyncio
async def test_session_created_after_cancel_is_archived(clock, template):
    sessions = GatedSessions()
    pool = make_pool(sessions, clock)
    spawning = asyncio.create_task(
        pool.spawn_worker('o1', make_task('t1'), template, VARIABLES))
    await asyncio.sleep(0)

    worker = pool.get_worker_by_task('o1', 't1')
    pool.cancel_worker(worker.session_id)
    sessions.gate.set()
    await spawning

    assert worker.status == WorkerStatus.CANCELLED.value
    assert worker.started_at is None
    assert sessions.archived == ['local___orch_o1_worker_t1']
    assert await pool.archive_workers('o1') == 0


@pytest.mark.asyncio
async def test_spawn_delay_follows_failed_attempts(sessions, clock, template, monkeypatch):
    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, 'sleep', fake_sleep)
    pool = make_pool(sessions, clock, max_workers=3, spawn_delay=0.5)
    sessions.fail_create.add('local___orch_o1_worker_t1')
    first, second, third = await pool.spawn_batch(
        'o1', [make_task('t1'), make_task('t2'), make_task('t3')], template, VARIABLES)

    assert first.status == WorkerStatus.FAILED.value
    assert [second.status, third.status] == ['running', 'running']
    assert delays == [0.5, 0.5]
