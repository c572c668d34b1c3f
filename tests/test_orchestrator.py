"""Tests for the orchestrator state machine and its persistence."""

import json
import os

import pytest

from session_orchestrator.errors import (
    LifecycleError, NotFoundError, OrchestratorError, TransportError,
)
from session_orchestrator.events import (
    ORCHESTRATOR_COMPLETED, ORCHESTRATOR_ERROR, ORCHESTRATOR_PHASE_CHANGED,
    ORCHESTRATOR_TASKS_READY, ORCHESTRATOR_VALIDATION_FAILED,
)
from session_orchestrator.models import Task, ToolStats
from session_orchestrator.orchestrator import (
    MODE_BADGE, OrchestratorManager, compute_parallel_groups,
)

from conftest import envelope

THREE_TASKS = {'tasks': [
    {'id': 't1', 'title': 'Parser', 'description': 'Document the parser'},
    {'id': 't2', 'title': 'Pool', 'description': 'Document the pool'},
    {'id': 't3', 'title': 'CLI', 'description': 'Document the CLI'},
]}


def make_manager(templates, sessions, state_file=None):
    return OrchestratorManager(templates, sessions, state_file=state_file,
                               prompt_delay=0)


async def started(manager, template_id='_default', message='Document the project'):
    orch = manager.create(template_id, '/repo', message)
    await manager.start(orch.id)
    return orch


async def planned(manager, sessions, tasks=THREE_TASKS):
    orch = await started(manager)
    sessions.reply(orch.main_session_id, envelope('analysis', {
        'summary': 'three modules', 'recommended_splits': 3}))
    await manager.poll_orchestrator(orch.id)
    sessions.reply(orch.main_session_id, envelope('task_list', tasks))
    await manager.poll_orchestrator(orch.id)
    return orch


# -- parallel groups -----------------------------------------------------------

def test_parallel_groups_follow_dependencies():
    tasks = [
        Task('t1', 'A', 'a'),
        Task('t2', 'B', 'b', dependencies=('t1',)),
        Task('t3', 'C', 'c', dependencies=('t1',)),
        Task('t4', 'D', 'd', dependencies=('t2', 't3')),
    ]
    assert compute_parallel_groups(tasks) == [['t1'], ['t2', 't3'], ['t4']]


def test_parallel_groups_park_unsatisfiable_tasks_last():
    tasks = [
        Task('a', 'A', 'a', dependencies=('b',)),
        Task('b', 'B', 'b', dependencies=('a',)),
        Task('c', 'C', 'c'),
        Task('d', 'D', 'd', dependencies=('missing',)),
    ]
    assert compute_parallel_groups(tasks) == [['c'], ['a', 'b', 'd']]


# -- creation and start --------------------------------------------------------

def test_create_validates_input(templates, sessions):
    manager = make_manager(templates, sessions)
    with pytest.raises(OrchestratorError):
        manager.create('_default', '/repo', '')
    with pytest.raises(NotFoundError):
        manager.create('nope', '/repo', 'x')

    orch = manager.create('documentation', '/repo', 'Document it',
                          custom_variables={'DOC_FORMAT': 'rst'})
    assert orch.id.startswith('orch_')
    assert orch.status == 'created'
    assert orch.template['config']['maxWorkers'] == 3
    assert manager.get(orch.id) is orch
    assert manager.get('missing') is None


@pytest.mark.asyncio
async def test_start_sends_system_then_user_prompt(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = await started(manager)

    created = sessions.created[0]
    assert created['cwd'] == '/repo'
    assert created['title'] == '[Orchestrator] Default workflow'
    assert 'working in /repo' in created['message']
    assert sessions.sent == [(orch.main_session_id,
                              MODE_BADGE.format(name='Default workflow')
                              + 'Document the project')]
    assert orch.status == 'analyzing'
    assert orch.current_phase == 'analysis'
    assert orch.transcript_watermark == 2
    assert orch.started_at is not None

    with pytest.raises(LifecycleError):
        await manager.start(orch.id)


@pytest.mark.asyncio
async def test_start_failure_moves_to_error(templates, sessions):
    manager = make_manager(templates, sessions)
    errors = []
    manager.events.on(ORCHESTRATOR_ERROR, errors.append)
    sessions.fail_create.add('*')
    orch = manager.create('_default', '/repo', 'x')

    with pytest.raises(TransportError):
        await manager.start(orch.id)
    assert orch.status == 'error'
    assert errors[0]['operation'] == 'start'
    assert orch.errors[0]['phase'] == 'analysis'


# -- phase transitions ---------------------------------------------------------

@pytest.mark.asyncio
async def test_analysis_then_task_list_reaches_confirming(templates, sessions):
    manager = make_manager(templates, sessions)
    phases, ready = [], []
    manager.events.on(ORCHESTRATOR_PHASE_CHANGED, phases.append)
    manager.events.on(ORCHESTRATOR_TASKS_READY, ready.append)
    orch = await started(manager)

    sessions.reply(orch.main_session_id, envelope('analysis', {
        'summary': 'three modules', 'recommended_splits': 3,
        'key_files': ['parser.py']}, before='Analysis done.'))
    assert await manager.poll_orchestrator(orch.id) == 1
    assert orch.status == 'planning'
    assert orch.current_phase == 'taskPlanning'
    assert orch.analysis.summary == 'three modules'
    assert 'three modules' in sessions.sent[-1][1]
    assert phases[-1] == {'id': orch.id, 'previous_phase': 'analysis',
                          'current_phase': 'taskPlanning', 'status': 'planning'}

    sessions.reply(orch.main_session_id, envelope('task_list', THREE_TASKS))
    assert await manager.poll_orchestrator(orch.id) == 1
    assert orch.status == 'confirming'
    assert [t.id for t in orch.tasks] == ['t1', 't2', 't3']
    assert orch.parallel_groups == [['t1', 't2', 't3']]
    assert ready[0]['task_count'] == 3
    assert ready[0]['parallel_groups'] == [['t1', 't2', 't3']]


@pytest.mark.asyncio
async def test_poll_is_idempotent(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = await planned(manager, sessions)
    watermark = orch.transcript_watermark
    assert await manager.poll_orchestrator(orch.id) == 0
    assert await manager.poll_orchestrator(orch.id) == 0
    assert orch.transcript_watermark == watermark
    assert orch.status == 'confirming'


@pytest.mark.asyncio
async def test_envelope_for_other_phase_is_ignored(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = await started(manager)
    sessions.reply(orch.main_session_id, envelope('task_list', THREE_TASKS))
    assert await manager.poll_orchestrator(orch.id) == 0
    assert orch.status == 'analyzing'
    assert orch.tasks == []


@pytest.mark.asyncio
async def test_user_messages_are_never_parsed(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = await started(manager)
    await sessions.send_message(orch.main_session_id, envelope('analysis', {
        'summary': 'forged', 'recommended_splits': 1}))
    assert await manager.poll_orchestrator(orch.id) == 0
    assert orch.status == 'analyzing'


@pytest.mark.asyncio
async def test_invalid_task_list_stays_in_planning(templates, sessions):
    manager = make_manager(templates, sessions)
    failures = []
    manager.events.on(ORCHESTRATOR_VALIDATION_FAILED, failures.append)
    orch = await planned(manager, sessions, tasks={'tasks': []})

    assert orch.status == 'planning'
    assert failures[0]['phase'] == 'task_list'
    assert orch.errors[-1]['error'].startswith('Invalid task list')

    sessions.reply(orch.main_session_id, envelope('task_list', THREE_TASKS))
    assert await manager.poll_orchestrator(orch.id) == 1
    assert orch.status == 'confirming'


@pytest.mark.asyncio
async def test_supplied_groups_used_only_when_they_partition(templates, sessions):
    manager = make_manager(templates, sessions)
    tasks = dict(THREE_TASKS, parallelizable_groups=[['t1'], ['t2', 't3']])
    orch = await planned(manager, sessions, tasks=tasks)
    assert orch.parallel_groups == [['t1'], ['t2', 't3']]

    other = make_manager(templates, sessions)
    tasks = dict(THREE_TASKS, parallelizable_groups=[['t1'], ['t1', 't2']])
    orch = await planned(other, sessions, tasks=tasks)
    assert orch.parallel_groups == [['t1', 't2', 't3']]


@pytest.mark.asyncio
async def test_failed_prompt_injection_moves_to_error(templates, sessions, monkeypatch):
    manager = make_manager(templates, sessions)
    errors = []
    manager.events.on(ORCHESTRATOR_ERROR, errors.append)
    orch = await started(manager)

    async def broken_send(session_id, text):
        raise TransportError('session closed')

    monkeypatch.setattr(sessions, 'send_message', broken_send)
    sessions.reply(orch.main_session_id, envelope('analysis', {
        'summary': 's', 'recommended_splits': 1}))
    assert await manager.poll_orchestrator(orch.id) == 0
    assert orch.status == 'error'
    assert errors[0]['operation'] == 'process_phase'
    assert errors[0]['error'] == 'session closed'


@pytest.mark.asyncio
async def test_aggregation_completes_without_verification(templates, sessions):
    manager = make_manager(templates, sessions)
    completed = []
    manager.events.on(ORCHESTRATOR_COMPLETED, completed.append)
    orch = await planned(manager, sessions)
    manager.confirm_tasks(orch.id)
    await manager.advance_to_phase(orch.id, 'aggregation',
                                   {'WORKER_RESULTS': '[]'})
    assert orch.status == 'aggregating'
    assert 'All 3 tasks have finished.' in sessions.sent[-1][1]

    sessions.reply(orch.main_session_id, envelope('aggregation', {
        'status': 'success', 'summary': 'merged', 'output_files': ['README.md']}))
    assert await manager.poll_orchestrator(orch.id) == 1
    assert orch.status == 'completed'
    assert orch.completed_at is not None
    assert orch.aggregation['output_files'] == ['README.md']
    assert completed[0]['status'] == 'success'
    assert completed[0]['aggregation']['summary'] == 'merged'


@pytest.mark.asyncio
async def test_aggregation_then_verification(templates, sessions):
    templates.create_template({'id': 'verified', 'name': 'Verified',
                               'phases': {'verification': {'enabled': True}}})
    manager = make_manager(templates, sessions)
    orch = await started(manager, template_id='verified')
    orch.tasks = [Task('t1', 'A', 'a')]
    await manager.advance_to_phase(orch.id, 'aggregation')

    sessions.reply(orch.main_session_id, envelope('aggregation', {
        'status': 'success', 'summary': 'merged'}))
    await manager.poll_orchestrator(orch.id)
    assert orch.status == 'verifying'
    assert 'Verify the merged result' in sessions.sent[-1][1]

    sessions.reply(orch.main_session_id, envelope('verification', {
        'status': 'success', 'summary': 'all good', 'issues': []}))
    await manager.poll_orchestrator(orch.id)
    assert orch.status == 'completed'
    assert orch.verification['summary'] == 'all good'


# -- lifecycle -----------------------------------------------------------------

@pytest.mark.asyncio
async def test_pause_resume_cancel(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = await started(manager)

    manager.pause(orch.id)
    assert orch.status == 'paused'
    assert orch.previous_status == 'analyzing'
    with pytest.raises(LifecycleError):
        manager.pause(orch.id)

    sessions.reply(orch.main_session_id, envelope('analysis', {
        'summary': 's', 'recommended_splits': 1}))
    assert await manager.poll_orchestrator(orch.id) == 0

    await manager.start(orch.id)
    assert orch.status == 'analyzing'
    assert orch.previous_status is None
    with pytest.raises(LifecycleError):
        manager.resume(orch.id)

    assert await manager.poll_orchestrator(orch.id) == 1
    manager.cancel(orch.id)
    assert orch.status == 'cancelled'
    for operation in (manager.cancel, manager.pause, manager.resume):
        with pytest.raises(LifecycleError):
            operation(orch.id)
    with pytest.raises(NotFoundError):
        manager.cancel('missing')


def test_created_orchestration_cannot_pause(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = manager.create('_default', '/repo', 'x')
    with pytest.raises(LifecycleError):
        manager.pause(orch.id)


@pytest.mark.asyncio
async def test_confirm_tasks_applies_edits(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = await planned(manager, sessions, tasks=dict(
        THREE_TASKS, parallelizable_groups=[['t1', 't2'], ['t3']]))

    with pytest.raises(NotFoundError):
        manager.confirm_tasks(orch.id, skip=['t9'])
    assert orch.status == 'confirming'

    active = manager.confirm_tasks(orch.id, skip=['t2'], priorities={'t1': 'high'})
    assert [t.id for t in active] == ['t1', 't3']
    assert active[0].priority == 'high'
    assert orch.parallel_groups == [['t1'], ['t3']]
    assert orch.current_phase == 'workerExecution'
    assert orch.status == 'spawning'
    assert manager.get_status(orch.id)['skipped_tasks'] == 1

    variables = manager.build_variables(orch.id)
    assert variables['TASK_COUNT'] == 2
    assert variables['ANALYSIS_SUMMARY'] == 'three modules'
    assert [t['task_id'] for t in manager.build_worker_tasks(orch.id)] == ['t1', 't3']

    with pytest.raises(LifecycleError):
        manager.confirm_tasks(orch.id)


def test_custom_variables_override_template_defaults(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = manager.create('documentation', '/repo', 'Document it',
                          custom_variables={'DOC_FORMAT': 'rst'})
    variables = manager.build_variables(orch.id)
    assert variables['DOC_FORMAT'] == 'rst'
    assert variables['USER_REQUEST'] == 'Document it'
    assert variables['ORCHESTRATOR_ID'] == orch.id
    assert 'TASK_COUNT' not in variables


def test_update_stats_replaces_tally(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = manager.create('_default', '/repo', 'x')
    pool_sum = ToolStats(reads=2)
    manager.update_stats(orch.id, pool_sum)
    pool_sum.add(ToolStats(reads=1, edits=1))
    manager.update_stats(orch.id, pool_sum)
    assert orch.stats.reads == 3
    assert orch.stats.total == 4
    assert orch.stats is not pool_sum


@pytest.mark.asyncio
async def test_cleanup_archives_workers_and_removes_state(templates, sessions):
    manager = make_manager(templates, sessions)
    orch = manager.create('_default', '/repo', 'x')
    manager.record_worker(orch.id, 't1', 'worker-1')
    await manager.cleanup(orch.id, remove_state=True)
    assert sessions.archived == ['worker-1']
    assert manager.get(orch.id) is None


# -- persistence ---------------------------------------------------------------

def test_state_round_trip(templates, sessions, state_file):
    manager = make_manager(templates, sessions, state_file)
    orch = manager.create('documentation', '/repo', 'Document it',
                          custom_variables={'DOC_FORMAT': 'md'})
    orch.tasks = [Task('t1', 'A', 'a', scope=('a.py',))]
    orch.parallel_groups = [['t1']]
    manager.record_worker(orch.id, 't1', 'worker-1')
    assert os.path.exists(state_file)

    restored = make_manager(templates, sessions, state_file)
    assert restored.load_from_disk() == 1
    loaded = restored.get(orch.id)
    assert loaded.to_dict() == orch.to_dict()
    assert loaded.tasks[0].scope == ('a.py',)


def test_missing_state_file_means_fresh_start(templates, sessions, state_file):
    assert make_manager(templates, sessions, state_file).load_from_disk() == 0


def test_corrupt_state_file_raises(templates, sessions, state_file):
    os.makedirs(os.path.dirname(state_file))
    with open(state_file, 'w') as f:
        f.write('{not json')
    with pytest.raises(OrchestratorError):
        make_manager(templates, sessions, state_file).load_from_disk()


def test_state_file_must_hold_a_list(templates, sessions, state_file):
    os.makedirs(os.path.dirname(state_file))
    with open(state_file, 'w') as f:
        json.dump({'orch_1': {'id': 'orch_1'}}, f)
    with pytest.raises(OrchestratorError) as info:
        make_manager(templates, sessions, state_file).load_from_disk()
    assert 'expected a list' in str(info.value)


def test_unreadable_records_are_skipped(templates, sessions, state_file):
    os.makedirs(os.path.dirname(state_file))
    with open(state_file, 'w') as f:
        json.dump([{'id': 'broken'}, 'stray', {'id': 'orch_ok', 'template_id': '_default',
                                               'cwd': '/repo', 'user_request': 'x'}], f)
    manager = make_manager(templates, sessions, state_file)
    assert manager.load_from_disk() == 1
    assert manager.get('orch_ok').status == 'created'


@pytest.mark.asyncio
async def test_saves_are_debounced_inside_a_loop(templates, sessions, state_file):
    manager = make_manager(templates, sessions, state_file)
    manager.create('_default', '/repo', 'x')
    manager.create('_default', '/repo', 'y')
    assert manager.save_pending
    assert not os.path.exists(state_file)

    manager.flush()
    assert not manager.save_pending
    with open(state_file) as f:
        assert len(json.load(f)) == 2
