"""CLI entry point for the session orchestrator."""

import argparse
import asyncio
import json
import os
import sys
from typing import Dict, List

from session_orchestrator.config import ORCH_POLL_INTERVAL
from session_orchestrator.coordinator import OrchestratorModule
from session_orchestrator.errors import OrchestratorError
from session_orchestrator.events import (
    ORCHESTRATOR_COMPLETED, ORCHESTRATOR_ERROR, ORCHESTRATOR_PHASE_CHANGED,
    ORCHESTRATOR_TASKS_READY, SUBSESSION_RESULT_RETURNED, WORKER_COMPLETED,
    WORKER_FAILED, WORKER_SPAWNED, WORKER_TIMEOUT,
)
from session_orchestrator.session_api import HttpSessionAPI
from session_orchestrator.templates import TemplateManager
from session_orchestrator.worker_manager import WorkerPoolConfig

WAIT_TICK = 1.0


def parse_variables(pairs: List[str]) -> Dict[str, str]:
    variables = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise ValueError(f"Expected KEY=VALUE, got '{pair}'")
        key, value = pair.split('=', 1)
        variables[key.strip()] = value
    return variables


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Coordinate a big task across several agent sessions')
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('--message',
                       help='Start a new orchestration for this request')
    group.add_argument('--list-templates', action='store_true',
                       help='List the available templates')
    group.add_argument('--resume', action='store_true',
                       help='Resume persisted in-progress orchestrations')
    group.add_argument('--status', action='store_true',
                       help='Show the status of persisted orchestrations')
    group.add_argument('--watch-parent', metavar='SESSION_ID',
                       help='Track sub-sessions spawned by this session')
    parser.add_argument('--template', default='_default',
                        help='Template id (default: _default)')
    parser.add_argument('--cwd', default=os.getcwd(),
                        help='Working directory for the sessions')
    parser.add_argument('--var', action='append', default=[],
                        metavar='KEY=VALUE',
                        help='Custom template variable (repeatable)')
    parser.add_argument('--auto-confirm', action='store_true',
                        help='Spawn workers without asking for confirmation')
    parser.add_argument('--max-workers', type=int,
                        help='Max parallel workers')
    parser.add_argument('--poll-interval', type=float,
                        default=ORCH_POLL_INTERVAL,
                        help=f'Seconds between orchestrator polls '
                             f'(default: {ORCH_POLL_INTERVAL:g})')
    parser.add_argument('--debug', action='store_true',
                        help='Verbose output')
    return parser


def print_templates(templates: TemplateManager):
    for meta in templates.list_templates():
        if meta.get('is_internal'):
            continue
        kind = 'system' if meta.get('is_system') else 'custom'
        print(f"  {meta['id']:<20} {meta.get('name', '')} ({kind})")
        if meta.get('description'):
            print(f"  {'':<20} {meta['description']}")


def _attach_reporting(module: OrchestratorModule):
    def phase_changed(payload):
        print(f"==> {payload['id']}: {payload['previous_phase']} -> "
              f"{payload['current_phase']}")

    def worker_done(payload):
        print(f"    worker {payload['task_id']}: "
              f"{module.workers.get_worker(payload['session_id']).status}")

    module.events.on(ORCHESTRATOR_PHASE_CHANGED, phase_changed)
    module.events.on(WORKER_SPAWNED, lambda p: print(
        f"    worker {p['task_id']} spawned ({p['session_id']})"))
    for event in (WORKER_COMPLETED, WORKER_FAILED, WORKER_TIMEOUT):
        module.events.on(event, worker_done)
    module.events.on(ORCHESTRATOR_ERROR, lambda p: print(
        f"ERROR: {p['id']} failed during {p['operation']}: {p['error']}"))
    module.events.on(ORCHESTRATOR_COMPLETED, lambda p: print(
        f"==> {p['id']} completed ({p['status']})"))


async def _confirm(module: OrchestratorModule, payload: Dict, auto: bool):
    print(f"\n{payload['task_count']} tasks planned for {payload['id']}:")
    for task in payload['tasks']:
        deps = ', '.join(task.get('dependencies') or []) or '-'
        print(f"  [{task['id']}] {task['title']} (depends on: {deps})")
    print(f"Parallel groups: {payload['parallel_groups']}")

    if not auto:
        answer = await asyncio.to_thread(input, "Spawn workers? [y/N] ")
        if answer.strip().lower() not in ('y', 'yes'):
            print("Cancelled by user")
            await module.cancel_and_cleanup(payload['id'])
            return
    await module.confirm_tasks_and_spawn(payload['id'])


async def _wait_until_done(module: OrchestratorModule, ids: List[str]):
    while True:
        pending = [i for i in ids
                   if not module.orchestrator.get(i).is_terminal]
        if not pending:
            return
        await asyncio.sleep(WAIT_TICK)


async def run_orchestration(module: OrchestratorModule, args) -> int:
    confirmations = []

    def tasks_ready(payload):
        confirmations.append(asyncio.get_running_loop().create_task(
            _confirm(module, payload, args.auto_confirm)))

    module.events.on(ORCHESTRATOR_TASKS_READY, tasks_ready)
    orch = await module.create_and_start(args.template, args.cwd, args.message,
                                         parse_variables(args.var))
    print(f"Orchestration {orch.id} started in session {orch.main_session_id}")
    module.start_monitoring()
    await _wait_until_done(module, [orch.id])
    if confirmations:
        await asyncio.gather(*confirmations)
    status = module.orchestrator.get_status(orch.id)
    print(json.dumps(status, indent=2))
    return 0 if status['status'] == 'completed' else 1


async def run_resume(module: OrchestratorModule) -> int:
    count = await module.restore()
    if not count:
        print("Nothing to resume")
        return 0
    ids = [s['id'] for s in module.get_active_summary()]
    await _wait_until_done(module, ids)
    return 0


async def run_watch(module: OrchestratorModule, parent_session_id: str) -> int:
    module.events.on(SUBSESSION_RESULT_RETURNED, lambda p: print(
        f"==> result of {p['child_session_id']} returned to "
        f"{p['parent_session_id']}"))
    await module.subsessions.watch_parent_session(parent_session_id)
    print("Watching for sub-sessions. Press Ctrl+C to stop.")
    while True:
        await asyncio.sleep(WAIT_TICK)


async def _main(args) -> int:
    worker_config = WorkerPoolConfig()
    if args.max_workers:
        worker_config.max_workers = args.max_workers
    sessions = HttpSessionAPI(debug=args.debug)
    module = OrchestratorModule(sessions, worker_config=worker_config,
                                poll_interval=args.poll_interval,
                                template_pool_config=not args.max_workers,
                                debug=args.debug)
    _attach_reporting(module)
    try:
        if args.watch_parent:
            return await run_watch(module, args.watch_parent)
        if args.resume:
            return await run_resume(module)
        return await run_orchestration(module, args)
    finally:
        await module.shutdown()


def main():
    """Run the orchestrator CLI."""
    args = build_parser().parse_args()

    if args.list_templates:
        print("Available templates:")
        print_templates(TemplateManager(debug=args.debug))
        return
    if args.status:
        module = OrchestratorModule(HttpSessionAPI(), debug=args.debug)
        module.orchestrator.load_from_disk()
        for orch in module.orchestrator.get_all():
            print(json.dumps(module.orchestrator.get_status(orch.id), indent=2))
        return

    try:
        sys.exit(asyncio.run(_main(args)))
    except KeyboardInterrupt:
        print("\nInterrupted, state saved.")
    except (OrchestratorError, ValueError) as exc:
        print(f"ERROR: {exc}")
        sys.exit(1)


if __name__ == '__main__':
    main()
