"""Shared fixtures: an in-memory session service and a controllable clock."""

import json
import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from session_orchestrator.config import ORCH_TEMPLATES_DIR  # noqa: E402
from session_orchestrator.errors import TransportError  # noqa: E402
from session_orchestrator.response_parser import END_MARKER, START_MARKER  # noqa: E402
from session_orchestrator.session_api import SessionController  # noqa: E402
from session_orchestrator.templates import TemplateManager  # noqa: E402


def envelope(phase, data, before='', after=''):
    """Render one response block the way an agent would write it."""
    body = json.dumps({'phase': phase, 'data': data}, indent=2)
    return f"{before}\n{START_MARKER}\n{body}\n{END_MARKER}\n{after}".strip()


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSessions(SessionController):
    """Session service kept entirely in memory."""

    def __init__(self):
        self.transcripts = {}
        self.created = []
        self.sent = []
        self.archived = []
        self.deleted = []
        self.fail_create = set()
        self.fail_transcript = set()
        self._counter = 0

    async def create_session(self, cwd, message, title=None, session_id=None):
        if session_id in self.fail_create or '*' in self.fail_create:
            raise TransportError(f"cannot create {session_id}")
        if session_id is None:
            self._counter += 1
            session_id = f"session-{self._counter}"
        self.created.append({'session_id': session_id, 'cwd': cwd,
                             'message': message, 'title': title})
        self.transcripts[session_id] = [{'role': 'user', 'content': message}]
        return session_id

    async def send_message(self, session_id, text):
        if session_id not in self.transcripts:
            raise TransportError(f"no session {session_id}")
        self.sent.append((session_id, text))
        self.transcripts[session_id].append({'role': 'user', 'content': text})

    async def get_transcript(self, session_id):
        if session_id in self.fail_transcript or session_id not in self.transcripts:
            raise TransportError(f"cannot read {session_id}")
        return list(self.transcripts[session_id])

    async def archive_session(self, session_id):
        self.archived.append(session_id)

    async def delete_session(self, session_id):
        self.deleted.append(session_id)
        self.transcripts.pop(session_id, None)

    async def session_exists(self, session_id):
        return session_id in self.transcripts

    async def list_sessions(self):
        return list(self.transcripts)

    # helpers for tests
    def reply(self, session_id, content):
        self.transcripts[session_id].append({'role': 'assistant',
                                             'content': content})

    def add_session(self, session_id, messages=None):
        self.transcripts[session_id] = list(messages or [])


@pytest.fixture
def sessions():
    return FakeSessions()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def templates(tmp_path):
    return TemplateManager(templates_dir=ORCH_TEMPLATES_DIR,
                           custom_dir=str(tmp_path / 'custom')).load()


@pytest.fixture
def state_file(tmp_path):
    return str(tmp_path / 'state' / 'orchestrations.json')
