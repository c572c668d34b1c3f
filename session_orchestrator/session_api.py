"""Session-control collaborator.

The orchestration core never talks to the chat application directly; it
goes through a ``SessionController``. ``HttpSessionAPI`` is the REST
implementation used by the CLI.
"""

import asyncio
from typing import Any, Dict, List, Optional

import requests

from session_orchestrator.config import (
    ORCH_SESSION_API_TIMEOUT, ORCH_SESSION_API_TOKEN, ORCH_SESSION_API_URL,
)
from session_orchestrator.errors import TransportError


class SessionController:
    """Minimum surface the orchestrator needs from the session service."""

    async def create_session(self, cwd: str, message: str,
                             title: Optional[str] = None,
                             session_id: Optional[str] = None) -> str:
        """Create a session, send ``message`` into it and return its id."""
        raise NotImplementedError

    async def send_message(self, session_id: str, text: str):
        raise NotImplementedError

    async def get_transcript(self, session_id: str) -> List[Dict]:
        raise NotImplementedError

    async def archive_session(self, session_id: str):
        raise NotImplementedError

    async def delete_session(self, session_id: str):
        raise NotImplementedError

    async def session_exists(self, session_id: str) -> bool:
        raise NotImplementedError

    async def list_sessions(self) -> List[str]:
        raise NotImplementedError


class HttpSessionAPI(SessionController):
    """REST client for the session-control service.

    ``requests`` is blocking, so every call runs in a worker thread.
    """

    def __init__(self, base_url: str = ORCH_SESSION_API_URL,
                 token: Optional[str] = ORCH_SESSION_API_TOKEN,
                 timeout: float = ORCH_SESSION_API_TIMEOUT,
                 debug: bool = False):
        self.base = base_url.rstrip('/')
        self.headers = {'Content-Type': 'application/json'}
        if token:
            self.headers['Authorization'] = f'Bearer {token}'
        self.timeout = timeout
        self.debug = debug

    def _dbg(self, msg: str):
        if self.debug:
            print(f"[SESSION-API] {msg}")

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base}{path}"
        self._dbg(f"{method} {url}")
        try:
            resp = requests.request(method, url, headers=self.headers,
                                    timeout=self.timeout, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        return resp

    async def _call(self, method: str, path: str, **kwargs) -> requests.Response:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    async def _call_json(self, method: str, path: str, **kwargs) -> Any:
        resp = await self._call(method, path, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise TransportError(f"{method} {path} returned invalid JSON: "
                                 f"{exc}") from exc

    # -- sessions -------------------------------------------------------------

    async def create_session(self, cwd: str, message: str,
                             title: Optional[str] = None,
                             session_id: Optional[str] = None) -> str:
        payload = {'cwd': cwd, 'message': message}
        if title:
            payload['title'] = title
        if session_id:
            payload['sessionId'] = session_id
        data = await self._call_json('POST', '/sessions', json=payload)
        if not isinstance(data, dict):
            data = {}
        new_id = data.get('sessionId') or data.get('id') or session_id
        if not new_id:
            raise TransportError("create_session response carried no session id")
        return new_id

    async def send_message(self, session_id: str, text: str):
        await self._call('POST', f"/sessions/{session_id}/messages",
                         json={'message': text})

    async def get_transcript(self, session_id: str) -> List[Dict]:
        data = await self._call_json('GET', f"/sessions/{session_id}/messages")
        if isinstance(data, dict):
            data = data.get('messages', [])
        return data

    async def archive_session(self, session_id: str):
        await self._call('POST', f"/sessions/{session_id}/archive")

    async def delete_session(self, session_id: str):
        await self._call('DELETE', f"/sessions/{session_id}")

    async def session_exists(self, session_id: str) -> bool:
        def probe() -> bool:
            url = f"{self.base}/sessions/{session_id}"
            try:
                resp = requests.get(url, headers=self.headers,
                                    timeout=self.timeout)
                if resp.status_code == 404:
                    return False
                resp.raise_for_status()
            except requests.RequestException as exc:
                raise TransportError(f"GET /sessions/{session_id} failed: "
                                     f"{exc}") from exc
            return True

        return await asyncio.to_thread(probe)

    async def list_sessions(self) -> List[str]:
        data = await self._call_json('GET', '/sessions')
        if isinstance(data, dict):
            data = data.get('sessions', [])
        return [s['id'] if isinstance(s, dict) else s for s in data]
