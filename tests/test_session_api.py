"""Tests for the REST session client with ``requests`` patched out."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from session_orchestrator.errors import TransportError
from session_orchestrator.session_api import HttpSessionAPI


def response(status=200, payload=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return resp


@pytest.fixture
def api():
    return HttpSessionAPI(base_url='http://svc/api/', token='secret', timeout=5)


def test_auth_header_and_base_url(api):
    assert api.base == 'http://svc/api'
    assert api.headers['Authorization'] == 'Bearer secret'
    assert 'Authorization' not in HttpSessionAPI(base_url='http://x', token=None).headers


@pytest.mark.asyncio
async def test_create_session_posts_payload(api):
    with patch('requests.request', return_value=response(
            payload={'sessionId': 'abc'})) as request:
        session_id = await api.create_session('/repo', 'hello', title='[Worker] A',
                                              session_id='wanted')
    assert session_id == 'abc'
    method, url = request.call_args.args
    assert (method, url) == ('POST', 'http://svc/api/sessions')
    assert request.call_args.kwargs['json'] == {
        'cwd': '/repo', 'message': 'hello', 'title': '[Worker] A',
        'sessionId': 'wanted'}
    assert request.call_args.kwargs['timeout'] == 5


@pytest.mark.asyncio
async def test_create_session_without_id_in_response(api):
    with patch('requests.request', return_value=response(payload={})):
        assert await api.create_session('/repo', 'hi', session_id='mine') == 'mine'
        with pytest.raises(TransportError):
            await api.create_session('/repo', 'hi')


@pytest.mark.asyncio
async def test_transcript_accepts_list_or_wrapper(api):
    messages = [{'role': 'user', 'content': 'hi'}]
    with patch('requests.request', return_value=response(payload=messages)):
        assert await api.get_transcript('s1') == messages
    with patch('requests.request', return_value=response(
            payload={'messages': messages})) as request:
        assert await api.get_transcript('s1') == messages
    assert request.call_args.args == ('GET', 'http://svc/api/sessions/s1/messages')


@pytest.mark.asyncio
async def test_list_sessions_flattens_records(api):
    with patch('requests.request', return_value=response(
            payload={'sessions': [{'id': 'a'}, 'b']})):
        assert await api.list_sessions() == ['a', 'b']


@pytest.mark.asyncio
async def test_http_errors_become_transport_errors(api):
    with patch('requests.request', return_value=response(status=500)):
        with pytest.raises(TransportError) as info:
            await api.send_message('s1', 'hi')
    assert 'POST /sessions/s1/messages failed' in str(info.value)

    with patch('requests.request',
               side_effect=requests.ConnectionError('refused')):
        with pytest.raises(TransportError):
            await api.archive_session('s1')


@pytest.mark.asyncio
async def test_session_exists(api):
    with patch('requests.get', return_value=response(status=404)):
        assert await api.session_exists('gone') is False
    with patch('requests.get', return_value=response(payload={'id': 's1'})):
        assert await api.session_exists('s1') is True
    with patch('requests.get', return_value=response(status=503)):
        with pytest.raises(TransportError):
            await api.session_exists('s1')


@pytest.mark.asyncio
async def test_non_json_body_becomes_transport_error(api):
    resp = response()
    resp.json.side_effect = ValueError('Expecting value: line 1 column 1')
    with patch('requests.request', return_value=resp):
        with pytest.raises(TransportError) as info:
            await api.get_transcript('s1')
        assert 'GET /sessions/s1/messages returned invalid JSON' in str(info.value)
        with pytest.raises(TransportError):
            await api.list_sessions()
        with pytest.raises(TransportError):
            await api.create_session('/repo', 'hi', session_id='mine')
