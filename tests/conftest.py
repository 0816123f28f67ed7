'''
Shared fixtures: session factory, an in-memory AuthGateway double, and a fake backend.
'''
import time
from types import SimpleNamespace

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from taskpilot.auth_gateway import AuthGateway
from taskpilot.constants import CREATE_CARD_PATH, GENERATE_TASKS_PATH
from taskpilot.models import Session, UserIdentity


def build_session(user_id: str = "user-1", token: str = "token-1", expires_in: float = 3600, refresh_token: str = "refresh-1") -> Session:
    return Session(
        user=UserIdentity(id=user_id, email=f"{user_id}@example.com"),
        access_token=token,
        refresh_token=refresh_token,
        expires_at=time.time() + expires_in,
    )


class FakeAuthGateway(AuthGateway):
    '''AuthGateway double that records calls and lets tests push notifications.'''

    def __init__(self, session=None, error=None):
        super().__init__()
        self.session = session
        self.error = error
        self.sign_in_calls = []
        self.sign_out_calls = 0
        self.sign_out_error = None
        self.clear_calls = 0

    async def get_current_session(self):
        if self.error is not None:
            raise self.error
        return self.session

    def sign_in(self, provider):
        self.sign_in_calls.append(provider)
        return f"https://auth.example.com/auth/v1/authorize?provider={provider}"

    async def sign_out(self):
        self.sign_out_calls += 1
        if self.sign_out_error is not None:
            raise self.sign_out_error
        self.session = None

    def clear_session(self):
        self.clear_calls += 1
        self.session = None

    def emit(self, event, session):
        self._emit(event, session)

    @property
    def subscriber_count(self):
        return len(self._subscribers)


@pytest.fixture
def make_session():
    return build_session


@pytest.fixture
def fake_gateway():
    return FakeAuthGateway()


@pytest_asyncio.fixture
async def backend():
    '''
    A real HTTP server standing in for the task backend.

    Set `backend.responses[path] = (status, body)` to script replies; requests are
    recorded in `backend.calls`.
    '''
    calls = []
    responses = {}

    async def handler(request: web.Request) -> web.Response:
        calls.append({
            "path": request.path,
            "headers": dict(request.headers),
            "json": await request.json(),
        })
        status, body = responses.get(request.path, (200, {}))
        if isinstance(body, bytes):
            return web.Response(status=status, body=body)
        if isinstance(body, str):
            return web.Response(status=status, text=body)
        return web.json_response(body, status=status)

    app = web.Application()
    app.router.add_post(GENERATE_TASKS_PATH, handler)
    app.router.add_post(CREATE_CARD_PATH, handler)

    server = TestServer(app)
    await server.start_server()
    try:
        yield SimpleNamespace(url=str(server.make_url("/")).rstrip("/"), calls=calls, responses=responses)
    finally:
        await server.close()
