'''
Tests for the PKCE helpers and SupabaseAuthGateway, run against a fake GoTrue server.
'''
import base64
import hashlib
import json
import re
import tempfile
import time
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlparse

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from taskpilot.auth_gateway import (
    SupabaseAuthGateway,
    generate_code_challenge,
    generate_code_verifier,
)
from taskpilot.constants import (
    AuthRejected,
    AuthUnavailable,
    InputValidationError,
    NetworkError,
    UpstreamError,
)
from taskpilot.models import AuthEvent, NotificationKind
from taskpilot.service_clients import BoardServiceClient, TaskServiceClient
from taskpilot.view_controller import ViewController, ViewState

PUBLIC_KEY = "public-anon-key"


def session_payload(token="access-1", refresh="refresh-1", expires_in=3600, user_id="user-1"):
    return {
        "access_token": token,
        "refresh_token": refresh,
        "expires_in": expires_in,
        "token_type": "bearer",
        "user": {"id": user_id, "email": f"{user_id}@example.com"},
    }


class TestPKCEHelpers(unittest.TestCase):

    def test_generate_code_verifier_length(self):
        """Test that the code verifier has the correct length and properties."""
        for length in [43, 64, 128]:
            verifier = generate_code_verifier(length)
            self.assertEqual(len(verifier), length)
            self.assertTrue(re.match(r"^[A-Za-z0-9_\-]+$", verifier),
                            f"Verifier '{verifier}' is not URL safe.")

    def test_generate_code_verifier_invalid_length(self):
        with self.assertRaises(ValueError):
            generate_code_verifier(42)
        with self.assertRaises(ValueError):
            generate_code_verifier(129)

    def test_generate_code_challenge(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode('utf-8')).digest()).decode('utf-8').rstrip('=')
        self.assertEqual(generate_code_challenge(verifier), expected)


class TestGatewayConstruction(unittest.TestCase):

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp = tmp.name

    def make_gateway(self, **kwargs):
        params = dict(
            auth_url="https://proj.supabase.co/",
            public_key=PUBLIC_KEY,
            redirect_uri="http://localhost:8765/auth/callback",
            session_file=f"{self.tmp}/session.json",
            open_browser=False,
        )
        params.update(kwargs)
        return SupabaseAuthGateway(**params)

    def test_requires_url_and_key(self):
        with self.assertRaises(ValueError):
            self.make_gateway(auth_url="")
        with self.assertRaises(ValueError):
            self.make_gateway(public_key="")

    def test_get_authorization_url(self):
        gateway = self.make_gateway()
        auth_url, verifier = gateway.get_authorization_url("github")

        parsed = urlparse(auth_url)
        query = parse_qs(parsed.query)
        self.assertEqual(parsed.netloc, "proj.supabase.co")
        self.assertEqual(parsed.path, "/auth/v1/authorize")
        self.assertEqual(query["provider"][0], "github")
        self.assertEqual(query["redirect_to"][0], "http://localhost:8765/auth/callback")
        self.assertEqual(query["code_challenge_method"][0], "s256")
        self.assertEqual(query["code_challenge"][0], generate_code_challenge(verifier))

    def test_sign_in_remembers_verifier_and_opens_browser(self):
        gateway = self.make_gateway(open_browser=True)
        with patch("taskpilot.auth_gateway.webbrowser.open") as mock_open:
            url = gateway.sign_in("google")
        mock_open.assert_called_once_with(url)
        self.assertTrue(gateway.sign_in_pending)
        self.assertIn("provider=google", url)

    def test_subscription_unsubscribe(self):
        gateway = self.make_gateway()
        seen = []
        subscription = gateway.subscribe(lambda event, session: seen.append(event))
        gateway._emit(AuthEvent.SIGNED_OUT, None)
        subscription.unsubscribe()
        subscription.unsubscribe()
        gateway._emit(AuthEvent.SIGNED_OUT, None)
        self.assertEqual(seen, [AuthEvent.SIGNED_OUT])
        self.assertFalse(subscription.active)

    def test_corrupt_session_file_is_discarded(self):
        path = f"{self.tmp}/session.json"
        with open(path, "w") as f:
            f.write("{not json")
        gateway = self.make_gateway(session_file=path)
        self.assertIsNone(gateway.session)
        self.assertFalse(gateway.session_file_path.exists())

    def test_session_file_for_other_provider_is_discarded(self):
        path = f"{self.tmp}/session.json"
        with open(path, "w") as f:
            json.dump({"auth_url": "https://other.supabase.co", "session": session_payload()}, f)
        gateway = self.make_gateway(session_file=path)
        self.assertIsNone(gateway.session)
        self.assertFalse(gateway.session_file_path.exists())


@pytest_asyncio.fixture
async def gotrue():
    '''Fake GoTrue server. Script replies through `gotrue.token_responses[grant_type]`.'''
    state = SimpleNamespace(calls=[], token_responses={}, logout_status=204)

    async def token(request: web.Request) -> web.Response:
        grant_type = request.query.get("grant_type")
        state.calls.append(("token", grant_type, await request.json(), dict(request.headers)))
        status, body = state.token_responses.get(grant_type, (400, {"error": "unsupported_grant_type"}))
        if isinstance(body, bytes):
            return web.Response(status=status, body=body)
        return web.json_response(body, status=status)

    async def logout(request: web.Request) -> web.Response:
        state.calls.append(("logout", None, None, dict(request.headers)))
        return web.Response(status=state.logout_status)

    app = web.Application()
    app.router.add_post("/auth/v1/token", token)
    app.router.add_post("/auth/v1/logout", logout)
    server = TestServer(app)
    await server.start_server()
    state.url = str(server.make_url("/")).rstrip("/")
    try:
        yield state
    finally:
        await server.close()


@pytest_asyncio.fixture
async def gateway_factory(gotrue, tmp_path):
    gateways = []

    def factory(**kwargs):
        params = dict(
            auth_url=gotrue.url,
            public_key=PUBLIC_KEY,
            redirect_uri="http://localhost:8765/auth/callback",
            session_file=str(tmp_path / "session.json"),
            open_browser=False,
        )
        params.update(kwargs)
        gateway = SupabaseAuthGateway(**params)
        gateways.append(gateway)
        return gateway

    yield factory
    for gateway in gateways:
        await gateway.close()


@pytest.mark.asyncio
async def test_exchange_code_emits_signed_in_and_persists(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload())
    gateway = gateway_factory()
    events = []
    gateway.subscribe(lambda event, session: events.append((event, session)))

    gateway.sign_in("github")
    session = await gateway.exchange_code_for_session("code-123")

    assert session.access_token == "access-1"
    assert events == [(AuthEvent.SIGNED_IN, session)]
    assert gateway.sign_in_pending is False

    kind, grant, body, headers = gotrue.calls[0]
    assert (kind, grant) == ("token", "pkce")
    assert body["auth_code"] == "code-123"
    assert len(body["code_verifier"]) >= 43
    assert headers["apikey"] == PUBLIC_KEY

    # A new gateway on the same file restores the session
    restored = gateway_factory()
    assert restored.session == session
    assert await restored.get_current_session() == session


@pytest.mark.asyncio
async def test_exchange_code_without_sign_in_is_refused(gotrue, gateway_factory):
    gateway = gateway_factory()
    with pytest.raises(InputValidationError):
        await gateway.exchange_code_for_session("code-123")
    with pytest.raises(InputValidationError):
        await gateway.exchange_code_for_session("")
    assert gotrue.calls == []


@pytest.mark.asyncio
async def test_exchange_code_rejected(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (400, {"error": "invalid_grant", "error_description": "Code expired"})
    gateway = gateway_factory()
    events = []
    gateway.subscribe(lambda event, session: events.append(event))
    gateway.sign_in("github")

    with pytest.raises(AuthRejected, match="Code expired"):
        await gateway.exchange_code_for_session("stale")
    assert events == []
    assert gateway.session is None


@pytest.mark.asyncio
async def test_exchange_code_server_error(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (500, {"msg": "database unavailable"})
    gateway = gateway_factory()
    gateway.sign_in("github")

    with pytest.raises(UpstreamError) as exc_info:
        await gateway.exchange_code_for_session("code")
    assert exc_info.value.status == 500


@pytest.mark.asyncio
async def test_exchange_code_without_usable_session(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, {"data": {"session": None}})
    gateway = gateway_factory()
    gateway.sign_in("github")

    with pytest.raises(UpstreamError):
        await gateway.exchange_code_for_session("code")


@pytest.mark.asyncio
async def test_get_current_session_without_stored_session(gateway_factory):
    assert await gateway_factory().get_current_session() is None


@pytest.mark.asyncio
async def test_expired_session_is_refreshed(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload(expires_in=10))
    gotrue.token_responses["refresh_token"] = (200, session_payload(token="access-2", refresh="refresh-2"))
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")
    events = []
    gateway.subscribe(lambda event, session: events.append(event))

    session = await gateway.get_current_session()

    assert session.access_token == "access-2"
    assert events == [AuthEvent.TOKEN_REFRESHED]
    refresh_call = gotrue.calls[-1]
    assert refresh_call[1] == "refresh_token"
    assert refresh_call[2] == {"refresh_token": "refresh-1"}


@pytest.mark.asyncio
async def test_rejected_refresh_signs_out(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload(expires_in=10))
    gotrue.token_responses["refresh_token"] = (400, {"error": "invalid_grant"})
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")
    events = []
    gateway.subscribe(lambda event, session: events.append((event, session)))

    assert await gateway.get_current_session() is None
    assert events == [(AuthEvent.SIGNED_OUT, None)]
    assert not gateway.session_file_path.exists()


@pytest.mark.asyncio
async def test_unreachable_refresh_is_auth_unavailable(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload(expires_in=10))
    gotrue.token_responses["refresh_token"] = (503, {"msg": "maintenance"})
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")

    with pytest.raises(AuthUnavailable):
        await gateway.get_current_session()
    # The stored session is kept so a later attempt can still refresh it
    assert gateway.session is not None


@pytest.mark.asyncio
async def test_expired_session_without_refresh_token_is_dropped(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload(expires_in=10, refresh=None))
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")

    assert await gateway.get_current_session() is None
    assert gateway.session is None


@pytest.mark.asyncio
async def test_sign_out_clears_first_then_revokes(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload())
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")
    events = []
    gateway.subscribe(lambda event, session: events.append((event, gateway.session)))

    await gateway.sign_out()

    assert events == [(AuthEvent.SIGNED_OUT, None)]
    assert gateway.session is None
    assert not gateway.session_file_path.exists()
    kind, _, _, headers = gotrue.calls[-1]
    assert kind == "logout"
    assert headers["Authorization"] == "Bearer access-1"


@pytest.mark.asyncio
async def test_sign_out_with_already_invalid_token(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload())
    gotrue.logout_status = 401
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")

    await gateway.sign_out()
    assert gateway.session is None


@pytest.mark.asyncio
async def test_sign_out_network_failure_still_clears_locally(tmp_path):
    http_session = MagicMock(spec=aiohttp.ClientSession)
    http_session.closed = False
    http_session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("down"))
    path = tmp_path / "session.json"
    with open(path, "w") as f:
        json.dump({"auth_url": "https://proj.supabase.co", "session": session_payload() | {"expires_at": time.time() + 3600}}, f)
    gateway = SupabaseAuthGateway(
        auth_url="https://proj.supabase.co",
        public_key=PUBLIC_KEY,
        session_file=str(path),
        http_session=http_session,
        open_browser=False,
    )
    assert gateway.session is not None

    with pytest.raises(NetworkError):
        await gateway.sign_out()
    assert gateway.session is None
    assert not path.exists()


UNDECODABLE = b"\xff\xfe\xfa"


@pytest.mark.asyncio
async def test_undecodable_refresh_error_is_auth_unavailable(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload(expires_in=10))
    gotrue.token_responses["refresh_token"] = (502, UNDECODABLE)
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")

    with pytest.raises(AuthUnavailable):
        await gateway.get_current_session()


@pytest.mark.asyncio
async def test_undecodable_refresh_rejection_signs_out(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload(expires_in=10))
    gotrue.token_responses["refresh_token"] = (401, UNDECODABLE)
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")

    assert await gateway.get_current_session() is None
    assert gateway.session is None


@pytest.mark.asyncio
async def test_undecodable_token_success_body_is_upstream_error(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, UNDECODABLE)
    gateway = gateway_factory()
    gateway.sign_in("github")

    with pytest.raises(UpstreamError):
        await gateway.exchange_code_for_session("code")
    assert gateway.session is None


@pytest.mark.asyncio
async def test_controller_starts_signed_out_when_refresh_returns_garbage(gotrue, gateway_factory):
    gotrue.token_responses["pkce"] = (200, session_payload(expires_in=10))
    gotrue.token_responses["refresh_token"] = (500, UNDECODABLE)
    gateway = gateway_factory()
    gateway.sign_in("github")
    await gateway.exchange_code_for_session("code")

    controller = ViewController(gateway, AsyncMock(spec=TaskServiceClient), AsyncMock(spec=BoardServiceClient))
    async with controller:
        assert controller.state == ViewState.LOGGED_OUT
        assert controller.notifications[-1].kind == NotificationKind.AUTH_UNAVAILABLE
