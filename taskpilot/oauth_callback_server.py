import datetime
import html
import logging
from typing import Optional

from aiohttp import web

from .auth_gateway import SupabaseAuthGateway
from .constants import TaskPilotError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/auth/callback"

_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 50px; text-align: center; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <p>{message}</p>
</body>
</html>
"""


def _page(title: str, message: str, status: int = 200) -> web.Response:
    return web.Response(
        text=_PAGE.format(title=html.escape(title), message=html.escape(message)),
        content_type='text/html',
        status=status,
    )


class OAuthCallbackServer:
    """
    Local HTTP server that receives the identity provider's redirect and completes
    sign-in through the gateway. The gateway then notifies its subscribers.
    """

    def __init__(self, gateway: SupabaseAuthGateway, host: str = "localhost", port: int = 8765, callback_path: str = CALLBACK_PATH):
        self.gateway = gateway
        self.host = host
        self.port = port
        self.callback_path = callback_path
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.callback_path, self.handle_callback)
        app.router.add_get('/health', self.health_check)
        return app

    async def start(self) -> None:
        self.runner = web.AppRunner(self.make_app())
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, host=self.host, port=self.port)
        await self.site.start()
        logger.info(f"OAuth callback server listening on http://{self.host}:{self.port}{self.callback_path}")

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
        self.runner = None
        self.site = None

    async def __aenter__(self) -> "OAuthCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def handle_callback(self, request: web.Request) -> web.Response:
        """Handle the OAuth redirect from the identity provider."""
        params = request.rel_url.query
        if 'error' in params:
            description = params.get('error_description', params['error'])
            logger.error(f"Identity provider returned an error: {description}")
            return _page("Sign-in failed", description, status=400)

        code = params.get('code')
        if not code:
            logger.warning(f"OAuth callback without code: {request.url}")
            return _page("Sign-in failed", "No authorization code was received.", status=400)

        logger.info(f"Received authorization code: {code[:8]}...")
        try:
            session = await self.gateway.exchange_code_for_session(code)
        except TaskPilotError as e:
            logger.error(f"Failed to exchange authorization code: {e}")
            return _page("Sign-in failed", str(e), status=400)

        return _page("Signed in", f"Signed in as {session.user.display_name}. You can close this window.")

    async def health_check(self, request: web.Request) -> web.Response:
        status = {
            "status": "ok",
            "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "service": "taskpilot OAuth callback server",
            "sign_in_pending": self.gateway.sign_in_pending,
        }
        return web.json_response(status)
