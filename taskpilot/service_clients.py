import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from .constants import (
    BASE_HEADERS,
    CREATE_CARD_PATH,
    GENERATE_TASKS_PATH,
    AuthRejected,
    NetworkError,
    NotAuthenticated,
    UpstreamError,
)
from .models import GenerateTasksResponse, Session, Task
from .settings import Settings

logger = logging.getLogger(__name__)


class _AuthenticatedClient:
    """
    Shared plumbing for backend calls authenticated with the session's bearer token.
    """

    def __init__(self, base_url: str, http_session: Optional[aiohttp.ClientSession] = None, request_timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self._session = http_session
        self._owns_session = http_session is None

    @classmethod
    def from_settings(cls, settings: Settings, http_session: Optional[aiohttp.ClientSession] = None):
        return cls(settings.backend_url, http_session=http_session, request_timeout=settings.request_timeout)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get HTTP session for API calls"""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_session = True
        return self._session

    @staticmethod
    def _get_headers(session: Optional[Session]) -> Dict[str, str]:
        if session is None or not session.access_token:
            raise NotAuthenticated("You must be signed in to do that.")
        headers = BASE_HEADERS.copy()
        headers["Authorization"] = f"Bearer {session.access_token}"
        return headers

    async def _post(self, path: str, payload: Dict[str, Any], session: Optional[Session], expect_json: bool = True) -> Any:
        """
        POST `payload` to `path` and return the decoded JSON body (None when empty or
        when `expect_json` is False).

        Raises:
            NotAuthenticated: No session; nothing was sent.
            NetworkError: The request never completed.
            AuthRejected: The backend refused the credential (401/403).
            UpstreamError: Any other error status.
        """
        headers = self._get_headers(session)
        url = f"{self.base_url}{path}"
        http_session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with http_session.post(url, headers=headers, json=payload, timeout=timeout) as response:
                if response.status in (401, 403):
                    logger.error(f"Backend rejected credential for {path}: {response.status}")
                    raise AuthRejected(f"Your session was rejected by the server ({response.status}). Please sign in again.")
                if response.status >= 400:
                    body = await response.text(errors="replace")
                    logger.error(f"Backend error for {path}: {response.status} - {body[:200]}")
                    raise UpstreamError(f"Server error ({response.status}) from {path}", status=response.status)
                if not expect_json:
                    return None
                raw = await response.read()
                if not raw.strip():
                    return None
                try:
                    return json.loads(raw)
                except ValueError: # JSONDecodeError or undecodable bytes
                    raise UpstreamError(f"Server returned a non-JSON response from {path}", status=response.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"AIOHTTP client error calling {url}: {e}")
            raise NetworkError(f"Could not reach the server at {self.base_url}") from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class TaskServiceClient(_AuthenticatedClient):
    """Client for the AI task-generation endpoint."""

    async def generate_tasks(self, prompt: str, session: Optional[Session]) -> List[Task]:
        data = await self._post(GENERATE_TASKS_PATH, {"prompt": prompt}, session)
        if data is None:
            return []
        if not isinstance(data, dict):
            raise UpstreamError("Unexpected response shape from task generation")
        try:
            parsed = GenerateTasksResponse.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid task payload from backend: {e}")
            raise UpstreamError("Server returned tasks in an unexpected format")
        tasks = parsed.tasks or []
        logger.info(f"Generated {len(tasks)} task(s)")
        return tasks


class BoardServiceClient(_AuthenticatedClient):
    """Client for the Trello card-creation endpoint."""

    async def create_card(self, list_id: str, task: Task, session: Optional[Session]) -> None:
        payload = {
            "list_id": list_id,
            "task": task.model_dump(mode="json"),
        }
        await self._post(CREATE_CARD_PATH, payload, session, expect_json=False)
        logger.info(f"Created card '{task.title}' in list {list_id}")
