"""Fakes for the aiohttp and requests layers used across tests."""

from contextlib import asynccontextmanager
from typing import Any, List
from unittest.mock import Mock


class FakeResponse:
    """
    Stand-in for aiohttp.ClientResponse inside `async with session.get(...)`.

    An exception given as `payload` is raised from json(), like an
    unparseable body.
    """

    def __init__(self, status: int = 200, payload: Any = None, headers: dict = None):
        self.status = status
        self._payload = payload if payload is not None else {}
        self.headers = headers or {}

    async def json(self):
        if isinstance(self._payload, BaseException):
            raise self._payload
        return self._payload


class FakeSession:
    """
    Replays queued responses for session.get().

    Queue items are FakeResponse objects, plain dicts (200 with that body)
    or exceptions (raised when the request is made). Requested URLs are
    recorded in `urls`.
    """

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.urls: List[str] = []

    @asynccontextmanager
    async def get(self, url, params=None):
        self.urls.append(url)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {url}")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            item = FakeResponse(200, item)
        yield item


def patch_session(client, session: FakeSession):
    """Make client._get_aiohttp_session() yield `session`."""

    @asynccontextmanager
    async def session_ctx():
        yield session

    client._get_aiohttp_session = session_ctx
    return session


def make_mock_response(status_code, json_data=None, headers=None):
    """requests.Response stand-in with a working headers.get()."""
    mock = Mock()
    mock.status_code = status_code
    mock.json.return_value = json_data or {}
    mock.headers = dict(headers or {})
    return mock

