"""Shared test fixtures."""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import pytest

from astrbot_plugin_figurine.figurine_client import FigurineClient
from astrbot_plugin_figurine.image_validator import ImageValidator
from astrbot_plugin_figurine.orchestrator import FigurineOrchestrator
from astrbot_plugin_figurine.session_registry import SessionRegistry
from astrbot_plugin_figurine.settings import FigurineSettings


class FakeResponse:
    """Minimal stand-in for aiohttp.ClientResponse."""

    def __init__(self, status: int = 200, payload: Any = None,
                 headers: dict | None = None, body: str | None = None) -> None:
        self.status = status
        self.headers = headers or {}
        self._payload = payload
        self._body = body

    async def json(self, content_type: str | None = "application/json") -> Any:
        if self._body is not None:
            return json.loads(self._body)
        return self._payload


class _RequestContext:
    def __init__(self, response: FakeResponse | None, error: BaseException | None,
                 delay: float = 0.0) -> None:
        self._response = response
        self._error = error
        self._delay = delay

    async def __aenter__(self) -> FakeResponse:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._response

    async def __aexit__(self, *exc: object) -> None:
        return None


@dataclass
class FakeSession:
    """Records requests and replays queued responses or errors."""

    get_response: FakeResponse | None = None
    get_error: BaseException | None = None
    head_response: FakeResponse | None = None
    head_error: BaseException | None = None
    get_delay: float = 0.0
    calls: list[tuple[str, str, dict]] = field(default_factory=list)
    closed: bool = False

    def get(self, url: str, params: dict | None = None, **kwargs: Any) -> _RequestContext:
        self.calls.append(("GET", url, dict(params or {})))
        return _RequestContext(self.get_response, self.get_error, self.get_delay)

    def head(self, url: str, **kwargs: Any) -> _RequestContext:
        self.calls.append(("HEAD", url, {}))
        response = self.head_response or FakeResponse(200)
        return _RequestContext(response, self.head_error)

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)


@dataclass
class RecordingReplier:
    """Collects everything the orchestrator sends back to the user."""

    sent: list[tuple[str, str]] = field(default_factory=list)

    async def send_text(self, text: str) -> None:
        self.sent.append(("text", text))

    async def send_image(self, data: str) -> None:
        self.sent.append(("image", data))

    @property
    def texts(self) -> list[str]:
        return [value for kind, value in self.sent if kind == "text"]

    @property
    def images(self) -> list[str]:
        return [value for kind, value in self.sent if kind == "image"]


def success_payload(data: str = "https://cdn.example.com/result.png") -> dict[str, Any]:
    return {"code": 200, "msg": "数据请求成功", "data": data, "request_id": "req-1"}


def make_settings(**overrides: Any) -> FigurineSettings:
    values: dict[str, Any] = {
        "api_key": "test-key",
        "wait_seconds": 0.05,
        "cooldown_seconds": 0.05,
        "probe_image_url": False,
    }
    values.update(overrides)
    return FigurineSettings(**values)


def make_orchestrator(session: FakeSession, **overrides: Any) -> FigurineOrchestrator:
    settings = make_settings(**overrides)

    async def get_session() -> FakeSession:
        return session

    return FigurineOrchestrator(
        settings,
        SessionRegistry(),
        ImageValidator(settings, get_session),
        FigurineClient(settings.api_key, settings.api_timeout_seconds, get_session, settings.api_url),
    )


@pytest.fixture
def session() -> FakeSession:
    return FakeSession(get_response=FakeResponse(200, success_payload()))


@pytest.fixture
def replier() -> RecordingReplier:
    return RecordingReplier()


async def settle(delay: float = 0.0) -> None:
    """Let pending callbacks and tasks run."""
    await asyncio.sleep(delay)
    await asyncio.sleep(0)
