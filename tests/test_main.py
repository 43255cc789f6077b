"""Tests for the AstrBot entry points."""

import asyncio
from types import SimpleNamespace

import pytest
from astrbot.core.message.components import Image, Plain

from astrbot_plugin_figurine.main import COMMAND_PREFIX, EventReplier, Main
from astrbot_plugin_figurine.orchestrator import MSG_BUSY, MSG_PROCESSING, parse_style
from astrbot_plugin_figurine.settings import ConfigError
from conftest import FakeResponse, FakeSession, success_payload

RESULT_URL = "https://cdn.example.com/result.png"


class FakeEvent:
    """Just enough of AstrMessageEvent for the plugin handlers."""

    def __init__(self, text: str, chain: list | None = None, sender: str = "u1") -> None:
        self._text = text
        self._sender = sender
        self.message_obj = SimpleNamespace(message=chain if chain is not None else [Plain(text)])
        self.sent: list = []

    def get_sender_id(self) -> str:
        return self._sender

    def get_message_str(self) -> str:
        return self._text

    def plain_result(self, text: str) -> tuple:
        return ("plain", text)

    def chain_result(self, chain: list) -> tuple:
        return ("chain", chain)

    async def send(self, result: tuple) -> None:
        self.sent.append(result)


class ClosableSession(FakeSession):
    async def close(self) -> None:
        self.closed = True


def _plugin(session: FakeSession | None = None) -> Main:
    plugin = Main(SimpleNamespace(), {"api_key": "test-key", "cooldown_seconds": 1})
    if session is not None:
        plugin._http_session = session
    return plugin


async def _collect(generator) -> list:
    return [item async for item in generator]


def test_missing_api_key_refuses_to_load() -> None:
    with pytest.raises(ConfigError):
        Main(SimpleNamespace(), {})


@pytest.mark.parametrize(
    "text, style",
    [
        ("手办化", 1),
        ("/手办化 3", 3),
        ("#手办化 style=2", 2),
        ("手办化 风格4", 4),
        ("figurine 2", 2),
        ("手办化 https://example.com/a.png", 1),
        ("手办化 style=x", None),
    ],
)
def test_command_text_style_parsing(text: str, style: int | None) -> None:
    assert parse_style(COMMAND_PREFIX.sub("", text, count=1)) == style


def test_command_without_image_prompts_with_chosen_style() -> None:
    plugin = _plugin(ClosableSession())
    event = FakeEvent("手办化 3")

    async def scenario() -> tuple:
        replies = await _collect(plugin.cmd_figurine(event))
        waiting = plugin.registry.has_wait("u1")
        await plugin.terminate()
        return replies, waiting

    replies, waiting = asyncio.run(scenario())

    assert len(replies) == 1
    assert replies[0][0] == "plain" and "风格3" in replies[0][1]
    assert waiting is True


def test_invalid_style_command_replies_usage() -> None:
    plugin = _plugin()

    replies = asyncio.run(_collect(plugin.cmd_figurine(FakeEvent("手办化 9"))))

    assert "1-4" in replies[0][1]
    assert not plugin.registry.is_in_flight("u1")


def test_command_text_while_waiting_is_left_to_command_handlers() -> None:
    session = ClosableSession(get_response=FakeResponse(200, success_payload()))
    plugin = _plugin(session)
    image = Image.fromURL("https://example.com/cat.png")

    async def scenario() -> tuple:
        await _collect(plugin.cmd_figurine(FakeEvent("手办化 2")))
        await plugin.on_message(FakeEvent("手办化 2", [Plain("手办化 2"), image]))
        waiting = plugin.registry.has_wait("u1")
        busy = await _collect(plugin.cmd_figurine_2(FakeEvent("手办化2", [Plain("手办化2"), image])))
        await plugin.terminate()
        return waiting, busy

    waiting, busy = asyncio.run(scenario())

    assert waiting is True
    assert busy == [("plain", MSG_BUSY)]
    assert session.calls == []


def test_image_message_while_waiting_is_processed() -> None:
    session = ClosableSession(get_response=FakeResponse(200, success_payload()))
    plugin = _plugin(session)
    event = FakeEvent("", [Image.fromURL("https://example.com/cat.png")])

    async def scenario() -> bool:
        await _collect(plugin.cmd_figurine(FakeEvent("手办化 2")))
        await plugin.on_message(event)
        waiting = plugin.registry.has_wait("u1")
        await plugin.terminate()
        return waiting

    assert asyncio.run(scenario()) is False
    assert event.sent[0] == ("plain", MSG_PROCESSING)
    kind, chain = event.sent[1]
    assert kind == "chain" and chain[0].file == RESULT_URL
    assert session.calls[0][2]["style"] == 2


def test_message_from_user_without_wait_is_ignored() -> None:
    session = ClosableSession()
    plugin = _plugin(session)
    event = FakeEvent("", [Image.fromURL("https://example.com/cat.png")])

    asyncio.run(plugin.on_message(event))

    assert event.sent == []
    assert session.calls == []


@pytest.mark.parametrize(
    "data, expected",
    [
        ("https://cdn.example.com/r.png", "https://cdn.example.com/r.png"),
        ("data:image/png;base64,iVBORw0K", "base64://iVBORw0K"),
        ("base64://iVBORw0K", "base64://iVBORw0K"),
        ("/tmp/result.png", "/tmp/result.png"),
    ],
)
def test_event_replier_builds_image_component(data: str, expected: str) -> None:
    event = FakeEvent("")

    asyncio.run(EventReplier(event).send_image(data))

    kind, chain = event.sent[0]
    assert kind == "chain"
    assert isinstance(chain[0], Image)
    assert chain[0].file == expected


def test_terminate_cancels_timers_and_closes_session() -> None:
    session = ClosableSession()
    plugin = _plugin(session)

    async def scenario() -> None:
        await _collect(plugin.cmd_figurine(FakeEvent("手办化")))
        await plugin.terminate()

    asyncio.run(scenario())

    assert session.closed is True
    assert not plugin.registry.has_wait("u1")
    assert not plugin.registry.is_in_flight("u1")
