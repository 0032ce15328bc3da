"""Tests for the Gemini model caller."""

from __future__ import annotations

import itertools
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from pydantic import BaseModel

from agentloop.agent_runtime import AgentSpec
from agentloop.config import Settings
from agentloop.errors import ConfigurationError, ProviderError
from agentloop.llm.gemini import (
    CONVERSATION_STARTED,
    GeminiModelCaller,
    build_request,
    history_to_contents,
    response_to_events,
)
from agentloop.models import (
    DoNothing,
    InlineAttachment,
    OwnThought,
    OwnUtterance,
    ParticipantUtterance,
    Stamper,
    ToolCall,
    ToolResult,
)
from agentloop.tools.base import Skill, Tool

META = {"provider": "gemini", "response_id": "r1", "thought_signature": None}


class QueryParams(BaseModel):
    q: str


async def _lookup(params: QueryParams) -> str:
    return params.q


lookup_tool = Tool(name="lookup", description="Look something up", parameters=QueryParams, handler=_lookup)


def _stamper() -> Stamper:
    ids = itertools.count(1)
    return Stamper(id_factory=lambda: f"ev-{next(ids)}", clock=lambda: 5)


def _spec(**overrides) -> AgentSpec:
    values = {
        "tools": [lookup_tool],
        "prompt": "You are helpful.",
        "max_iterations": 5,
        "on_max_iterations_reached": MagicMock(),
        "rewrite_history": AsyncMock(),
        "timezone_iana": "UTC",
    }
    values.update(overrides)
    return AgentSpec(**values)


def _settings(**overrides) -> Settings:
    values = {"GEMINI_API_KEY": "test-key", "TRANSIENT_RETRY_INTERVAL_SECONDS": 0}
    values.update(overrides)
    return Settings(**values)


def _mock_client(*responses: httpx.Response) -> AsyncMock:
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.post = AsyncMock(side_effect=list(responses))
    return mock_client


def _ok(*parts: dict, response_id: str = "r1") -> httpx.Response:
    return httpx.Response(
        200,
        json={"responseId": response_id, "candidates": [{"content": {"role": "model", "parts": list(parts)}}]},
    )


def _error(status: int, message: str) -> httpx.Response:
    return httpx.Response(status, json={"error": {"code": status, "message": message, "status": "ERROR"}})


def _utterance(event_id: str, text: str, timestamp: int = 0, attachments=None) -> ParticipantUtterance:
    return ParticipantUtterance(id=event_id, timestamp=timestamp, name="alice", text=text, attachments=attachments)


def test_empty_history_gets_placeholder_turn():
    assert history_to_contents([], "UTC") == [{"role": "user", "parts": [{"text": CONVERSATION_STARTED}]}]


def test_history_opening_with_model_gets_placeholder_turn():
    contents = history_to_contents([OwnUtterance(id="o1", timestamp=0, text="Good morning!")], "UTC")

    assert contents == [
        {"role": "user", "parts": [{"text": CONVERSATION_STARTED}]},
        {"role": "model", "parts": [{"text": "Good morning!"}]},
    ]


def test_participant_messages_carry_local_timestamp():
    sent = int(datetime(2026, 2, 5, 21, 34, tzinfo=timezone.utc).timestamp() * 1000)

    contents = history_to_contents([_utterance("u1", "hello", timestamp=sent)], "America/New_York")

    assert contents == [{"role": "user", "parts": [{"text": "[2026-02-05 16:34 EST] alice: hello"}]}]


def test_events_from_one_response_share_a_model_turn():
    history = [
        _utterance("u1", "look it up"),
        OwnUtterance(id="o1", timestamp=0, text="checking", model_metadata=META),
        ToolCall(
            id="c1",
            timestamp=0,
            name="lookup",
            parameters={"q": "x"},
            model_metadata={**META, "thought_signature": "sig"},
        ),
        ToolResult(id="t1", timestamp=1, name="lookup", result="found", tool_call_id="c1"),
        _utterance("u2", "thanks", timestamp=2),
    ]

    contents = history_to_contents(history, "UTC")

    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert contents[1]["parts"] == [
        {"text": "checking"},
        {"functionCall": {"name": "lookup", "args": {"q": "x"}}, "thoughtSignature": "sig"},
    ]
    assert contents[2]["parts"][0] == {"functionResponse": {"name": "lookup", "response": {"result": "found"}}}
    assert contents[2]["parts"][1]["text"].endswith("alice: thanks")


def test_tool_call_with_empty_signature_is_dropped_with_its_result():
    history = [
        _utterance("u1", "go"),
        ToolCall(id="c1", timestamp=1, name="lookup", model_metadata={**META, "thought_signature": ""}),
        ToolResult(id="t1", timestamp=2, name="lookup", result="found", tool_call_id="c1"),
    ]

    contents = history_to_contents(history, "UTC")

    assert len(contents) == 1
    assert contents[0]["role"] == "user"


def test_unsupported_attachments_become_text_notes():
    attachments = [
        InlineAttachment(mime_type="application/zip", data_base64="UEs="),
        InlineAttachment(mime_type="image/png", data_base64="AA==", caption="a dot"),
    ]

    contents = history_to_contents([_utterance("u1", "files", attachments=attachments)], "UTC")

    assert contents[0]["parts"][1:] == [
        {"text": "[Attachment omitted: unsupported type application/zip]"},
        {"text": "a dot"},
        {"inlineData": {"mimeType": "image/png", "data": "AA=="}},
    ]


def test_thoughts_are_replayed_as_model_text():
    history = [_utterance("u1", "hi"), OwnThought(id="th1", timestamp=1, text="they want a greeting")]

    contents = history_to_contents(history, "UTC")

    assert contents[1] == {"role": "model", "parts": [{"text": "(thinking) they want a greeting"}]}


def test_build_request_includes_tools_skills_and_generation_config():
    skill = Skill(name="weather", description="Get weather information", instructions="Ask first")
    spec = _spec(skills=[skill], max_output_tokens=256)

    request = build_request(spec, [lookup_tool], [_utterance("u1", "hi")])

    system = request["systemInstruction"]["parts"][0]["text"]
    assert system.startswith("You are helpful.")
    assert "- weather: Get weather information" in system
    assert request["tools"][0]["functionDeclarations"][0]["name"] == "lookup"
    assert request["generationConfig"] == {"maxOutputTokens": 256}


def test_build_request_without_tools_or_limits():
    request = build_request(_spec(tools=[]), [], [])

    assert "tools" not in request
    assert "generationConfig" not in request


def test_response_text_parts_become_one_utterance():
    data = _ok({"text": "Hello"}, {"text": " world"}).json()

    events = response_to_events(data, stamper=_stamper())

    assert len(events) == 1
    assert isinstance(events[0], OwnUtterance)
    assert events[0].text == "Hello world"
    assert events[0].model_metadata == META


def test_response_without_content_yields_exactly_one_do_nothing():
    for data in ({"responseId": "r1", "candidates": [{"content": {"parts": []}}]}, {"responseId": "r1"}):
        events = response_to_events(data, stamper=_stamper())

        assert len(events) == 1
        assert isinstance(events[0], DoNothing)
        assert events[0].model_metadata == META


def test_thought_only_response_records_thought_and_do_nothing():
    data = _ok({"text": "pondering", "thought": True, "thoughtSignature": "s1"}).json()

    events = response_to_events(data, stamper=_stamper())

    assert [type(e) for e in events] == [OwnThought, DoNothing]
    assert events[1].model_metadata["thought_signature"] == "s1"


def test_function_call_keeps_signature_and_skips_do_nothing():
    data = _ok(
        {"text": "Let me check."},
        {"functionCall": {"name": "lookup", "args": {"q": "x"}}, "thoughtSignature": "sig"},
    ).json()

    events = response_to_events(data, stamper=_stamper())

    assert [type(e) for e in events] == [OwnUtterance, ToolCall]
    assert events[1].parameters == {"q": "x"}
    assert events[1].model_metadata == {**META, "thought_signature": "sig"}
    assert [e.id for e in events] == ["ev-1", "ev-2"]


def test_inline_image_part_becomes_attachment():
    data = _ok({"inlineData": {"mimeType": "image/png", "data": "AA=="}}).json()

    events = response_to_events(data, stamper=_stamper())

    assert events[0].text == ""
    assert events[0].attachments == [InlineAttachment(mime_type="image/png", data_base64="AA==")]


@pytest.mark.asyncio
async def test_call_model_posts_to_generate_content():
    mock_client = _mock_client(_ok({"text": "Hi alice"}))

    with patch("agentloop.llm.gemini.httpx.AsyncClient", return_value=mock_client):
        caller = GeminiModelCaller(_settings(), stamper=_stamper())
        events = await caller.call_model(_spec(), [lookup_tool], [_utterance("u1", "hi")])

    assert [e.text for e in events] == ["Hi alice"]
    args, kwargs = mock_client.post.call_args
    assert args[0] == "/models/gemini-2.5-pro:generateContent"
    assert kwargs["headers"]["x-goog-api-key"] == "test-key"
    assert kwargs["json"]["contents"][0]["parts"][0]["text"].endswith("alice: hi")


@pytest.mark.asyncio
async def test_call_model_falls_back_after_transient_failures():
    overloaded = _error(503, "The model is overloaded.")
    mock_client = _mock_client(overloaded, overloaded, overloaded, _ok({"text": "from flash"}))
    sleep = AsyncMock()

    with patch("agentloop.llm.gemini.httpx.AsyncClient", return_value=mock_client):
        caller = GeminiModelCaller(_settings(), sleep=sleep)
        events = await caller.call_model(_spec(), [], [_utterance("u1", "hi")])

    assert events[0].text == "from flash"
    urls = [call.args[0] for call in mock_client.post.call_args_list]
    assert urls == [
        "/models/gemini-2.5-pro:generateContent",
        "/models/gemini-2.5-pro:generateContent",
        "/models/gemini-2.5-pro:generateContent",
        "/models/gemini-2.5-flash:generateContent",
    ]
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_call_model_raises_when_fallback_also_fails():
    overloaded = _error(503, "The model is overloaded.")
    mock_client = _mock_client(*[overloaded] * 4)

    with patch("agentloop.llm.gemini.httpx.AsyncClient", return_value=mock_client):
        caller = GeminiModelCaller(_settings(), sleep=AsyncMock())
        with pytest.raises(ProviderError) as exc_info:
            await caller.call_model(_spec(), [], [_utterance("u1", "hi")])

    assert exc_info.value.status_code == 503
    assert exc_info.value.message == "The model is overloaded."


@pytest.mark.asyncio
async def test_call_model_repairs_rejected_attachment_and_retries():
    icon = InlineAttachment(mime_type="image/x-icon", data_base64="AAAB")
    history = [_utterance("u1", "my favicon", attachments=[icon])]
    mock_client = _mock_client(_error(400, "Unsupported MIME type: image/x-icon"), _ok({"text": "Nice"}))
    spec = _spec()

    with patch("agentloop.llm.gemini.httpx.AsyncClient", return_value=mock_client):
        caller = GeminiModelCaller(_settings())
        events = await caller.call_model(spec, [], history)

    assert events[0].text == "Nice"
    spec.rewrite_history.assert_awaited_once()
    replacements = spec.rewrite_history.await_args.args[0]
    assert replacements["u1"].attachments is None
    assert "[Attachment removed (image/x-icon): unsupported type image/x-icon]" in replacements["u1"].text
    retried = mock_client.post.call_args_list[1].kwargs["json"]
    assert all("inlineData" not in part for part in retried["contents"][0]["parts"])


@pytest.mark.asyncio
async def test_call_model_uses_cache_store():
    store: dict = {}
    mock_client = _mock_client(_ok({"text": "cached"}))
    history = [_utterance("u1", "hi")]

    with patch("agentloop.llm.gemini.httpx.AsyncClient", return_value=mock_client):
        caller = GeminiModelCaller(_settings(), cache_store=store)
        first = await caller.call_model(_spec(), [], history)
        second = await caller.call_model(_spec(), [], history)

    assert mock_client.post.await_count == 1
    assert first[0].text == second[0].text == "cached"
    assert len(store) == 1


@pytest.mark.asyncio
async def test_call_model_requires_api_key():
    caller = GeminiModelCaller(_settings(GEMINI_API_KEY=""))

    with pytest.raises(ConfigurationError):
        await caller.call_model(_spec(), [], [])


def test_model_selection():
    caller = GeminiModelCaller(_settings())

    assert caller.select_model(_spec()) == "gemini-2.5-pro"
    assert caller.select_model(_spec(light_model=True)) == "gemini-2.5-flash"
    assert caller.select_model(_spec(image_gen=True)) == "gemini-2.5-flash-image"
    assert caller.fallback_model("gemini-2.5-flash") == "gemini-2.5-pro"
    assert caller.fallback_model("gemini-2.5-flash-image") is None
