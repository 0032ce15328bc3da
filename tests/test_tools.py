import pytest
from pydantic import BaseModel, Field

from agentloop.errors import ToolReturnError
from agentloop.models import InlineAttachment, tool_use_turn
from agentloop.tools.base import Tool, ToolReturn, tool
from agentloop.tools.registry import ToolRegistry, dispatch


class NoteParams(BaseModel):
    note: str = Field(description="Text to remember")


class NoParams(BaseModel):
    pass


@tool("write_note", "Persist a note", NoteParams)
async def write_note(params: NoteParams) -> str:
    return f"saved: {params.note}"


@tool("snapshot", "Return an image", NoParams)
async def snapshot(_: NoParams) -> ToolReturn:
    return ToolReturn(result="see image", attachments=[InlineAttachment(mime_type="image/png", data_base64="AA==")])


@pytest.mark.asyncio
async def test_dispatch_validates_and_executes():
    call = tool_use_turn("write_note", {"note": "n1"})

    output = await dispatch([write_note], call)

    assert output.name == "write_note"
    assert output.result == "saved: n1"
    assert output.attachments is None
    assert output.tool_call_id == call.id


@pytest.mark.asyncio
async def test_dispatch_unknown_tool_reports_not_found():
    output = await dispatch([write_note], tool_use_turn("missing"))

    assert output.result == "Function missing not found"


@pytest.mark.asyncio
async def test_dispatch_reports_invalid_arguments():
    output = await dispatch([write_note], tool_use_turn("write_note", {"note": 5}))

    assert output.result.startswith("Invalid arguments: ")
    assert "note" in output.result


@pytest.mark.asyncio
async def test_dispatch_missing_required_argument_is_reported_not_raised():
    output = await dispatch([write_note], tool_use_turn("write_note", {}))

    assert output.result.startswith("Invalid arguments: ")


@pytest.mark.asyncio
async def test_dispatch_keeps_structured_return_attachments():
    output = await dispatch([snapshot], tool_use_turn("snapshot"))

    assert output.result == "see image"
    assert output.attachments == [InlineAttachment(mime_type="image/png", data_base64="AA==")]


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_value", [None, 42, {"text": "no result key"}])
async def test_dispatch_rejects_invalid_handler_return(bad_value):
    async def handler(_: NoParams):
        return bad_value

    broken = Tool(name="broken", description="Bad return", parameters=NoParams, handler=handler)

    with pytest.raises(ToolReturnError):
        await dispatch([broken], tool_use_turn("broken"))


@pytest.mark.asyncio
async def test_dispatch_requires_a_name():
    with pytest.raises(ValueError):
        await dispatch([write_note], tool_use_turn(""))


def test_registry_rejects_duplicate_names():
    registry = ToolRegistry([write_note])

    with pytest.raises(ValueError, match="Duplicate tool name: write_note"):
        registry.register(write_note)


def test_registry_lists_openai_tool_specs():
    specs = ToolRegistry([write_note]).list_tool_specs()

    assert specs[0]["type"] == "function"
    assert specs[0]["function"]["name"] == "write_note"
    assert specs[0]["function"]["parameters"]["required"] == ["note"]


def test_registry_declarations_omit_empty_parameters():
    declarations = ToolRegistry([write_note, snapshot]).list_declarations()

    assert declarations[0]["parameters"]["properties"]["note"] == {
        "description": "Text to remember",
        "type": "string",
    }
    assert "parameters" not in declarations[1]


@pytest.mark.asyncio
async def test_registry_execute_dispatches():
    registry = ToolRegistry([write_note])

    output = await registry.execute(tool_use_turn("write_note", {"note": "n2"}))

    assert output.result == "saved: n2"
    assert registry.get("write_note") is write_note
    assert registry.get("nope") is None
