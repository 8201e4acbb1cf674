"""Tests for mcpkit exception classes."""

import pytest

from mcpkit import types
from mcpkit.shared.exceptions import EventNotFoundError, McpError, StreamClosedError, to_error_data


def test_mcp_error_str():
    error = McpError.of(types.NOT_FOUND, "Tool not found")
    assert str(error) == "MCP error 404: Tool not found"
    assert error.code == 404
    assert error.error.message == "Tool not found"


def test_mcp_error_keeps_data():
    error = McpError(types.ErrorData(code=418, message="teapot", data={"brew": "tea"}))
    assert to_error_data(error).data == {"brew": "tea"}
    assert to_error_data(error).code == 418


def test_to_error_data_wraps_other_exceptions():
    error = to_error_data(ValueError("bad value"))
    assert error.code == types.INTERNAL_ERROR
    assert error.message == "bad value"


def test_to_error_data_uses_type_name_for_empty_message():
    assert to_error_data(KeyError()).message == "KeyError"


def test_stream_closed_error():
    error = StreamClosedError()
    assert isinstance(error, McpError)
    assert error.code == 500
    assert error.error.message == "stream closed"


def test_event_not_found_error():
    error = EventNotFoundError("evt-1")
    assert error.code == 404
    assert error.event_id == "evt-1"
    with pytest.raises(McpError, match="event not found"):
        raise error
