import io

import pytest
from rich.console import Console

from llmshim.rich_llm_printer import RichPrinter, RichStreamPrinter


def make_console():
    return Console(file=io.StringIO(), width=100, force_terminal=False)


def chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    out = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "gpt-4o",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    if usage is not None:
        out["usage"] = usage
    return out


async def agen(items):
    for item in items:
        yield item


class TestRichStreamPrinter:
    @pytest.mark.asyncio
    async def test_print_stream_returns_reassembled_response(self):
        console = make_console()
        printer = RichStreamPrinter(console=console)
        chunks = [
            chunk("Hello "),
            chunk("**world**"),
            chunk(finish_reason="stop", usage={"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6}),
        ]

        response = await printer.print_stream(agen(chunks), provider="openai")

        assert response["choices"][0]["message"]["content"] == "Hello **world**"
        assert printer.get_full_text() == "Hello **world**"
        assert printer.get_response() is response
        assert printer.get_provider() == "openai"
        output = console.file.getvalue()
        assert "Final Response" in output
        assert "openai" in output

    @pytest.mark.asyncio
    async def test_tool_calls_are_tabled(self):
        console = make_console()
        printer = RichStreamPrinter(console=console, show_metadata=False)
        chunks = [
            chunk(tool_calls=[{"index": 0, "id": "toolu_1", "type": "function",
                               "function": {"name": "get_weather", "arguments": ""}}]),
            chunk(tool_calls=[{"index": 0, "type": "function", "function": {"arguments": '{"city": "Oslo"}'}}]),
        ]

        response = await printer.print_stream(agen(chunks), provider="bedrock", attribution="latest")

        assert response["choices"][0]["finish_reason"] == "tool_calls"
        output = console.file.getvalue()
        assert "get_weather" in output
        assert "toolu_1" in output


class TestRichPrinter:
    def test_print_chat(self):
        console = make_console()
        printer = RichPrinter(console=console)
        response = {
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": 0,
            "model": "gpt-4o",
            "provider": "azure",
            "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hi there"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 2, "completion_tokens": 2, "total_tokens": 4},
        }

        assert printer.print_chat(response) is response
        assert printer.get_text() == "Hi there"
        assert printer.get_usage()["total_tokens"] == 4
        output = console.file.getvalue()
        assert "Hi there" in output
        assert "azure" in output

    def test_empty_state(self):
        printer = RichPrinter(console=make_console())
        assert printer.get_text() == ""
        assert printer.get_usage() is None
