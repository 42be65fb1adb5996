"""
Rich printer module for displaying canonical LLM responses and chunk streams.
"""
from typing import Dict, Any, AsyncIterator, List, Optional
from rich.console import Console
from rich.markdown import Markdown
from rich.syntax import Syntax
from rich.panel import Panel
from rich.live import Live
from rich.console import Group
from rich.table import Table
from rich.text import Text
import json

from .reassembler import StreamReassembler, ToolCallAttribution
from .types import CompletionChunk, CompletionResponse, ToolCall, Usage

default_console = Console()


def _tool_calls_table(tool_calls: List[ToolCall]) -> Table:
    table = Table(title="Tool Calls", title_justify="left", expand=True, border_style="dim")
    table.add_column("id", style="cyan", no_wrap=True)
    table.add_column("name", style="magenta")
    table.add_column("arguments")
    for call in tool_calls:
        function = call.get("function") or {}
        table.add_row(call.get("id") or "-", function.get("name") or "-", function.get("arguments") or "")
    return table


def _metadata_panel(metadata: Dict[str, Any]) -> Panel:
    metadata_display = Syntax(
        json.dumps(metadata, indent=2, default=str),
        "json",
        theme="lightbulb",
        background_color="default"
    )
    return Panel(metadata_display, title="[bold]Metadata[/bold]", border_style="dim")


def _body(text: str, tool_calls: List[ToolCall], code_theme: str, inline_code_theme: str, placeholder: str) -> List[Any]:
    parts: List[Any] = []
    if text.strip():
        parts.append(Markdown(text, code_theme=code_theme, inline_code_theme=inline_code_theme))
    if tool_calls:
        parts.append(_tool_calls_table(tool_calls))
    if not parts:
        parts.append(Text(placeholder, style="dim italic"))
    return parts


class RichStreamPrinter:
    """
    A class for displaying streaming LLM responses using rich.

    Chunks are folded into a StreamReassembler as they arrive; the panel
    shows the text so far and any tool calls, and switches to the final
    title with usage once the stream ends.

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show metadata at the end
        code_theme: Theme for code blocks
        inline_code_theme: Theme for inline code
        refresh_rate: Refresh rate for Live display
        show_final_title: Whether to change title to "Final Response" at the end
        show_provider_info: Whether to show provider information in title
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        show_final_title: bool = True,
        show_provider_info: bool = True,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.show_final_title = show_final_title
        self.show_provider_info = show_provider_info
        self.border_style = border_style
        self.console = console or default_console
        self._reassembler: Optional[StreamReassembler] = None
        self._response: Optional[CompletionResponse] = None
        self._provider: Optional[str] = None

    async def print_stream(
        self,
        chunks: AsyncIterator[CompletionChunk],
        *,
        provider: Optional[str] = None,
        attribution: ToolCallAttribution = "index",
    ) -> CompletionResponse:
        """
        Display a chunk stream with rich formatting.

        Args:
            chunks: Async iterator of canonical chunks, e.g. `client.astream(request)`.
            provider: Provider name for the title.
            attribution: Tool-call attribution of the provider that produced the stream.

        Returns:
            The reassembled response.
        """
        self._provider = provider
        self._response = None
        self._reassembler = StreamReassembler(attribution, provider=provider)
        panel = Panel("", border_style=self.border_style)

        with Live(panel, refresh_per_second=self.refresh_rate, console=self.console) as live:
            async for chunk in chunks:
                self._reassembler.add(chunk)
                self._update_display(live, is_final=False)
            self._response = self._reassembler.finish()
            self._update_display(live, is_final=True)

        return self._response

    def _update_display(self, live: Live, is_final: bool = False) -> None:
        """Update the Live display with current content."""
        live.update(
            Panel(
                self._build_content(is_final),
                title=self._build_title(is_final),
                border_style="green" if is_final else self.border_style,
                padding=(1, 2)
            )
        )

    def _build_title(self, is_final: bool) -> str:
        """Build the panel title."""
        title_parts = []

        if is_final and self.show_final_title:
            title_parts.append("[bold]Final Response[/bold]")
        else:
            title_parts.append(f"[bold]{self.title}[/bold]")

        if self.show_provider_info and self._provider:
            title_parts.append(f"[dim]({self._provider})[/dim]")

        return " ".join(title_parts)

    def _build_content(self, is_final: bool) -> Any:
        """Build the panel content."""
        reassembler = self._reassembler
        parts = _body(
            reassembler.content,
            reassembler.tool_calls,
            self.code_theme,
            self.inline_code_theme,
            "(waiting for response...)",
        )

        if is_final and self.show_metadata and self._response:
            parts.append(_metadata_panel({
                "finish_reason": self._response["choices"][0]["finish_reason"],
                "usage": self._response.get("usage"),
            }))

        return Group(*parts)

    def get_full_text(self) -> str:
        """Get the full assembled text."""
        return self._reassembler.content if self._reassembler else ""

    def get_response(self) -> Optional[CompletionResponse]:
        """Get the reassembled response if the stream finished."""
        return self._response

    def get_provider(self) -> Optional[str]:
        """Get the provider name if available."""
        return self._provider


class RichPrinter:
    """
    A class for displaying non-streaming LLM responses using rich.

    Designed to work with the `chat` and `collect` output of UnifiedChatClient.

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show metadata at the end
        code_theme: Theme for code blocks
        inline_code_theme: Theme for inline code
        show_provider_info: Whether to show provider information in title
        border_style: Border style for the panel
    """

    def __init__(
        self,
        title: str = "Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        show_provider_info: bool = True,
        border_style: str = "green",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.show_provider_info = show_provider_info
        self.border_style = border_style
        self.console = console or default_console
        self._response: Optional[CompletionResponse] = None

    def print_chat(self, response: CompletionResponse) -> CompletionResponse:
        """
        Display a chat response with rich formatting.

        Shows the first choice: its text as markdown, its tool calls as a
        table, and model, finish reason and usage as metadata.

        Args:
            response: Canonical response from UnifiedChatClient.chat() or collect().

        Returns:
            The same response for chaining
        """
        self._response = response

        choice = (response.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        parts = _body(
            message.get("content") or "",
            message.get("tool_calls") or [],
            self.code_theme,
            self.inline_code_theme,
            "(empty response)",
        )
        if self.show_metadata:
            parts.append(_metadata_panel({
                "model": response.get("model"),
                "finish_reason": choice.get("finish_reason"),
                "usage": response.get("usage"),
            }))

        self.console.print(
            Panel(
                Group(*parts),
                title=self._build_title(response.get("provider", "")),
                border_style=self.border_style,
                padding=(1, 2)
            )
        )

        return response

    def _build_title(self, provider: str) -> str:
        """Build the panel title."""
        title_parts = [f"[bold]{self.title}[/bold]"]

        if self.show_provider_info and provider:
            title_parts.append(f"[dim]({provider})[/dim]")

        return " ".join(title_parts)

    def get_response(self) -> Optional[CompletionResponse]:
        """Get the last printed response."""
        return self._response

    def get_text(self) -> str:
        """Get the text from the last printed response."""
        if self._response:
            message = self._response["choices"][0]["message"]
            return message.get("content") or ""
        return ""

    def get_usage(self) -> Optional[Usage]:
        """Get the usage from the last printed response."""
        if self._response:
            return self._response.get("usage")
        return None
