# tools.py
# Tool contract, registry and the built-in tools.
#
# The agent never calls a tool object directly. It goes through
# ToolCollection.execute(), which owns lookup, result normalization and the
# cancellation check.

import json
import os
from typing import Any, Iterator, Protocol, runtime_checkable

from pydantic import BaseModel

from taskpilot.models import raise_if_cancelled


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ToolArgumentError(ValueError):
    """Raised when a raw argument payload is not a JSON object."""


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class ToolResult(BaseModel):
    """
    Outcome of one tool invocation.

    `error` wins over `output` when the observation is composed. `system` and
    `base64_image` are side channels that never reach the observation text.
    """

    output: str | None = None
    error: str | None = None
    system: str | None = None
    base64_image: str | None = None

    @property
    def success(self) -> bool:
        return not self.error

    def __str__(self) -> str:
        if self.error:
            return f"Error: {self.error}"
        return self.output or ""


class BaseTool:
    """
    Base class for tools. Subclasses set `name`, `description`, `parameters`
    and implement `execute()`.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {"type": "object", "properties": {}}

    def execute(self, args: dict, cancel=None) -> ToolResult | str:
        raise NotImplementedError(f"Tool '{self.name}' must implement execute()")

    def to_param(self) -> dict[str, Any]:
        """OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def cleanup(self) -> None:
        """Release resources held by the tool. Most tools hold none."""


@runtime_checkable
class ToolLookup(Protocol):
    """Anything that can resolve a tool by name."""

    def get_tool(self, name: str) -> BaseTool | None: ...


class ToolSource(Protocol):
    """A provider whose tool list can change while an agent runs."""

    def list_tools(self, cancel=None) -> list[BaseTool]: ...


def parse_tool_args(raw: str | None) -> dict:
    """Decode a raw argument payload. Empty payloads decode to {}."""
    if raw is None or not raw.strip():
        return {}
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ToolArgumentError(f"Arguments are not valid JSON: {exc}") from exc
    if not isinstance(args, dict):
        raise ToolArgumentError(f"Arguments must be a JSON object, got {type(args).__name__}.")
    return args


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolCollection:
    """
    Name → tool mapping. Registering an existing name replaces the old tool.

    Example:
        tools = ToolCollection(WebSearch(), Terminate())
        result = tools.execute("web_search", {"query": "python"})
    """

    def __init__(self, *tools: BaseTool) -> None:
        self._tools: dict[str, BaseTool] = {}
        self.add_tools(*tools)

    def add_tool(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool

    def add_tools(self, *tools: BaseTool) -> None:
        for tool in tools:
            self.add_tool(tool)

    def remove_tool(self, name: str) -> BaseTool | None:
        return self._tools.pop(name, None)

    def get_tool(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def to_params(self) -> list[dict[str, Any]]:
        return [tool.to_param() for tool in self._tools.values()]

    def execute(self, name: str, args: dict, cancel=None) -> ToolResult:
        """
        Run one tool. Unknown names come back as an error result, never raised.
        Exceptions from the tool itself propagate to the caller.
        """
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(error=f"Tool {name} is invalid")

        raise_if_cancelled(cancel, f"tool '{name}'")
        result = tool.execute(args, cancel=cancel)
        if not isinstance(result, ToolResult):
            result = ToolResult(output="" if result is None else str(result))
        return result

    def cleanup(self) -> None:
        for tool in self._tools.values():
            tool.cleanup()

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[BaseTool]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


class Terminate(BaseTool):
    name = "terminate"
    description = (
        "Terminate the interaction when the request is met OR if the assistant "
        "cannot proceed further with the task. When you have finished all the "
        "tasks, call this tool to end the work."
    )
    parameters = {
        "type": "object",
        "properties": {
            "status": {
                "type": "string",
                "description": "The finish status of the interaction.",
                "enum": ["success", "failure"],
            },
        },
        "required": ["status"],
    }

    def execute(self, args: dict, cancel=None) -> ToolResult:
        status = args.get("status") or "success"
        return ToolResult(output=f"The interaction has been completed with status: {status}")


class AskHuman(BaseTool):
    name = "ask_human"
    description = "Use this tool to ask human for help."
    parameters = {
        "type": "object",
        "properties": {
            "inquire": {
                "type": "string",
                "description": "The question you want to ask human.",
            },
        },
        "required": ["inquire"],
    }

    def __init__(self, prompt_fn=input) -> None:
        self._prompt = prompt_fn

    def execute(self, args: dict, cancel=None) -> ToolResult:
        inquire = str(args.get("inquire", "")).strip()
        if not inquire:
            return ToolResult(error="inquire parameter is required")
        try:
            answer = self._prompt(f"Bot: {inquire}\n\nYou: ")
        except EOFError:
            return ToolResult(error="Failed to read user input")
        return ToolResult(output=answer.strip())


class FileSaver(BaseTool):
    name = "file_saver"
    description = (
        "Save content to a local file at a specified path. Use this tool when you "
        "need to save text, code, or generated content to a file on the local filesystem."
    )
    parameters = {
        "type": "object",
        "properties": {
            "content": {
                "type": "string",
                "description": "(required) The content to save to the file.",
            },
            "file_path": {
                "type": "string",
                "description": "(required) The path where the file should be saved, including filename and extension.",
            },
            "mode": {
                "type": "string",
                "description": "(optional) The file opening mode. Default is 'w' for write. Use 'a' for append.",
                "enum": ["w", "a"],
                "default": "w",
            },
        },
        "required": ["content", "file_path"],
    }

    def execute(self, args: dict, cancel=None) -> ToolResult:
        path = str(args.get("file_path", "")).strip()
        content = args.get("content")
        mode = args.get("mode") or "w"
        if not path:
            return ToolResult(error="file_path parameter is required")
        if not isinstance(content, str):
            return ToolResult(error="content parameter is required")
        if mode not in ("w", "a"):
            return ToolResult(error=f"Invalid mode: {mode}")

        try:
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
            with open(path, mode, encoding="utf-8") as fh:
                fh.write(content)
        except OSError as exc:
            return ToolResult(error=f"Error saving file: {exc}")
        return ToolResult(output=f"Content successfully saved to {path}")


class WebSearch(BaseTool):
    name = "web_search"
    description = (
        "Perform a web search and return a list of relevant results with titles, "
        "snippets and links."
    )
    parameters = {
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "(required) The search query to submit to the search engine.",
            },
            "num_results": {
                "type": "integer",
                "description": "(optional) The number of search results to return. Default is 5.",
                "default": 5,
            },
        },
        "required": ["query"],
    }

    def execute(self, args: dict, cancel=None) -> ToolResult:
        from ddgs import DDGS

        query = str(args.get("query", "")).strip()
        if not query:
            return ToolResult(error="no query provided.")
        try:
            num_results = max(1, int(args.get("num_results") or 5))
        except (TypeError, ValueError):
            return ToolResult(error="num_results must be an integer.")

        try:
            # Coerce the generator to a list to ensure actual execution
            results = list(DDGS().text(query, max_results=num_results))
        except Exception as exc:
            return ToolResult(error=f"Search failed: {exc}")

        if not results:
            return ToolResult(output=f"No results found for '{query}'.")

        lines = [f"Search results for '{query}':"]
        for i, r in enumerate(results, start=1):
            lines.append(f"\n{i}. {r.get('title', 'No Title')}")
            lines.append(f"   URL: {r.get('href', '')}")
            if r.get("body"):
                lines.append(f"   {r['body']}")
        return ToolResult(output="\n".join(lines))
