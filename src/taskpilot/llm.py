# llm.py
# Model gateway: the only place that talks to the completion endpoint.
#
# Agents depend on the ModelGateway protocol, not on LLMClient, so tests and
# alternative backends can stand in for it. Transport and model failures
# surface as a single LLMError.

import time
from typing import Any, Protocol

import httpx
from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from taskpilot import display
from taskpilot.config import LLMSettings
from taskpilot.models import Function, Message, RunCancelled, ToolCall, ToolChoice, raise_if_cancelled

REQUEST_TIMEOUT = 120.0


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LLMError(Exception):
    """Raised when the model backend fails or returns nothing usable."""


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class LLMResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


class ModelGateway(Protocol):
    def ask(
        self,
        messages: list[Message],
        system_msgs: list[Message] | None = None,
        cancel=None,
    ) -> str: ...

    def ask_tool(
        self,
        messages: list[Message],
        system_msgs: list[Message] | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | str = ToolChoice.AUTO,
        cancel=None,
    ) -> LLMResponse: ...


def format_messages(messages: list[Message], system_msgs: list[Message] | None = None) -> list[dict]:
    """System preamble first, then the conversation, in wire format."""
    return [m.to_dict() for m in [*(system_msgs or []), *messages]]


def _coerce_choice(tool_choice: ToolChoice | str) -> ToolChoice:
    try:
        return ToolChoice(tool_choice)
    except ValueError:
        return ToolChoice.AUTO


# ---------------------------------------------------------------------------
# OpenAI-compatible client
# ---------------------------------------------------------------------------


class LLMClient:
    """
    Gateway over any OpenAI-compatible chat-completions endpoint.

    Example:
        client = LLMClient(settings.llm_for("default"))
        reply = client.ask([Message.user("hello")])
    """

    def __init__(self, settings: LLMSettings, client: OpenAI | None = None) -> None:
        self.settings = settings
        self._client = client or OpenAI(
            base_url=settings.base_url,
            api_key=settings.api_key,
            http_client=httpx.Client(timeout=REQUEST_TIMEOUT),
        )

    def _create(self, cancel, **kwargs):
        raise_if_cancelled(cancel, "model call")
        try:
            response = self._client.chat.completions.create(
                model=self.settings.model,
                max_tokens=self.settings.max_tokens,
                temperature=self.settings.temperature,
                **kwargs,
            )
        except OpenAIError as exc:
            raise LLMError(f"Failed to create chat completion: {exc}") from exc
        raise_if_cancelled(cancel, "model call")

        if not response.choices:
            raise LLMError("Empty response from LLM")
        return response.choices[0].message

    def ask(
        self,
        messages: list[Message],
        system_msgs: list[Message] | None = None,
        cancel=None,
    ) -> str:
        message = self._create(cancel, messages=format_messages(messages, system_msgs))
        if not message.content:
            raise LLMError("Empty response from LLM")
        return message.content

    def ask_tool(
        self,
        messages: list[Message],
        system_msgs: list[Message] | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_choice: ToolChoice | str = ToolChoice.AUTO,
        cancel=None,
    ) -> LLMResponse:
        kwargs: dict[str, Any] = {"messages": format_messages(messages, system_msgs)}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = _coerce_choice(tool_choice).value
        message = self._create(cancel, **kwargs)

        calls = [
            ToolCall(
                id=tc.id,
                type=tc.type or "function",
                function=Function(
                    name=tc.function.name,
                    arguments=tc.function.arguments or "{}",
                ),
            )
            for tc in (message.tool_calls or [])
        ]
        return LLMResponse(content=message.content or "", tool_calls=calls)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class RetryingGateway:
    """
    Wraps a gateway with linear-backoff retries on LLMError.

    The wait happens on the cancellation event, so cancelling interrupts it.
    """

    def __init__(self, inner: ModelGateway, max_retries: int = 3, backoff: float = 1.0) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.inner = inner
        self.max_retries = max_retries
        self.backoff = backoff

    def _sleeper(self, cancel):
        def sleep(seconds: float) -> None:
            if cancel is None:
                time.sleep(seconds)
            elif cancel.wait(seconds):
                raise RunCancelled("Run cancelled while waiting to retry the model call.")

        return sleep

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        display.retrying(
            retry_state.attempt_number,
            self.max_retries,
            retry_state.next_action.sleep,
            retry_state.outcome.exception(),
        )

    def _call(self, fn, cancel, *args, **kwargs):
        retrying = Retrying(
            retry=retry_if_exception_type(LLMError),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_incrementing(start=self.backoff, increment=self.backoff),
            sleep=self._sleeper(cancel),
            before_sleep=self._before_sleep,
            reraise=False,
        )
        try:
            return retrying(fn, *args, cancel=cancel, **kwargs)
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            raise LLMError(f"Failed after {self.max_retries} retries: {last_error}") from last_error

    def ask(self, messages, system_msgs=None, cancel=None) -> str:
        return self._call(self.inner.ask, cancel, messages, system_msgs)

    def ask_tool(
        self,
        messages,
        system_msgs=None,
        tools=None,
        tool_choice=ToolChoice.AUTO,
        cancel=None,
    ) -> LLMResponse:
        return self._call(self.inner.ask_tool, cancel, messages, system_msgs, tools, tool_choice)
