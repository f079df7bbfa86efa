# models.py
# Data contracts for the taskpilot agent runtime.
# Conversation messages, the bounded memory log, agent/plan enums and the
# plan records. No I/O lives here.

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RunCancelled(Exception):
    """Raised at a model or tool boundary once the cancellation event is set."""


def raise_if_cancelled(cancel, where: str = "") -> None:
    """`cancel` is a threading.Event or None."""
    if cancel is not None and cancel.is_set():
        suffix = f" during {where}" if where else ""
        raise RunCancelled(f"Run cancelled{suffix}.")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class AgentState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    ERROR = "ERROR"


class ToolChoice(str, Enum):
    """Constraint handed to the model on whether it may propose tool calls."""

    NONE = "none"
    AUTO = "auto"
    REQUIRED = "required"


class PlanStepStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"

    @property
    def mark(self) -> str:
        return _STATUS_MARKS[self]

    @classmethod
    def open_statuses(cls) -> tuple["PlanStepStatus", ...]:
        return (cls.NOT_STARTED, cls.IN_PROGRESS)


_STATUS_MARKS = {
    PlanStepStatus.NOT_STARTED: "[ ]",
    PlanStepStatus.IN_PROGRESS: "[→]",
    PlanStepStatus.COMPLETED: "[✓]",
    PlanStepStatus.BLOCKED: "[!]",
}


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Function(BaseModel):
    name: str
    arguments: str = Field(default="", description="Raw JSON argument payload, decoded at dispatch.")


class ToolCall(BaseModel):
    """A tool invocation proposed by the model."""

    id: str
    type: str = "function"
    function: Function


class Message(BaseModel):
    """A single entry of the conversation log."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    name: str | None = None
    tool_call_id: str | None = None
    base64_image: str | None = None

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def assistant(cls, content: str | None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)

    @classmethod
    def tool(
        cls,
        content: str,
        name: str,
        tool_call_id: str,
        base64_image: str | None = None,
    ) -> "Message":
        return cls(
            role=Role.TOOL,
            content=content,
            name=name,
            tool_call_id=tool_call_id,
            base64_image=base64_image,
        )

    @classmethod
    def from_tool_calls(cls, content: str | None, tool_calls: list[ToolCall]) -> "Message":
        """Assistant message carrying proposed calls. Empty content is stored as None."""
        return cls(role=Role.ASSISTANT, content=content or None, tool_calls=list(tool_calls))

    def to_dict(self) -> dict[str, Any]:
        """OpenAI chat-completions wire shape. Unset fields are omitted."""
        data: dict[str, Any] = {"role": self.role.value}
        if self.content is not None:
            data["content"] = self.content
        if self.tool_calls:
            data["tool_calls"] = [call.model_dump() for call in self.tool_calls]
        if self.name is not None:
            data["name"] = self.name
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data


class Memory(BaseModel):
    """
    Bounded, ordered conversation log.

    Overflow evicts the oldest messages first. Tool replies left at the head
    without their originating assistant message are evicted with it.
    """

    messages: list[Message] = Field(default_factory=list)
    max_messages: int = Field(default=100, ge=1)

    def add_message(self, message: Message) -> None:
        self.messages.append(message)
        self._evict()

    def add_messages(self, messages: list[Message]) -> None:
        self.messages.extend(messages)
        self._evict()

    def clear(self) -> None:
        self.messages = []

    def get_recent_messages(self, n: int) -> list[Message]:
        if n <= 0:
            return []
        return list(self.messages[-n:])

    def to_dict_list(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self.messages]

    def __len__(self) -> int:
        return len(self.messages)

    def _evict(self) -> None:
        overflow = len(self.messages) - self.max_messages
        if overflow <= 0:
            return
        survivors = self.messages[overflow:]
        while survivors and survivors[0].role == Role.TOOL:
            survivors = survivors[1:]
        self.messages = survivors


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PlanStep(BaseModel):
    description: str
    status: PlanStepStatus = PlanStepStatus.NOT_STARTED
    result: str | None = None
    error: str | None = None


class Plan(BaseModel):
    """An ordered list of steps tracked by the planning flow."""

    id: str
    title: str
    steps: list[PlanStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def next_open_step(self) -> tuple[int, PlanStep] | None:
        for index, step in enumerate(self.steps):
            if step.status in PlanStepStatus.open_statuses():
                return index, step
        return None

    def progress(self) -> tuple[int, int]:
        completed = sum(1 for s in self.steps if s.status == PlanStepStatus.COMPLETED)
        return completed, len(self.steps)

    def touch(self) -> None:
        self.updated_at = _now()

    def render(self) -> str:
        completed, total = self.progress()
        lines = [
            f"Plan: {self.title} (ID: {self.id})",
            f"Progress: {completed}/{total} steps completed",
            f"Updated: {self.updated_at:%Y-%m-%d %H:%M:%S}",
            "",
            "Steps:",
        ]
        for index, step in enumerate(self.steps):
            lines.append(f"  {index + 1}. {step.status.mark} {step.description}")
            if step.result:
                lines.append(f"     Result: {step.result}")
            if step.error:
                lines.append(f"     Error: {step.error}")
        return "\n".join(lines)
