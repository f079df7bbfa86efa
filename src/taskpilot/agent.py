# agent.py
# Think / act agent core.
#
# The agent owns the loop, the state machine and the conversation log. The
# model only proposes; every tool call is dispatched here, one at a time, in
# the order proposed.
#
# Control flow per run:
#   IDLE → RUNNING → [refresh tools?] → think (model) → act (tools)
#   → stuck check → record → … → FINISHED | step budget | ERROR
#
# All terminal output is delegated to display.py.

import threading
from typing import Callable

from pydantic import BaseModel, Field

from taskpilot import display
from taskpilot.llm import ModelGateway
from taskpilot.models import (
    AgentState,
    Memory,
    Message,
    Role,
    RunCancelled,
    ToolCall,
    ToolChoice,
)
from taskpilot.planning import PlanningTool, PlanStore
from taskpilot.tools import (
    AskHuman,
    BaseTool,
    FileSaver,
    Terminate,
    ToolArgumentError,
    ToolCollection,
    ToolResult,
    ToolSource,
    WebSearch,
    parse_tool_args,
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AgentError(Exception):
    """Base class for agent-level failures."""


class InvalidStateError(AgentError):
    """Raised when run() or reset() is called from a state that forbids it."""


class ToolCallsRequiredError(AgentError):
    """Raised when the tool-choice policy is `required` and the model proposed nothing."""


# ---------------------------------------------------------------------------
# Fixed texts
# ---------------------------------------------------------------------------

STUCK_PROMPT = (
    "Observed duplicate responses. Consider new strategies and avoid repeating "
    "ineffective paths already attempted."
)
NO_STEPS_EXECUTED = "No steps executed"
NOTHING_TO_EXECUTE = "No content or commands to execute"
THINKING_COMPLETE = "Thinking complete - no action needed"
TOOLS_GONE = "Tool source has no tools available, ending interaction"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


FinishPolicy = Callable[[str, ToolResult], bool]


def finish_on_success(name: str, result: ToolResult) -> bool:
    """Default finish policy: any successful special-tool call ends the run."""
    return result.success


class AgentConfig(BaseModel):
    """Everything that distinguishes one agent preset from another."""

    name: str = "agent"
    description: str = ""
    system_prompt: str = ""
    next_step_prompt: str = ""
    max_steps: int = Field(default=30, ge=1)
    duplicate_threshold: int = Field(default=2, ge=1)
    tool_choice: ToolChoice = ToolChoice.AUTO
    special_tool_names: list[str] = Field(default_factory=lambda: [Terminate.name])
    max_observe: int | None = Field(default=None, gt=0, description="Truncate observations to this many characters.")
    refresh_interval: int = Field(default=5, ge=1, description="Steps between tool-source refreshes.")
    memory_capacity: int = Field(default=100, ge=1)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class ToolCallAgent:
    """
    One parameterized think/act agent.

    Example:
        agent = ToolCallAgent(gateway, ToolCollection(WebSearch(), Terminate()))
        print(agent.run("Find the latest CPython release."))

    The lock guards state and memory mutation only. It is never held while
    the model or a tool is being called.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        tools: ToolCollection | None = None,
        config: AgentConfig | None = None,
        tool_source: ToolSource | None = None,
        finish_policy: FinishPolicy = finish_on_success,
    ) -> None:
        self.config = config or AgentConfig()
        self.gateway = gateway
        self.available_tools = tools if tools is not None else ToolCollection(Terminate())
        self.tool_source = tool_source
        self.finish_policy = finish_policy

        self.memory = Memory(max_messages=self.config.memory_capacity)
        self.state = AgentState.IDLE
        self.current_step = 0
        self.next_step_prompt = self.config.next_step_prompt
        self.tool_calls: list[ToolCall] = []

        self._source_tool_names: set[str] = set()
        self._last_refresh_step: int | None = None
        self._running = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def messages(self) -> list[Message]:
        with self._lock:
            return list(self.memory.messages)

    def get_tool(self, name: str) -> BaseTool | None:
        return self.available_tools.get_tool(name)

    def update_memory(self, message: Message) -> None:
        with self._lock:
            self.memory.add_message(message)

    def _set_state(self, state: AgentState) -> None:
        with self._lock:
            self.state = state

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run(self, request: str | None = None, cancel=None) -> str:
        """
        Drive think/act steps until FINISHED or the step budget is spent.

        Returns one line per executed step. Raises InvalidStateError unless the
        agent is IDLE; any step failure moves the agent to ERROR and propagates.
        """
        with self._lock:
            if self.state != AgentState.IDLE:
                raise InvalidStateError(f"Cannot run agent from state: {self.state.value}")
            self.state = AgentState.RUNNING
            self._running = True

        try:
            if request:
                self.update_memory(Message.user(request))

            results: list[str] = []
            while self.current_step < self.config.max_steps and self.state != AgentState.FINISHED:
                self.current_step += 1
                display.step_start(self.name, self.current_step, self.config.max_steps)

                try:
                    if self._tool_refresh_due() and not self.refresh_tools(cancel):
                        self._set_state(AgentState.FINISHED)
                        results.append(f"Step {self.current_step}: {TOOLS_GONE}")
                        break
                    step_result = self.step(cancel)
                except Exception as exc:
                    self._set_state(AgentState.ERROR)
                    display.step_failed(self.name, self.current_step, exc)
                    raise

                if self.is_stuck():
                    self.handle_stuck_state()

                results.append(f"Step {self.current_step}: {step_result}")

            if self.state != AgentState.FINISHED and self.current_step >= self.config.max_steps:
                display.run_terminated(self.name, self.config.max_steps)
                results.append(f"Terminated: Reached max steps ({self.config.max_steps})")
        finally:
            with self._lock:
                self._running = False

        if not results:
            return NO_STEPS_EXECUTED
        return "\n".join(results)

    def reset(self) -> None:
        """
        Return an agent that spent its step budget to IDLE so it can run again.
        Memory is kept. FINISHED and ERROR are terminal.
        """
        with self._lock:
            if self._running:
                raise InvalidStateError("Cannot reset an agent while it is running")
            if self.state in (AgentState.FINISHED, AgentState.ERROR):
                raise InvalidStateError(f"Cannot reset agent from terminal state: {self.state.value}")
            self.state = AgentState.IDLE
            self.current_step = 0
            self.tool_calls = []
            self._last_refresh_step = None

    def step(self, cancel=None) -> str:
        if not self.think(cancel):
            return THINKING_COMPLETE
        return self.act(cancel)

    # ------------------------------------------------------------------
    # Think
    # ------------------------------------------------------------------

    def think(self, cancel=None) -> bool:
        """Ask the model for the next move. Returns True when act() should run."""
        if self.next_step_prompt:
            self.update_memory(Message.user(self.next_step_prompt))

        system_msgs = [Message.system(self.config.system_prompt)] if self.config.system_prompt else []
        try:
            response = self.gateway.ask_tool(
                self.messages,
                system_msgs=system_msgs,
                tools=self.available_tools.to_params(),
                tool_choice=self.config.tool_choice,
                cancel=cancel,
            )
        except RunCancelled:
            raise
        except Exception as exc:
            display.llm_error(self.name, exc)
            self.update_memory(Message.assistant(f"Error encountered while processing: {exc}"))
            raise

        content = response.content or ""
        calls = list(response.tool_calls)
        display.thoughts(self.name, content)
        display.tools_selected(self.name, [c.function.name for c in calls])

        if self.config.tool_choice == ToolChoice.NONE:
            if calls:
                display.warning(f"{self.name} tried to use tools when they weren't available!")
            self.tool_calls = []
            self.update_memory(Message.assistant(content))
            return bool(content)

        self.tool_calls = calls
        if calls:
            self.update_memory(Message.from_tool_calls(content, calls))
        else:
            self.update_memory(Message.assistant(content))

        if self.config.tool_choice == ToolChoice.REQUIRED:
            # A missing call is reported by act().
            return True
        return bool(calls) or bool(content)

    # ------------------------------------------------------------------
    # Act
    # ------------------------------------------------------------------

    def act(self, cancel=None) -> str:
        """Execute pending calls in order and record one tool message per call."""
        if not self.tool_calls:
            if self.config.tool_choice == ToolChoice.REQUIRED:
                raise ToolCallsRequiredError("Tool calls required but none provided")
            messages = self.messages
            if messages and messages[-1].content is not None:
                return messages[-1].content
            return NOTHING_TO_EXECUTE

        results: list[str] = []
        for call in self.tool_calls:
            observation, result = self._dispatch(call, cancel)
            if self.config.max_observe:
                observation = observation[: self.config.max_observe]

            self.update_memory(
                Message.tool(
                    observation,
                    name=call.function.name,
                    tool_call_id=call.id,
                    base64_image=result.base64_image if result else None,
                )
            )
            results.append(observation)

            # The rest of the batch still runs after a finishing call.
            if result is not None and self._is_special_tool(call.function.name):
                if self.finish_policy(call.function.name, result):
                    display.special_tool_finished(call.function.name)
                    self._set_state(AgentState.FINISHED)

        return "\n\n".join(results)

    def execute_tool(self, call: ToolCall, cancel=None) -> str:
        """Observation text for a single call. Never raises for tool-level problems."""
        observation, _ = self._dispatch(call, cancel)
        return observation

    def _dispatch(self, call: ToolCall, cancel=None) -> tuple[str, ToolResult | None]:
        name = call.function.name
        if not name:
            return "Error: Invalid command format", None

        try:
            args = parse_tool_args(call.function.arguments)
        except ToolArgumentError:
            display.tool_failed(name, "malformed arguments")
            return f"Error parsing arguments for {name}: Invalid JSON format", None

        display.tool_activating(name, args)
        try:
            result = self.available_tools.execute(name, args, cancel=cancel)
        except RunCancelled:
            raise
        except Exception as exc:
            display.tool_failed(name, exc)
            return f"⚠️ Tool '{name}' encountered a problem: {exc}", None

        if result.error:
            display.tool_failed(name, result.error)
            return f"Error: {result.error}", result

        if result.output:
            observation = f"Observed output of cmd `{name}` executed:\n{result.output}"
        else:
            observation = f"Cmd `{name}` completed with no output"
        display.tool_completed(name, observation)
        return observation, result

    def _is_special_tool(self, name: str) -> bool:
        return name.lower() in {n.lower() for n in self.config.special_tool_names}

    # ------------------------------------------------------------------
    # Stuck detection
    # ------------------------------------------------------------------

    def is_stuck(self) -> bool:
        """True when the latest assistant text repeats at least `duplicate_threshold` earlier ones."""
        replies = [m for m in self.messages if m.role == Role.ASSISTANT]
        if not replies or not replies[-1].content:
            return False
        last = replies[-1].content
        duplicates = sum(1 for m in replies[:-1] if m.content == last)
        return duplicates >= self.config.duplicate_threshold

    def handle_stuck_state(self) -> None:
        self.next_step_prompt = f"{STUCK_PROMPT}\n{self.next_step_prompt}"
        display.stuck_detected(STUCK_PROMPT)

    # ------------------------------------------------------------------
    # Dynamic tools
    # ------------------------------------------------------------------

    def _tool_refresh_due(self) -> bool:
        if self.tool_source is None:
            return False
        if self._last_refresh_step is None:
            return True
        return self.current_step % self.config.refresh_interval == 0

    def refresh_tools(self, cancel=None) -> bool:
        """
        Sync the registry with the tool source.

        Returns False when the source reports no tools at all. A failing source
        keeps the current tools. Special tools registered outside the source
        are pinned: the source can neither replace nor remove them.
        """
        self._last_refresh_step = self.current_step
        try:
            listed = list(self.tool_source.list_tools(cancel=cancel))
        except RunCancelled:
            raise
        except Exception as exc:
            display.warning(f"Failed to refresh tools: {exc}")
            return True

        pinned = {
            tool.name
            for tool in self.available_tools
            if self._is_special_tool(tool.name) and tool.name not in self._source_tool_names
        }
        tools = [tool for tool in listed if tool.name not in pinned]
        fresh = {tool.name for tool in tools}
        removed = sorted(self._source_tool_names - fresh)
        added = sorted(fresh - self._source_tool_names)
        for name in removed:
            self.available_tools.remove_tool(name)
        self.available_tools.add_tools(*tools)
        self._source_tool_names = fresh
        display.tools_refreshed(added, removed)
        return bool(listed)

    def cleanup(self) -> None:
        self.available_tools.cleanup()


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

GENERAL_SYSTEM_PROMPT = """\
You are taskpilot, a general-purpose assistant that solves tasks by calling \
tools. You can search the web, save files, keep a plan of multi-step work and \
ask the user for clarification. Work step by step and call `terminate` once \
the request is fully handled or cannot be completed.\
"""

GENERAL_NEXT_STEP_PROMPT = """\
Based on the user's needs, pick the most appropriate tool or combination of \
tools. For complex tasks, break the problem down and solve it step by step. \
After each tool call, explain the result and state the next step.\
"""

RESEARCH_SYSTEM_PROMPT = """\
You are a research assistant. Use `web_search` to gather sources, cite the \
URLs you rely on, and save the final write-up with `file_saver` when the user \
asks for a file. Call `terminate` when done.\
"""

DYNAMIC_SYSTEM_PROMPT = """\
You are an assistant whose tools are provided by an external server and may \
change while you work: new tools can appear and existing ones can disappear. \
Call tools with arguments that match their schemas, read errors carefully and \
retry with corrected arguments, and make one call at a time when calls depend \
on each other. Call `terminate` when the request is complete.\
"""

DYNAMIC_NEXT_STEP_PROMPT = """\
Based on the current state and available tools, what should be done next? \
Think step by step and choose the tool that moves the task forward.\
"""


def general_agent(
    gateway: ModelGateway,
    plan_store: PlanStore | None = None,
    max_steps: int = 30,
) -> ToolCallAgent:
    tools = ToolCollection(
        WebSearch(),
        FileSaver(),
        AskHuman(),
        PlanningTool(plan_store),
        Terminate(),
    )
    config = AgentConfig(
        name="taskpilot",
        description="A versatile agent that can solve various tasks using multiple tools",
        system_prompt=GENERAL_SYSTEM_PROMPT,
        next_step_prompt=GENERAL_NEXT_STEP_PROMPT,
        max_steps=max_steps,
        max_observe=10000,
    )
    return ToolCallAgent(gateway, tools, config)


def research_agent(gateway: ModelGateway) -> ToolCallAgent:
    config = AgentConfig(
        name="researcher",
        description="Searches the web and writes up what it finds",
        system_prompt=RESEARCH_SYSTEM_PROMPT,
        max_steps=20,
        max_observe=10000,
    )
    return ToolCallAgent(gateway, ToolCollection(WebSearch(), FileSaver(), Terminate()), config)


def dynamic_tool_agent(gateway: ModelGateway, source: ToolSource) -> ToolCallAgent:
    """Agent whose registry follows `source`, re-synced every 5 steps."""
    config = AgentConfig(
        name="dynamic_tools",
        description="An agent that uses tools exposed by an external provider",
        system_prompt=DYNAMIC_SYSTEM_PROMPT,
        next_step_prompt=DYNAMIC_NEXT_STEP_PROMPT,
        max_steps=20,
        refresh_interval=5,
    )
    return ToolCallAgent(gateway, ToolCollection(Terminate()), config, tool_source=source)
