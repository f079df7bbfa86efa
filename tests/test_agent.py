import json
import threading

import pytest
from unittest.mock import MagicMock

from taskpilot.agent import (
    NOTHING_TO_EXECUTE,
    STUCK_PROMPT,
    THINKING_COMPLETE,
    TOOLS_GONE,
    AgentConfig,
    InvalidStateError,
    ToolCallAgent,
    ToolCallsRequiredError,
    dynamic_tool_agent,
    general_agent,
    research_agent,
)
from taskpilot.llm import LLMError, LLMResponse
from taskpilot.models import AgentState, Function, Message, Role, RunCancelled, ToolCall, ToolChoice
from taskpilot.planning import PlanStore
from taskpilot.tools import BaseTool, Terminate, ToolCollection, ToolResult


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _call(name, args=None, call_id="call_1", raw=None):
    arguments = raw if raw is not None else json.dumps(args or {})
    return ToolCall(id=call_id, function=Function(name=name, arguments=arguments))


def _gateway(*responses):
    gateway = MagicMock()
    gateway.ask_tool.side_effect = list(responses)
    return gateway


def _repeating_gateway(response):
    gateway = MagicMock()
    gateway.ask_tool.return_value = response
    return gateway


def _step_lines(result):
    return [line for line in result.splitlines() if line.startswith("Step ")]


class RecordingTool(BaseTool):
    name = "record"
    description = "Records its arguments."

    def __init__(self):
        self.calls = []

    def execute(self, args, cancel=None):
        self.calls.append(args)
        return ToolResult(output=f"recorded {args.get('n')}")


class EchoTool(BaseTool):
    name = "echo"
    description = "Echo the message back."

    def execute(self, args, cancel=None):
        return args.get("message", "")


class ExplodingTool(BaseTool):
    name = "explode"
    description = "Always raises."

    def execute(self, args, cancel=None):
        raise RuntimeError("fuse lit")


class CancellingTool(BaseTool):
    name = "stop_button"
    description = "Sets the cancellation event."

    def __init__(self, event):
        self.event = event

    def execute(self, args, cancel=None):
        self.event.set()
        return "pressed"


# ---------------------------------------------------------------------------
# Run Loop Tests
# ---------------------------------------------------------------------------

def test_terminate_finishes_in_one_step():
    gateway = _repeating_gateway(
        LLMResponse(content="All done", tool_calls=[_call("terminate", {"status": "success"})])
    )
    agent = ToolCallAgent(gateway, ToolCollection(Terminate()))

    result = agent.run("say hi")

    assert agent.state == AgentState.FINISHED
    assert len(_step_lines(result)) == 1
    assert "The interaction has been completed with status: success" in result
    assert "Terminated" not in result
    gateway.ask_tool.assert_called_once()

def test_step_budget_exhaustion_keeps_running_state():
    gateway = _repeating_gateway(LLMResponse(content="still thinking"))
    agent = ToolCallAgent(gateway, config=AgentConfig(max_steps=3))

    result = agent.run("ponder")
    lines = result.splitlines()

    assert [l for l in lines if l.startswith("Step ")] == [
        "Step 1: still thinking",
        "Step 2: still thinking",
        "Step 3: still thinking",
    ]
    assert lines[-1] == "Terminated: Reached max steps (3)"
    assert agent.state == AgentState.RUNNING
    assert agent.current_step == 3

def test_unknown_tool_is_reported_and_run_continues():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("foo", call_id="c9")]))
    agent = ToolCallAgent(gateway, config=AgentConfig(max_steps=1))

    result = agent.run("try foo")

    assert "Error: Tool foo is invalid" in result
    assert agent.state == AgentState.RUNNING
    last = agent.messages[-1]
    assert last.role == Role.TOOL
    assert last.tool_call_id == "c9"
    assert last.content == "Error: Tool foo is invalid"

def test_empty_request_is_not_recorded():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("terminate")]))
    agent = ToolCallAgent(gateway)
    agent.run()
    assert all(m.role != Role.USER for m in agent.messages)

def test_run_from_finished_is_rejected_without_mutation():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("terminate")]))
    agent = ToolCallAgent(gateway)
    agent.run("first")
    before = agent.messages

    with pytest.raises(InvalidStateError, match="FINISHED"):
        agent.run("second")

    assert agent.messages == before
    assert agent.state == AgentState.FINISHED

def test_concurrent_run_is_rejected():
    started, release = threading.Event(), threading.Event()

    def slow_ask(*args, **kwargs):
        started.set()
        release.wait(5)
        return LLMResponse(tool_calls=[_call("terminate")])

    gateway = MagicMock()
    gateway.ask_tool.side_effect = slow_ask
    agent = ToolCallAgent(gateway)

    worker = threading.Thread(target=agent.run, args=("first",))
    worker.start()
    assert started.wait(5)
    try:
        with pytest.raises(InvalidStateError):
            agent.run("second")
    finally:
        release.set()
        worker.join(5)

    assert agent.state == AgentState.FINISHED
    assert [m.content for m in agent.messages if m.role == Role.USER] == ["first"]

def test_empty_tool_source_finishes_without_model_call():
    gateway = MagicMock()
    source = MagicMock()
    source.list_tools.return_value = []
    agent = ToolCallAgent(gateway, ToolCollection(), tool_source=source, config=AgentConfig(max_steps=1))

    result = agent.run("anything")

    assert result == f"Step 1: {TOOLS_GONE}"
    assert agent.state == AgentState.FINISHED
    gateway.ask_tool.assert_not_called()

# ---------------------------------------------------------------------------
# Think Tests
# ---------------------------------------------------------------------------

def test_think_sends_prompts_tools_and_choice():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("terminate")]))
    config = AgentConfig(system_prompt="be brief", next_step_prompt="what next?", tool_choice=ToolChoice.REQUIRED)
    agent = ToolCallAgent(gateway, config=config)

    agent.run("task")

    kwargs = gateway.ask_tool.call_args.kwargs
    assert [m.content for m in kwargs["system_msgs"]] == ["be brief"]
    assert kwargs["tool_choice"] == ToolChoice.REQUIRED
    assert kwargs["tools"][0]["function"]["name"] == "terminate"
    sent = gateway.ask_tool.call_args.args[0]
    assert [m.content for m in sent] == ["task", "what next?"]

def test_gateway_failure_moves_to_error_and_notes_it():
    gateway = _gateway(LLMError("boom"))
    agent = ToolCallAgent(gateway)

    with pytest.raises(LLMError, match="boom"):
        agent.run("task")

    assert agent.state == AgentState.ERROR
    last = agent.messages[-1]
    assert last.role == Role.ASSISTANT
    assert last.content == "Error encountered while processing: boom"

def test_error_state_is_terminal():
    agent = ToolCallAgent(_gateway(LLMError("boom")))
    with pytest.raises(LLMError):
        agent.run("task")
    with pytest.raises(InvalidStateError):
        agent.run("again")
    with pytest.raises(InvalidStateError):
        agent.reset()

def test_required_policy_without_calls_fails_the_run():
    gateway = _repeating_gateway(LLMResponse(content="I refuse"))
    agent = ToolCallAgent(gateway, config=AgentConfig(tool_choice=ToolChoice.REQUIRED))

    with pytest.raises(ToolCallsRequiredError, match="Tool calls required"):
        agent.run("task")
    assert agent.state == AgentState.ERROR

def test_none_policy_discards_proposed_calls():
    recorder = RecordingTool()
    gateway = _repeating_gateway(LLMResponse(content="just text", tool_calls=[_call("record", {"n": 1})]))
    agent = ToolCallAgent(
        gateway,
        ToolCollection(recorder),
        config=AgentConfig(tool_choice=ToolChoice.NONE, max_steps=1),
    )

    result = agent.run("task")

    assert recorder.calls == []
    assert result.splitlines()[0] == "Step 1: just text"
    assert all(m.role != Role.TOOL for m in agent.messages)
    assert all(not m.tool_calls for m in agent.messages)

def test_silent_model_under_auto_completes_thinking():
    gateway = _repeating_gateway(LLMResponse())
    agent = ToolCallAgent(gateway, config=AgentConfig(max_steps=1))
    assert agent.run("task").splitlines()[0] == f"Step 1: {THINKING_COMPLETE}"

# ---------------------------------------------------------------------------
# Act Tests
# ---------------------------------------------------------------------------

def test_calls_run_in_order_and_pair_with_tool_messages():
    recorder = RecordingTool()
    gateway = _gateway(
        LLMResponse(tool_calls=[
            _call("record", {"n": 1}, call_id="a"),
            _call("record", {"n": 2}, call_id="b"),
        ]),
        LLMResponse(tool_calls=[_call("terminate", call_id="c")]),
    )
    agent = ToolCallAgent(gateway, ToolCollection(recorder, Terminate()))

    agent.run("task")

    assert recorder.calls == [{"n": 1}, {"n": 2}]
    messages = agent.messages
    proposal = next(m for m in messages if m.tool_calls)
    index = messages.index(proposal)
    replies = messages[index + 1:index + 3]
    assert [r.tool_call_id for r in replies] == [c.id for c in proposal.tool_calls]
    assert [r.content for r in replies] == [
        "Observed output of cmd `record` executed:\nrecorded 1",
        "Observed output of cmd `record` executed:\nrecorded 2",
    ]

def test_batch_continues_after_finishing_call():
    recorder = RecordingTool()
    gateway = _repeating_gateway(
        LLMResponse(tool_calls=[_call("terminate", call_id="t"), _call("record", {"n": 7}, call_id="r")])
    )
    agent = ToolCallAgent(gateway, ToolCollection(Terminate(), recorder))

    result = agent.run("task")

    assert agent.state == AgentState.FINISHED
    assert recorder.calls == [{"n": 7}]
    assert [m.tool_call_id for m in agent.messages if m.role == Role.TOOL] == ["t", "r"]
    assert "recorded 7" in result

def test_custom_finish_policy_can_veto_termination():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("terminate")]))
    agent = ToolCallAgent(gateway, config=AgentConfig(max_steps=2), finish_policy=lambda name, result: False)

    result = agent.run("task")

    assert agent.state == AgentState.RUNNING
    assert result.endswith("Terminated: Reached max steps (2)")

def test_special_tool_names_are_case_insensitive():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("echo", {"message": "bye"})]))
    agent = ToolCallAgent(gateway, ToolCollection(EchoTool()), config=AgentConfig(special_tool_names=["ECHO"]))
    agent.run("task")
    assert agent.state == AgentState.FINISHED

def test_malformed_arguments_become_observation():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("echo", raw="{not json")]))
    agent = ToolCallAgent(gateway, ToolCollection(EchoTool()), config=AgentConfig(max_steps=1))

    result = agent.run("task")

    assert "Error parsing arguments for echo: Invalid JSON format" in result
    assert agent.state == AgentState.RUNNING

def test_tool_exception_becomes_observation():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("explode")]))
    agent = ToolCallAgent(gateway, ToolCollection(ExplodingTool()), config=AgentConfig(max_steps=1))

    result = agent.run("task")

    assert "⚠️ Tool 'explode' encountered a problem: fuse lit" in result
    assert agent.state == AgentState.RUNNING

def test_execute_tool_formats_empty_and_nameless_calls():
    agent = ToolCallAgent(MagicMock(), ToolCollection(EchoTool()))
    assert agent.execute_tool(_call("echo", {"message": ""})) == "Cmd `echo` completed with no output"
    assert agent.execute_tool(_call("")) == "Error: Invalid command format"

def test_observations_are_truncated_to_max_observe():
    gateway = _repeating_gateway(LLMResponse(tool_calls=[_call("echo", {"message": "x" * 500})]))
    agent = ToolCallAgent(gateway, ToolCollection(EchoTool()), config=AgentConfig(max_steps=1, max_observe=40))

    agent.run("task")

    tool_message = next(m for m in agent.messages if m.role == Role.TOOL)
    assert len(tool_message.content) == 40

def test_act_without_calls_returns_last_message_content():
    agent = ToolCallAgent(MagicMock())
    assert agent.act() == NOTHING_TO_EXECUTE
    agent.update_memory(Message.assistant("hello"))
    assert agent.act() == "hello"

# ---------------------------------------------------------------------------
# Cancellation Tests
# ---------------------------------------------------------------------------

def test_cancellation_between_tool_calls():
    cancel = threading.Event()
    recorder = RecordingTool()
    gateway = _repeating_gateway(
        LLMResponse(tool_calls=[_call("stop_button", call_id="s"), _call("record", {"n": 1}, call_id="r")])
    )
    agent = ToolCallAgent(gateway, ToolCollection(CancellingTool(cancel), recorder))

    with pytest.raises(RunCancelled):
        agent.run("task", cancel=cancel)

    assert agent.state == AgentState.ERROR
    assert recorder.calls == []
    assert agent.messages[-1].tool_call_id == "s"

# ---------------------------------------------------------------------------
# Stuck Detection Tests
# ---------------------------------------------------------------------------

def test_is_stuck_respects_threshold():
    agent = ToolCallAgent(MagicMock(), config=AgentConfig(duplicate_threshold=2))
    assert agent.is_stuck() is False
    agent.update_memory(Message.assistant("same"))
    agent.update_memory(Message.assistant("same"))
    assert agent.is_stuck() is False
    agent.update_memory(Message.user("nudge"))
    agent.update_memory(Message.assistant("same"))
    assert agent.is_stuck() is True

def test_empty_assistant_text_is_never_stuck():
    agent = ToolCallAgent(MagicMock())
    for _ in range(4):
        agent.update_memory(Message.assistant(""))
    assert agent.is_stuck() is False

def test_stuck_run_prepends_strategy_prompt():
    gateway = _repeating_gateway(LLMResponse(content="loop"))
    agent = ToolCallAgent(gateway, config=AgentConfig(max_steps=3, next_step_prompt="continue"))

    agent.run("task")

    assert agent.next_step_prompt == f"{STUCK_PROMPT}\ncontinue"

# ---------------------------------------------------------------------------
# Dynamic Tool Tests
# ---------------------------------------------------------------------------

def test_tool_source_refresh_and_disappearance():
    source = MagicMock()
    source.list_tools.side_effect = [[EchoTool()], []]
    gateway = _repeating_gateway(LLMResponse(content="hmm"))
    agent = ToolCallAgent(
        gateway,
        ToolCollection(),
        config=AgentConfig(max_steps=5, refresh_interval=2),
        tool_source=source,
    )

    result = agent.run("task")

    assert result.splitlines() == ["Step 1: hmm", f"Step 2: {TOOLS_GONE}"]
    assert agent.state == AgentState.FINISHED
    assert "echo" not in agent.available_tools
    assert gateway.ask_tool.call_count == 1

def test_tool_source_refresh_removes_vanished_tools():
    class OtherTool(EchoTool):
        name = "other"

    source = MagicMock()
    source.list_tools.side_effect = [[EchoTool(), OtherTool()], [EchoTool()]]
    gateway = _repeating_gateway(LLMResponse(content="hmm"))
    agent = ToolCallAgent(
        gateway,
        ToolCollection(Terminate()),
        config=AgentConfig(max_steps=2, refresh_interval=2),
        tool_source=source,
    )

    agent.run("task")

    assert sorted(agent.available_tools.names()) == ["echo", "terminate"]

def test_failing_tool_source_keeps_current_tools():
    source = MagicMock()
    source.list_tools.side_effect = RuntimeError("server down")
    gateway = _repeating_gateway(LLMResponse(content="hmm"))
    agent = ToolCallAgent(gateway, config=AgentConfig(max_steps=2), tool_source=source)

    result = agent.run("task")

    assert len(_step_lines(result)) == 2
    assert "terminate" in agent.available_tools
    assert agent.state == AgentState.RUNNING
    assert source.list_tools.call_count == 1

def test_failed_refresh_waits_for_next_interval():
    seen = []

    def failing_list(cancel=None):
        seen.append(agent.current_step)
        raise RuntimeError("server down")

    source = MagicMock()
    source.list_tools.side_effect = failing_list
    gateway = _repeating_gateway(LLMResponse(content="hmm"))
    agent = ToolCallAgent(gateway, config=AgentConfig(max_steps=6, refresh_interval=5), tool_source=source)

    agent.run("task")

    assert seen == [1, 5]

def test_source_cannot_replace_or_remove_builtin_special_tools():
    class ImpostorTerminate(EchoTool):
        name = "terminate"

    builtin = Terminate()
    source = MagicMock()
    source.list_tools.side_effect = [[EchoTool(), ImpostorTerminate()], [EchoTool()]]
    gateway = _repeating_gateway(LLMResponse(content="hmm"))
    agent = ToolCallAgent(
        gateway,
        ToolCollection(builtin),
        config=AgentConfig(max_steps=2, refresh_interval=2),
        tool_source=source,
    )

    agent.run("task")

    assert agent.available_tools.get_tool("terminate") is builtin
    assert sorted(agent.available_tools.names()) == ["echo", "terminate"]
    assert source.list_tools.call_count == 2

# ---------------------------------------------------------------------------
# Reset Tests
# ---------------------------------------------------------------------------

def test_reset_after_exhaustion_allows_another_run():
    gateway = _gateway(
        LLMResponse(content="first pass"),
        LLMResponse(tool_calls=[_call("terminate")]),
    )
    agent = ToolCallAgent(gateway, config=AgentConfig(max_steps=1))
    agent.run("task")

    agent.reset()
    assert agent.state == AgentState.IDLE
    assert agent.current_step == 0

    agent.run("continue")
    assert agent.state == AgentState.FINISHED
    assert [m.content for m in agent.messages if m.role == Role.USER] == ["task", "continue"]

def test_reset_refuses_finished_agent():
    agent = ToolCallAgent(_repeating_gateway(LLMResponse(tool_calls=[_call("terminate")])))
    agent.run("task")
    with pytest.raises(InvalidStateError):
        agent.reset()

# ---------------------------------------------------------------------------
# Preset Tests
# ---------------------------------------------------------------------------

def test_research_agent_tools_and_limits():
    agent = research_agent(MagicMock())
    assert agent.name == "researcher"
    assert agent.available_tools.names() == ["web_search", "file_saver", "terminate"]
    assert agent.config.max_steps == 20
    assert agent.config.max_observe == 10000
    assert agent.tool_source is None

def test_general_agent_carries_planning_tool(tmp_path):
    store = PlanStore(tmp_path / "plans")
    agent = general_agent(MagicMock(), plan_store=store, max_steps=7)
    assert agent.available_tools.names() == ["web_search", "file_saver", "ask_human", "planning", "terminate"]
    assert agent.get_tool("planning").store is store
    assert agent.config.max_steps == 7

def test_dynamic_tool_agent_refreshes_every_five_steps():
    seen = []

    def list_tools(cancel=None):
        seen.append(agent.current_step)
        return [EchoTool()]

    source = MagicMock()
    source.list_tools.side_effect = list_tools
    gateway = _repeating_gateway(LLMResponse(content="hmm"))
    agent = dynamic_tool_agent(gateway, source)

    assert agent.config.max_steps == 20
    assert agent.config.refresh_interval == 5
    result = agent.run("task")

    assert seen == [1, 5, 10, 15, 20]
    assert len(_step_lines(result)) == 20
    assert sorted(agent.available_tools.names()) == ["echo", "terminate"]
    assert agent.state == AgentState.RUNNING
