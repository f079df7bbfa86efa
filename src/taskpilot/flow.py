# flow.py
# Multi-agent flows. The planning flow walks an ordered plan and hands each
# open step to an executor agent, recording the outcome in the plan store.
#
# Control flow:
#   request → fixed plan template → [next open step → executor.run()
#   → completed | blocked] … → summary

import uuid
from enum import Enum
from typing import Protocol

from taskpilot import display
from taskpilot.agent import ToolCallAgent
from taskpilot.models import AgentState, Plan, PlanStepStatus, RunCancelled
from taskpilot.planning import PlanningTool, PlanStore
from taskpilot.tools import ToolLookup

PLAN_TEMPLATE = [
    "Analyze the request",
    "Plan the solution",
    "Execute the plan",
    "Verify the results",
]


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


class Executor(ToolLookup, Protocol):
    """What a flow needs from an agent."""

    name: str
    state: AgentState

    def run(self, request: str | None = None, cancel=None) -> str: ...

    def reset(self) -> None: ...


def bind_plan_store(agent: ToolLookup, store: PlanStore) -> bool:
    """Point the agent's `planning` tool, if it has one, at `store`."""
    tool = agent.get_tool(PlanningTool.name)
    if not isinstance(tool, PlanningTool):
        return False
    tool.store = store
    return True


# ---------------------------------------------------------------------------
# Base flow
# ---------------------------------------------------------------------------


class BaseFlow:
    """A keyed set of executors with one primary."""

    def __init__(self, agents: dict[str, Executor], primary_key: str | None = None) -> None:
        self.agents: dict[str, Executor] = dict(agents)
        if primary_key is None and self.agents:
            primary_key = next(iter(self.agents))
        if primary_key is not None and primary_key not in self.agents:
            raise KeyError(f"Primary agent '{primary_key}' is not one of the flow's agents")
        self.primary_key = primary_key

    def get_agent(self, key: str) -> Executor | None:
        return self.agents.get(key)

    def add_agent(self, key: str, agent: Executor) -> None:
        self.agents[key] = agent
        if self.primary_key is None:
            self.primary_key = key

    @property
    def primary_agent(self) -> Executor | None:
        if self.primary_key is None:
            return None
        return self.agents.get(self.primary_key)

    def execute(self, input_text: str, cancel=None) -> str:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Planning flow
# ---------------------------------------------------------------------------


class PlanningFlow(BaseFlow):
    """
    Runs executors against a plan, one open step at a time.

    A failing step is marked blocked and ends the flow; steps already
    completed stay recorded. An executor that reaches FINISHED ends the flow
    early, even with steps left.
    """

    def __init__(
        self,
        agents: dict[str, Executor],
        primary_key: str | None = None,
        store: PlanStore | None = None,
        plan_id: str | None = None,
    ) -> None:
        super().__init__(agents, primary_key)
        self.store = store if store is not None else PlanStore()
        self.requested_plan_id = plan_id
        self.plan_id: str | None = None
        for agent in self.agents.values():
            bind_plan_store(agent, self.store)

    def execute(self, input_text: str, cancel=None) -> str:
        if self.primary_agent is None:
            raise ValueError("PlanningFlow needs at least one agent")

        plan = self.create_initial_plan(input_text)
        display.plan_created(plan)

        lines: list[str] = []
        while True:
            current = self.store.get(plan.id).next_open_step()
            if current is None:
                lines.append(self.finalize_plan())
                break
            index, step = current

            executor = self.get_executor(self._step_type(step.description))
            if executor is None:
                lines.append(f"Step {index}: No executor available")
                break

            display.plan_step_start(index, len(plan.steps), step.description, executor.name)
            try:
                result = self.execute_step(executor, index, step.description, cancel)
            except RunCancelled:
                raise
            except Exception as exc:
                lines.append(f"Step {index} failed: {exc}")
                break

            lines.append(f"Step {index}: {result}")
            if executor.state == AgentState.FINISHED:
                break

        display.plan_summary(self.store.get(plan.id))
        return "\n".join(lines)

    def create_initial_plan(self, request: str) -> Plan:
        """
        Fixed four-step template; the model is not asked to write the steps.

        Every execute() gets a fresh plan id unless the flow was built with
        one. A requested id that already exists in the store is resumed from
        its first open step.
        """
        if self.requested_plan_id and self.requested_plan_id in self.store:
            plan = self.store.get(self.requested_plan_id)
            display.warning(f"Resuming existing plan {plan.id}")
        else:
            plan_id = self.requested_plan_id or f"plan_{uuid.uuid4().hex[:12]}"
            plan = self.store.create(plan_id, f"Plan for: {request}", PLAN_TEMPLATE)
        self.store.set_active(plan.id)
        self.plan_id = plan.id
        return plan

    def _step_type(self, description: str) -> str | None:
        # Step-type inference is not implemented; every step falls through to the primary.
        return None

    def get_executor(self, step_type: str | None = None) -> Executor | None:
        if step_type and step_type in self.agents:
            return self.agents[step_type]
        return self.primary_agent

    def execute_step(self, executor: Executor, index: int, description: str, cancel=None) -> str:
        if executor.state == AgentState.RUNNING:
            # Spent its budget on the previous step.
            executor.reset()

        self.store.mark_step(index, PlanStepStatus.IN_PROGRESS, plan_id=self.plan_id)
        try:
            result = executor.run(description, cancel=cancel)
        except Exception as exc:
            self.store.mark_step(index, PlanStepStatus.BLOCKED, error=str(exc), plan_id=self.plan_id)
            display.plan_step_blocked(index, exc)
            raise

        self.store.mark_step(index, PlanStepStatus.COMPLETED, result=result, plan_id=self.plan_id)
        return result

    def finalize_plan(self) -> str:
        completed, total = self.store.get(self.plan_id).progress()
        return f"Plan execution completed. {completed}/{total} steps completed."


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class FlowType(str, Enum):
    PLANNING = "planning"


def create_flow(
    flow_type: FlowType | str,
    agents: dict[str, Executor] | list[Executor] | Executor,
    primary_key: str | None = None,
    **kwargs,
) -> BaseFlow:
    """Build a flow. Lists are keyed agent_0, agent_1, … with the first as primary."""
    if isinstance(agents, ToolCallAgent):
        agents = [agents]
    if isinstance(agents, list):
        agents = {f"agent_{i}": agent for i, agent in enumerate(agents)}

    flow_type = FlowType(flow_type)
    if flow_type == FlowType.PLANNING:
        return PlanningFlow(agents, primary_key=primary_key, **kwargs)
    raise ValueError(f"Unknown flow type: {flow_type}")
