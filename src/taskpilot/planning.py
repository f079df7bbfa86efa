# planning.py
# Plan persistence and the `planning` tool.
#
# One pretty-printed JSON record per plan id under the store directory.
# Every mutation rewrites the record; all records are loaded when the store
# is constructed.

import os
import threading
from pathlib import Path

from pydantic import ValidationError

from taskpilot import display
from taskpilot.models import Plan, PlanStep, PlanStepStatus
from taskpilot.tools import BaseTool, ToolResult


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PlanError(ValueError):
    """Raised for invalid plan operations (unknown id, bad index, bad status)."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_plan_id(plan_id: str) -> None:
    """Plan ids double as file names inside the store directory."""
    if not plan_id or not isinstance(plan_id, str):
        raise PlanError("plan_id is required to create a plan")
    if "/" in plan_id or "\\" in plan_id or ".." in plan_id:
        raise PlanError(f"Invalid plan_id: {plan_id!r}")


def _check_steps(steps) -> None:
    if not isinstance(steps, list) or not steps or not all(isinstance(s, str) and s for s in steps):
        raise PlanError("steps must be a non-empty list of strings")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class PlanStore:
    """
    File-backed plan registry with a single active plan.

    Example:
        store = PlanStore("workspace/plans")
        store.create("p1", "Ship it", ["build", "test"])
        store.mark_step(0, PlanStepStatus.COMPLETED, result="ok", plan_id="p1")
    """

    def __init__(self, directory: str | os.PathLike = "workspace/plans") -> None:
        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._plans: dict[str, Plan] = {}
        self._active: str | None = None
        self._lock = threading.RLock()
        self._load()

    @property
    def directory(self) -> Path:
        return self._dir

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _path(self, plan_id: str) -> Path:
        return self._dir / f"{plan_id}.json"

    def _save(self, plan: Plan) -> None:
        try:
            self._path(plan.id).write_text(plan.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            raise PlanError(f"Failed to save plan {plan.id}: {exc}") from exc

    def _commit(self, plan: Plan) -> Plan:
        """Write first; the in-memory registry only changes once the record is on disk."""
        self._save(plan)
        self._plans[plan.id] = plan
        return plan

    def _load(self) -> None:
        for path in sorted(self._dir.glob("*.json")):
            try:
                plan = Plan.model_validate_json(path.read_bytes())
            except (OSError, UnicodeDecodeError, ValidationError) as exc:
                display.warning(f"Skipping unreadable plan record {path.name}: {exc}")
                continue
            self._plans[plan.id] = plan

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def active_plan(self) -> Plan | None:
        with self._lock:
            if self._active is None:
                return None
            return self._plans.get(self._active)

    @property
    def active_plan_id(self) -> str | None:
        return self._active

    def get(self, plan_id: str | None = None) -> Plan:
        with self._lock:
            return self._resolve(plan_id)

    def list_plans(self) -> list[Plan]:
        with self._lock:
            return list(self._plans.values())

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans

    def _resolve(self, plan_id: str | None) -> Plan:
        plan_id = plan_id or self._active
        if not plan_id:
            raise PlanError("No plan_id provided and no active plan set")
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanError(f"Plan with ID {plan_id} not found")
        return plan

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, plan_id: str, title: str, steps: list[str]) -> Plan:
        _check_plan_id(plan_id)
        if not title:
            raise PlanError("title is required to create a plan")
        _check_steps(steps)

        with self._lock:
            if plan_id in self._plans:
                raise PlanError(f"Plan with ID {plan_id} already exists")
            plan = Plan(id=plan_id, title=title, steps=[PlanStep(description=s) for s in steps])
            return self._commit(plan)

    def update(self, plan_id: str, title: str | None = None, steps: list[str] | None = None) -> Plan:
        """Replace the title and/or the step list. Replaced steps restart as not_started."""
        if steps is not None:
            _check_steps(steps)

        with self._lock:
            plan = self._resolve(plan_id).model_copy(deep=True)
            if title:
                plan.title = title
            if steps is not None:
                plan.steps = [PlanStep(description=s) for s in steps]
            plan.touch()
            return self._commit(plan)

    def set_active(self, plan_id: str) -> Plan:
        with self._lock:
            if plan_id not in self._plans:
                raise PlanError(f"Plan with ID {plan_id} not found")
            self._active = plan_id
            return self._plans[plan_id]

    def mark_step(
        self,
        step_index: int,
        status: PlanStepStatus | str,
        result: str | None = None,
        error: str | None = None,
        plan_id: str | None = None,
    ) -> Plan:
        try:
            status = PlanStepStatus(status)
        except ValueError:
            raise PlanError(f"Invalid status: {status}") from None

        with self._lock:
            plan = self._resolve(plan_id).model_copy(deep=True)
            if not 0 <= step_index < len(plan.steps):
                raise PlanError(
                    f"Invalid step_index: {step_index} (plan has {len(plan.steps)} steps)"
                )
            step = plan.steps[step_index]
            step.status = status
            if result is not None:
                step.result = result
            if error is not None:
                step.error = error
            plan.touch()
            return self._commit(plan)

    def delete(self, plan_id: str) -> None:
        with self._lock:
            if plan_id not in self._plans:
                raise PlanError(f"Plan with ID {plan_id} not found")
            del self._plans[plan_id]
            if self._active == plan_id:
                self._active = None
            self._path(plan_id).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------


class PlanningTool(BaseTool):
    """Gives an agent create/update/inspect/mark access to a PlanStore."""

    name = "planning"
    description = (
        "A planning tool that allows the agent to create and manage plans for solving "
        "complex tasks. The tool provides functionality for creating plans, updating "
        "plan steps, and tracking progress."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "description": "The command to execute. Available commands: create, update, list, get, set_active, mark_step, delete.",
                "enum": ["create", "update", "list", "get", "set_active", "mark_step", "delete"],
                "type": "string",
            },
            "plan_id": {
                "description": "Unique identifier for the plan. Required for create, update, set_active, and delete commands. Optional for get and mark_step (uses active plan if not specified).",
                "type": "string",
            },
            "title": {
                "description": "Title for the plan. Required for create command, optional for update command.",
                "type": "string",
            },
            "steps": {
                "description": "List of plan steps. Required for create command, optional for update command.",
                "type": "array",
                "items": {"type": "string"},
            },
            "step_index": {
                "description": "Index of the step to mark (0-based). Required for mark_step command.",
                "type": "integer",
            },
            "status": {
                "description": "Status to set for the step. Required for mark_step command.",
                "enum": [s.value for s in PlanStepStatus],
                "type": "string",
            },
            "result": {
                "description": "Result for the step. Optional for mark_step command.",
                "type": "string",
            },
        },
        "required": ["command"],
    }

    def __init__(self, store: PlanStore | None = None) -> None:
        self.store = store if store is not None else PlanStore()

    def execute(self, args: dict, cancel=None) -> ToolResult:
        command = args.get("command")
        handler = {
            "create": self._create,
            "update": self._update,
            "list": self._list,
            "get": self._get,
            "set_active": self._set_active,
            "mark_step": self._mark_step,
            "delete": self._delete,
        }.get(command)
        if handler is None:
            if not command:
                return ToolResult(error="command parameter is required")
            return ToolResult(error=f"Unknown command: {command}")
        try:
            return ToolResult(output=handler(args))
        except PlanError as exc:
            return ToolResult(error=str(exc))

    def _create(self, args: dict) -> str:
        steps = args.get("steps") or []
        plan = self.store.create(args.get("plan_id", ""), args.get("title", ""), steps)
        if self.store.active_plan_id is None:
            self.store.set_active(plan.id)
        return f"Plan created successfully with ID: {plan.id}\n\n{plan.render()}"

    def _update(self, args: dict) -> str:
        if not args.get("plan_id"):
            raise PlanError("plan_id is required for update command")
        plan = self.store.update(args["plan_id"], args.get("title"), args.get("steps"))
        return f"Plan updated successfully: {plan.id}\n\n{plan.render()}"

    def _list(self, args: dict) -> str:
        plans = self.store.list_plans()
        if not plans:
            return "No plans available. Create a plan with the 'create' command."
        lines = ["Available plans:"]
        for plan in plans:
            marker = " (active)" if plan.id == self.store.active_plan_id else ""
            completed, total = plan.progress()
            lines.append(f"• {plan.id}{marker}: {plan.title} - {completed}/{total} steps completed")
        return "\n".join(lines)

    def _get(self, args: dict) -> str:
        return self.store.get(args.get("plan_id")).render()

    def _set_active(self, args: dict) -> str:
        if not args.get("plan_id"):
            raise PlanError("plan_id is required for set_active command")
        plan = self.store.set_active(args["plan_id"])
        return f"Plan '{plan.id}' is now the active plan.\n\n{plan.render()}"

    def _mark_step(self, args: dict) -> str:
        index = args.get("step_index")
        if isinstance(index, bool) or not isinstance(index, (int, float)):
            raise PlanError("step_index is required for mark_step command")
        if not args.get("status"):
            raise PlanError("status is required for mark_step command")
        plan = self.store.mark_step(
            int(index), args["status"], result=args.get("result"), plan_id=args.get("plan_id")
        )
        step = plan.steps[int(index)]
        return f"Step {int(index)} updated in plan '{plan.id}': {step.status.value}\n\n{plan.render()}"

    def _delete(self, args: dict) -> str:
        if not args.get("plan_id"):
            raise PlanError("plan_id is required for delete command")
        self.store.delete(args["plan_id"])
        return f"Plan '{args['plan_id']}' has been deleted."
