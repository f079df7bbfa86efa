# display.py
# All terminal output for the taskpilot runtime.
#
# This module owns presentation entirely. agent.py, flow.py and friends never
# format strings for the terminal; they call named functions here.
#
# Colour language:
#   cyan   : loop / routing events
#   blue   : model calls and responses
#   yellow : warnings, stuck detection, retries
#   green  : success / confirmed
#   red    : failures, halts, blocked steps
#   magenta: tool internals (Action / Observation)

import json

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from taskpilot.models import Plan, PlanStepStatus

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = escape(value)
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


_STATUS_STYLE = {
    PlanStepStatus.NOT_STARTED: "dim",
    PlanStepStatus.IN_PROGRESS: "cyan",
    PlanStepStatus.COMPLETED: "green",
    PlanStepStatus.BLOCKED: "red",
}


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def banner(model: str, mode: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]taskpilot[/bold cyan]\n"
            "[dim]Think / act agent runtime with plan tracking[/dim]\n\n"
            f"[dim]Model :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Mode  :[/dim] [white]{escape(mode)}[/white]\n\n"
            "[dim]Type a prompt, or 'exit' to quit.[/dim]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(prompt)}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


def step_start(agent: str, step: int, max_steps: int) -> None:
    console.print()
    console.print(
        f"[bold cyan]  {escape(agent)} STEP [{step}/{max_steps}][/bold cyan]"
    )


def thoughts(agent: str, content: str) -> None:
    if content:
        console.print(f"  [blue]Thought[/blue]  [dim white]{_mono(content, 200)}[/dim white]")
    else:
        console.print(f"  [blue]Thought[/blue]  [dim]{escape(agent)} produced no text[/dim]")


def tools_selected(agent: str, names: list[str]) -> None:
    if not names:
        return
    console.print(
        f"  [blue]Tools[/blue]    [dim]{escape(agent)} selected {len(names)} tool(s):[/dim] "
        f"[white]{escape(', '.join(names))}[/white]"
    )


def tool_activating(name: str, args: dict) -> None:
    console.print(
        f"  [magenta]Action[/magenta]   [bold white]{escape(name)}[/bold white]"
        f"  [dim]{_mono(json.dumps(args, ensure_ascii=False, default=str), 100)}[/dim]"
    )


def tool_completed(name: str, observation: str) -> None:
    console.print(f"  [magenta]Observe[/magenta]  [white]{_mono(observation, 140)}[/white]")


def tool_failed(name: str, error: object) -> None:
    console.print(
        f"  [red]✗ Tool[/red] [bold white]{escape(name)}[/bold white] "
        f"[red]{_mono(str(error), 140)}[/red]"
    )


def special_tool_finished(name: str) -> None:
    console.print(
        f"  [bold green]✓ Special tool[/bold green] [white]{escape(name)}[/white] "
        "[green]has completed the task.[/green]"
    )


def tools_refreshed(added: list[str], removed: list[str]) -> None:
    if added:
        console.print(f"  [cyan]↻ Tools added:[/cyan] [white]{escape(', '.join(added))}[/white]")
    if removed:
        console.print(f"  [cyan]↻ Tools removed:[/cyan] [white]{escape(', '.join(removed))}[/white]")


def stuck_detected(prompt: str) -> None:
    console.print(
        f"  [yellow]⚠ Duplicate responses detected.[/yellow] [dim]{escape(prompt)}[/dim]"
    )


def run_terminated(agent: str, max_steps: int) -> None:
    console.print(
        f"  [yellow]■ {escape(agent)} reached its step budget ({max_steps}).[/yellow]"
    )


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def warning(message: str) -> None:
    console.print(f"  [yellow]⚠ {escape(message)}[/yellow]")


def llm_error(agent: str, error: object) -> None:
    console.print(
        Panel(
            f"[bold red]Model request failed for {escape(agent)}.[/bold red]\n\n"
            f"[white]{escape(str(error))}[/white]",
            title=_label("MODEL ERROR ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def retrying(attempt: int, max_retries: int, delay: float, error: object) -> None:
    console.print(
        f"  [yellow]↻ Attempt {attempt}/{max_retries} failed:[/yellow] "
        f"[dim]{_mono(str(error), 100)}[/dim] [yellow]retrying in {delay:.1f}s…[/yellow]"
    )


def step_failed(agent: str, step: int, error: object) -> None:
    console.print(
        f"  [bold red]✗ {escape(agent)} step {step} failed:[/bold red] "
        f"[white]{escape(str(error))}[/white]"
    )


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()


# ---------------------------------------------------------------------------
# Planning flow
# ---------------------------------------------------------------------------


def _plan_table(plan: Plan) -> Table:
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Status", width=13)
    table.add_column("Description", style="white")
    table.add_column("Result", style="dim white")

    for index, step in enumerate(plan.steps):
        style = _STATUS_STYLE[step.status]
        table.add_row(
            str(index),
            f"[{style}]{escape(step.status.mark)} {step.status.value}[/{style}]",
            escape(step.description),
            _mono(step.error or step.result or "", 60),
        )
    return table


def plan_created(plan: Plan) -> None:
    console.print()
    console.print(
        Panel(
            _plan_table(plan),
            title=_label("FLOW: PLAN CREATED", "cyan"),
            subtitle=f"[dim]{escape(plan.title)}[/dim]",
            border_style="cyan",
            padding=(0, 1),
        )
    )


def plan_step_start(index: int, total: int, description: str, executor: str) -> None:
    console.print()
    console.print(Rule(f"[cyan]PLAN STEP {index + 1}/{total}[/cyan]", style="cyan"))
    console.print(
        f"  [white]{escape(description)}[/white]  [dim]→ executor {escape(executor)}[/dim]"
    )


def plan_step_blocked(index: int, error: object) -> None:
    console.print(
        Panel(
            f"[bold red]Step {index} is blocked.[/bold red]\n\n[white]{escape(str(error))}[/white]",
            title=_label("STEP BLOCKED ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def plan_summary(plan: Plan) -> None:
    completed, total = plan.progress()
    console.print()
    console.print(
        Panel(
            _plan_table(plan),
            title="[dim]PLAN SUMMARY[/dim]",
            subtitle=f"[dim]{completed}/{total} steps completed[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(result)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()
