# run.py
# Entry point. Config and wiring only, no logic lives here.
#
#   taskpilot                 # one general agent per prompt
#   taskpilot --flow          # planning flow per prompt
#   taskpilot --config path/to/config.toml --profile vision

import argparse

from taskpilot import display
from taskpilot.agent import AgentError, general_agent
from taskpilot.config import ConfigError, load_settings
from taskpilot.flow import FlowType, create_flow
from taskpilot.llm import LLMClient, LLMError, RetryingGateway
from taskpilot.planning import PlanError, PlanStore

EXIT_COMMAND = "exit"


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="taskpilot", description="Think / act agent runtime.")
    parser.add_argument("--flow", action="store_true", help="Run each prompt through the planning flow.")
    parser.add_argument("--config", default=None, help="Path to a TOML config file.")
    parser.add_argument("--profile", default="default", help="LLM profile from the [llm] table.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    try:
        settings = load_settings(args.config)
        llm_settings = settings.llm_for(args.profile)
    except ConfigError as exc:
        display.halt(str(exc))
        raise SystemExit(1) from exc

    gateway = RetryingGateway(LLMClient(llm_settings))
    store = PlanStore(settings.plans_dir)
    display.banner(llm_settings.model, "planning flow" if args.flow else "single agent")

    while True:
        try:
            prompt = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            break
        if not prompt:
            continue
        if prompt.lower() == EXIT_COMMAND:
            break

        display.prompt_received(prompt)
        # Finished agents are terminal, so every prompt gets a fresh one.
        agent = general_agent(gateway, plan_store=store)
        try:
            if args.flow:
                result = create_flow(FlowType.PLANNING, [agent], store=store).execute(prompt)
            else:
                result = agent.run(prompt)
        except (AgentError, LLMError, PlanError) as exc:
            display.halt(f"Error: {exc}")
            continue
        except KeyboardInterrupt:
            display.halt("Interrupted.")
            continue
        finally:
            agent.cleanup()
        display.final_result(result)

    display.warning("Goodbye!")


if __name__ == "__main__":
    main()
